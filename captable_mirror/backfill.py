from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

import structlog

from captable_mirror.contracts import LogBatch
from captable_mirror.errors import CapTableMirrorError
from captable_mirror.pipeline import IngestPipeline, block_time_from_unix
from captable_mirror.validators import require_identity

log = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 1000


@dataclass
class BackfillReport:
    security_mint: str
    from_position: int
    signatures_seen: int = 0
    processed: int = 0
    skipped: int = 0
    missing: int = 0
    failed: int = 0
    events_applied: int = 0
    last_slot: Optional[int] = None
    pages: int = 0


class BackfillCoordinator:
    """
    Replays historical program transactions through the ingest pipeline.

    Every signature is fed through the same decode/record/project path as
    the live subscription, so replaying an already-projected range changes
    nothing.
    """

    def __init__(
        self,
        source: Any,
        pipeline: IngestPipeline,
        program_id: str,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        commitment: str = "confirmed",
    ) -> None:
        self.source = source
        self.pipeline = pipeline
        self.program_id = program_id
        self.page_size = page_size
        self.commitment = commitment

    def backfill(self, security_mint: str, from_position: int = 0, max_pages: int = 1) -> BackfillReport:
        require_identity(security_mint, "security_mint")
        report = BackfillReport(security_mint=security_mint, from_position=from_position)
        log.info("backfill_started", mint=security_mint, from_position=from_position, max_pages=max_pages)

        # collect the whole range first: an init can sit on an older page
        # than the mints and transfers that depend on it
        history: List[Any] = []
        before: Optional[str] = None
        while report.pages < max_pages:
            page = self.source.get_signatures_for_address(self.program_id, limit=self.page_size, before=before)
            report.pages += 1
            if not page:
                break
            history.extend(page)
            before = page[-1].signature
            if len(page) < self.page_size or page[-1].slot < from_position:
                break

        # the RPC returns newest first; project oldest first
        for info in reversed(history):
            report.signatures_seen += 1
            if info.slot < from_position:
                report.skipped += 1
                continue
            self._replay_one(info, report)

        log.info(
            "backfill_finished",
            mint=security_mint,
            signatures_seen=report.signatures_seen,
            processed=report.processed,
            skipped=report.skipped,
            missing=report.missing,
            failed=report.failed,
            events_applied=report.events_applied,
            last_slot=report.last_slot,
        )
        return report

    def _replay_one(self, info: Any, report: BackfillReport) -> None:
        if info.err is not None:
            report.skipped += 1
            return
        try:
            tx = self.source.get_transaction(info.signature, self.commitment)
        except CapTableMirrorError as exc:
            report.failed += 1
            log.warning("backfill_fetch_failed", signature=info.signature, error=exc.message)
            return
        except Exception as exc:
            report.failed += 1
            log.error("backfill_fetch_failed", signature=info.signature, error=str(exc))
            return
        if tx is None:
            report.missing += 1
            log.warning("backfill_transaction_missing", signature=info.signature)
            return
        if tx.err is not None or not tx.log_messages:
            report.skipped += 1
            return

        batch = LogBatch(signature=info.signature, logs=tx.log_messages, slot=tx.slot or info.slot)
        try:
            summary = self.pipeline.handle(batch, block_time=block_time_from_unix(tx.block_time or info.block_time))
        except Exception as exc:
            report.failed += 1
            log.error("backfill_signature_failed", signature=info.signature, error=str(exc))
            return

        report.processed += 1
        report.events_applied += summary.applied
        report.failed += 1 if summary.failed else 0
        if report.last_slot is None or batch.slot > report.last_slot:
            report.last_slot = batch.slot
