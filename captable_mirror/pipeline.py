from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from captable_mirror.contracts import EventContext, LogBatch
from captable_mirror.db.repo import insert_event
from captable_mirror.decoder import EventDecoder
from captable_mirror.errors import CapTableMirrorError
from captable_mirror.hashing import content_hash as make_content_hash
from captable_mirror.hashing import event_key as make_event_key
from captable_mirror.projector import EventProjector

log = structlog.get_logger(__name__)


@dataclass
class IngestSummary:
    signature: str
    slot: int
    decoded: int = 0
    recorded: int = 0
    applied: int = 0
    failed: int = 0
    skipped_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)


def block_time_from_unix(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


class IngestPipeline:
    """
    decode -> record -> project, for one transaction's log lines.

    Shared by the live subscription and backfill so both paths derive the
    same event keys (signature + index within the transaction) for the
    same ledger data.
    """

    def __init__(
        self,
        decoder: EventDecoder,
        projector: EventProjector,
        source: Any = None,
        program_id: Optional[str] = None,
        commitment: str = "confirmed",
    ) -> None:
        self.decoder = decoder
        self.projector = projector
        self.source = source
        self.program_id = program_id
        self.commitment = commitment

    def __call__(self, batch: LogBatch) -> IngestSummary:
        return self.handle(batch)

    def _lookup_block_time(self, signature: str) -> Optional[datetime]:
        if self.source is None:
            return None
        try:
            tx = self.source.get_transaction(signature, self.commitment)
        except CapTableMirrorError as exc:
            log.warning("block_time_lookup_failed", signature=signature, error=exc.message)
            return None
        if tx is None:
            return None
        return block_time_from_unix(tx.block_time)

    def handle(self, batch: LogBatch, block_time: Optional[datetime] = None) -> IngestSummary:
        summary = IngestSummary(signature=batch.signature, slot=batch.slot)
        if batch.err is not None:
            summary.skipped_reason = "failed_transaction"
            log.debug("log_batch_skipped", signature=batch.signature, reason=summary.skipped_reason)
            return summary

        events = self.decoder.decode(batch.logs)
        summary.decoded = len(events)
        if not events:
            return summary

        if block_time is None:
            block_time = block_time_from_unix(batch.block_time)
        if block_time is None:
            block_time = self._lookup_block_time(batch.signature)

        for index, event in enumerate(events):
            ctx = EventContext(signature=batch.signature, slot=batch.slot, event_index=index, block_time=block_time)
            try:
                inserted, _ = insert_event(self._event_row(event, ctx))
                if inserted:
                    summary.recorded += 1
                result = self.projector.apply(event, ctx)
                if result.changed:
                    summary.applied += 1
            except Exception as exc:  # one bad event never halts the stream
                summary.failed += 1
                summary.errors.append(f"{event.kind}@{index}: {exc}")
                log.error(
                    "event_projection_failed",
                    signature=batch.signature,
                    event_index=index,
                    kind=event.kind,
                    error=str(exc),
                )

        log.info(
            "log_batch_processed",
            signature=batch.signature,
            slot=batch.slot,
            decoded=summary.decoded,
            applied=summary.applied,
            failed=summary.failed,
        )
        return summary

    def _event_row(self, event: Any, ctx: EventContext) -> Dict[str, Any]:
        payload = event.model_dump(mode="json", by_alias=True)
        return {
            "program_id": self.program_id,
            "event_key": make_event_key(ctx.signature, ctx.event_index),
            "signature": ctx.signature,
            "event_index": ctx.event_index,
            "kind": event.kind,
            "security_mint": event.security_mint,
            "slot": ctx.slot,
            "block_time": ctx.block_time,
            "ingest_time": datetime.now(timezone.utc),
            "payload_json": payload,
            "content_hash": make_content_hash(payload),
        }
