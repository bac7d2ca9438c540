from __future__ import annotations

import json
from typing import List, Optional

import pytest

from captable_mirror.backfill import BackfillCoordinator
from captable_mirror.contracts import SignatureInfo, TransactionInfo
from captable_mirror.db import repo
from captable_mirror.decoder import PROGRAM_LOG_EVENT_PREFIX, default_decoder
from captable_mirror.errors import LedgerConnectionError, ValidationError
from captable_mirror.pipeline import IngestPipeline

PROGRAM = "CapTab1eProgram1111111111111111111111111111"


def _line(**payload) -> str:
    return PROGRAM_LOG_EVENT_PREFIX + json.dumps(payload)


class HistorySource:
    """Program history held oldest first; served newest first like getSignaturesForAddress."""

    def __init__(self) -> None:
        self.history: List[SignatureInfo] = []
        self.transactions: dict = {}
        self.unreachable: set = set()
        self.calls: List[Optional[str]] = []

    def add(self, signature: str, slot: int, logs: List[str], err=None, tx_err=None, missing=False) -> None:
        self.history.append(SignatureInfo(signature=signature, slot=slot, err=err, block_time=1_700_000_000 + slot))
        if not missing:
            self.transactions[signature] = TransactionInfo(
                signature=signature, slot=slot, block_time=1_700_000_000 + slot, log_messages=logs, err=tx_err
            )

    def get_signatures_for_address(self, address, limit=1000, before=None, until=None, commitment="confirmed"):
        self.calls.append(before)
        newest_first = list(reversed(self.history))
        if before is not None:
            idx = [s.signature for s in newest_first].index(before)
            newest_first = newest_first[idx + 1:]
        return newest_first[:limit]

    def get_transaction(self, signature, commitment="confirmed"):
        if signature in self.unreachable:
            raise LedgerConnectionError("rpc timeout")
        return self.transactions.get(signature)


@pytest.fixture
def source() -> HistorySource:
    return HistorySource()


@pytest.fixture
def coordinator(source, projector) -> BackfillCoordinator:
    pipeline = IngestPipeline(default_decoder(), projector, program_id=PROGRAM)
    return BackfillCoordinator(source, pipeline, PROGRAM, page_size=1000)


def _balance(mint, wallet):
    row = repo.get_balance(repo.get_security(mint).id, wallet)
    return int(row.balance) if row else 0


def test_backfill_replays_history_and_is_idempotent(coordinator, source, wallets):
    mint, alice, bob = wallets(3)
    source.add("s1", 10, [_line(kind="token_initialized", mint=mint, symbol="ACME", name="Acme Corp", decimals=0)])
    source.add("s2", 20, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=1_000)])
    source.add("s3", 30, [_line(kind="tokens_transferred", token_mint=mint, **{"from": alice, "to": bob}, amount=250)])

    report = coordinator.backfill(mint)

    assert report.signatures_seen == 3
    assert report.processed == 3
    assert report.events_applied == 3
    assert report.last_slot == 30
    assert report.pages == 1
    assert _balance(mint, alice) == 750
    assert _balance(mint, bob) == 250

    again = coordinator.backfill(mint)
    assert again.processed == 3
    assert again.events_applied == 0
    assert _balance(mint, alice) == 750
    assert repo.get_security(mint).current_supply == 1_000


def test_backfill_walks_pages_and_converges(projector, source, ledger, wallets):
    alice, bob = wallets(2)
    mint = ledger.init()
    source.add("m1", 10, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=100)])
    source.add("m2", 20, [_line(kind="tokens_minted", token_mint=mint, recipient=bob, amount=100)])
    source.add("t1", 30, [_line(kind="tokens_transferred", token_mint=mint, **{"from": alice, "to": bob}, amount=40)])
    pipeline = IngestPipeline(default_decoder(), projector)
    coordinator = BackfillCoordinator(source, pipeline, PROGRAM, page_size=2)

    report = coordinator.backfill(mint, max_pages=10)

    assert report.pages == 2
    assert source.calls == [None, "m2"]
    assert report.events_applied == 3
    assert _balance(mint, alice) == 60
    assert _balance(mint, bob) == 140


def test_backfill_respects_max_pages(projector, source, ledger, wallets):
    (alice,) = wallets(1)
    mint = ledger.init()
    for i in range(5):
        source.add(f"m{i}", 10 + i, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=1)])
    coordinator = BackfillCoordinator(source, IngestPipeline(default_decoder(), projector), PROGRAM, page_size=2)

    report = coordinator.backfill(mint, max_pages=1)

    assert report.pages == 1
    assert report.signatures_seen == 2
    assert _balance(mint, alice) == 2


def test_backfill_from_position_skips_older_signatures(coordinator, source, ledger, wallets):
    (alice,) = wallets(1)
    mint = ledger.init()
    source.add("old", 50, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=5)])
    source.add("new", 150, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=7)])

    report = coordinator.backfill(mint, from_position=100)

    assert report.skipped == 1
    assert report.processed == 1
    assert _balance(mint, alice) == 7


def test_backfill_counts_failed_missing_and_unreachable(coordinator, source, ledger, wallets):
    (alice,) = wallets(1)
    mint = ledger.init()
    minted = [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=1)]
    source.add("ok", 10, minted)
    source.add("failed-sig", 11, minted, err={"InstructionError": [0, "Custom"]})
    source.add("failed-tx", 12, minted, tx_err={"InstructionError": [0, "Custom"]})
    source.add("pruned", 13, minted, missing=True)
    source.add("timeout", 14, minted)
    source.add("quiet", 15, [])
    source.unreachable.add("timeout")

    report = coordinator.backfill(mint)

    assert report.signatures_seen == 6
    assert report.processed == 1
    assert report.skipped == 3
    assert report.missing == 1
    assert report.failed == 1
    assert _balance(mint, alice) == 1


def test_backfill_rejects_invalid_mint(coordinator):
    with pytest.raises(ValidationError):
        coordinator.backfill("not a key")


def test_backfill_initializes_security_found_on_oldest_page(projector, source, wallets):
    mint, alice = wallets(2)
    source.add("init", 10, [_line(kind="token_initialized", mint=mint, symbol="YNG", name="Young Co", decimals=0)])
    source.add("m1", 20, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=100)])
    source.add("m2", 30, [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=50)])
    coordinator = BackfillCoordinator(source, IngestPipeline(default_decoder(), projector), PROGRAM, page_size=2)

    report = coordinator.backfill(mint, max_pages=10)

    assert report.pages == 2
    assert report.events_applied == 3
    assert repo.get_security(mint).current_supply == 150
    assert _balance(mint, alice) == 150


class BrokenRowSource(HistorySource):
    def get_transaction(self, signature, commitment="confirmed"):
        if signature == "garbled":
            raise ValueError("unexpected transaction shape")
        return super().get_transaction(signature, commitment)


def test_backfill_continues_past_unexpected_fetch_errors(projector, ledger, wallets):
    (alice,) = wallets(1)
    mint = ledger.init()
    source = BrokenRowSource()
    minted = [_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=3)]
    source.add("before", 10, minted)
    source.add("garbled", 11, minted)
    source.add("after", 12, minted)
    coordinator = BackfillCoordinator(source, IngestPipeline(default_decoder(), projector), PROGRAM)

    report = coordinator.backfill(mint)

    assert report.failed == 1
    assert report.processed == 2
    assert _balance(mint, alice) == 6
