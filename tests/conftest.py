from __future__ import annotations

from typing import Callable, List

import pytest

from captable_mirror.contracts import EventContext, TokenInitialized, TokensMinted, TokensTransferred
from captable_mirror.db.session import dispose_engine, init_db
from captable_mirror.notifications import NotificationChannel, RecordingSink
from captable_mirror.projector import EventProjector
from captable_mirror.validators import generate_identity

SQLITE_URL = "sqlite+pysqlite:///:memory:"


@pytest.fixture
def db():
    """Fresh in-memory SQLite database wired into the session module."""
    dispose_engine()
    engine = init_db(SQLITE_URL)
    yield engine
    dispose_engine()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def projector(db, sink) -> EventProjector:
    return EventProjector(notifications=NotificationChannel([sink]), program_id=generate_identity())


class Ledger:
    """Drives the projector the way ingestion would, one transaction per call."""

    def __init__(self, projector: EventProjector) -> None:
        self.projector = projector
        self.slot = 100
        self._n = 0

    def ctx(self, slot: int | None = None, event_index: int = 0, signature: str | None = None) -> EventContext:
        self._n += 1
        return EventContext(
            signature=signature or f"sig{self._n:04d}",
            slot=self.slot if slot is None else slot,
            event_index=event_index,
        )

    def init(self, symbol: str = "ACME", name: str = "Acme Corp", decimals: int = 0) -> str:
        mint = generate_identity()
        self.projector.apply(TokenInitialized(mint=mint, symbol=symbol, name=name, decimals=decimals), self.ctx())
        return mint

    def mint(self, mint: str, recipient: str, amount: int, slot: int | None = None):
        return self.projector.apply(TokensMinted(token_mint=mint, recipient=recipient, amount=amount), self.ctx(slot))

    def transfer(self, mint: str, sender: str, recipient: str, amount: int, slot: int | None = None):
        event = TokensTransferred(token_mint=mint, from_wallet=sender, to_wallet=recipient, amount=amount)
        return self.projector.apply(event, self.ctx(slot))


@pytest.fixture
def ledger(projector) -> Ledger:
    return Ledger(projector)


@pytest.fixture
def wallets() -> Callable[[int], List[str]]:
    return lambda n: [generate_identity() for _ in range(n)]
