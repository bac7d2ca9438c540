"""Repository functions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from captable_mirror.db.models import (
    AllowlistEntry,
    CapTableSnapshot,
    CorporateAction,
    EventLog,
    ProjectionMark,
    Security,
    TokenBalance,
    Transfer,
)
from captable_mirror.db.session import get_session


@dataclass(frozen=True)
class Mark:
    """Idempotency key for one projected side-effect."""

    effect_key: str
    signature: str
    slot: int


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _insert(session: Session, model: Any) -> Any:
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


def _claim_mark(session: Session, mark: Mark) -> bool:
    """Insert the mark inside the caller's transaction; False if already applied."""
    stmt = (
        _insert(session, ProjectionMark)
        .values(effect_key=mark.effect_key, signature=mark.signature, slot=mark.slot, applied_at=_now_utc())
        .on_conflict_do_nothing(index_elements=[ProjectionMark.effect_key])
        .returning(ProjectionMark.id)
    )
    return session.execute(stmt).first() is not None


def is_mark_applied(effect_key: str) -> bool:
    with get_session() as session:
        found = session.execute(
            select(ProjectionMark.id).where(ProjectionMark.effect_key == effect_key)
        ).first()
        return found is not None


# --- event log ------------------------------------------------------------


def insert_event(event: Mapping[str, Any]) -> Tuple[bool, int]:
    """
    Insert into event_log idempotently (unique on event_key).

    Returns (inserted, id).
    """
    with get_session() as session:
        stmt = (
            _insert(session, EventLog)
            .values(**event)
            .on_conflict_do_nothing(index_elements=[EventLog.event_key])
            .returning(EventLog.id)
        )
        row = session.execute(stmt).first()
        if row is not None:
            session.commit()
            return True, int(row[0])

        existing_id = session.execute(
            select(EventLog.id).where(EventLog.event_key == event["event_key"])
        ).scalar_one()
        session.commit()
        return False, int(existing_id)


# --- securities -------------------------------------------------------------


def get_security(mint_address: str) -> Optional[Security]:
    with get_session() as session:
        return session.execute(
            select(Security).where(Security.mint_address == mint_address)
        ).scalar_one_or_none()


def get_security_by_id(security_id: int) -> Optional[Security]:
    with get_session() as session:
        return session.get(Security, security_id)


def insert_security(values: Mapping[str, Any]) -> Tuple[bool, Security]:
    """Insert a security keyed by mint; returns (inserted, row)."""
    with get_session() as session:
        stmt = (
            _insert(session, Security)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[Security.mint_address])
            .returning(Security.id)
        )
        row = session.execute(stmt).first()
        session.commit()
        inserted = row is not None
        security = session.execute(
            select(Security).where(Security.mint_address == values["mint_address"])
        ).scalar_one()
        return inserted, security


def update_security(security_id: int, **fields: Any) -> None:
    fields.setdefault("updated_at", _now_utc())
    with get_session() as session:
        session.execute(update(Security).where(Security.id == security_id).values(**fields))
        session.commit()


def apply_supply_delta(security_id: int, delta: int, *, mark: Mark) -> bool:
    """Add delta to current and total supply once per mark."""
    with get_session() as session:
        if not _claim_mark(session, mark):
            session.rollback()
            return False
        session.execute(
            update(Security)
            .where(Security.id == security_id)
            .values(
                current_supply=Security.current_supply + delta,
                total_supply=Security.total_supply + delta,
                updated_at=_now_utc(),
            )
        )
        session.commit()
        return True


# --- balances ---------------------------------------------------------------


def apply_balance_delta(security_id: int, wallet_address: str, delta: int, slot: int, *, mark: Mark) -> bool:
    """
    Atomic "add delta, ratchet position forward" upsert.

    The mark and the delta commit together, so a retry after a failure either
    re-applies the whole effect or finds the mark and does nothing.
    """
    with get_session() as session:
        if not _claim_mark(session, mark):
            session.rollback()
            return False
        stmt = _insert(session, TokenBalance).values(
            security_id=security_id,
            wallet_address=wallet_address,
            balance=delta,
            slot=slot,
            updated_at=_now_utc(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[TokenBalance.security_id, TokenBalance.wallet_address],
            set_={
                "balance": TokenBalance.balance + stmt.excluded.balance,
                "slot": case((stmt.excluded.slot > TokenBalance.slot, stmt.excluded.slot), else_=TokenBalance.slot),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        session.commit()
        return True


def set_balance(security_id: int, wallet_address: str, balance: int, slot: int) -> None:
    """Absolute upsert; used for derived balances that are recomputed, not accumulated."""
    with get_session() as session:
        stmt = _insert(session, TokenBalance).values(
            security_id=security_id,
            wallet_address=wallet_address,
            balance=balance,
            slot=slot,
            updated_at=_now_utc(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[TokenBalance.security_id, TokenBalance.wallet_address],
            set_={
                "balance": stmt.excluded.balance,
                "slot": stmt.excluded.slot,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        session.commit()


def get_balance(security_id: int, wallet_address: str) -> Optional[TokenBalance]:
    with get_session() as session:
        return session.execute(
            select(TokenBalance).where(
                TokenBalance.security_id == security_id,
                TokenBalance.wallet_address == wallet_address,
            )
        ).scalar_one_or_none()


def load_positive_balances(security_id: int, max_slot: Optional[int] = None) -> List[TokenBalance]:
    """Balances > 0, largest first; id breaks ties so the order is deterministic."""
    with get_session() as session:
        stmt = select(TokenBalance).where(
            TokenBalance.security_id == security_id,
            TokenBalance.balance > 0,
        )
        if max_slot is not None:
            stmt = stmt.where(TokenBalance.slot <= max_slot)
        stmt = stmt.order_by(TokenBalance.balance.desc(), TokenBalance.id.asc())
        return list(session.execute(stmt).scalars().all())


def sum_positive_balances(security_id: int) -> int:
    with get_session() as session:
        total = session.execute(
            select(func.coalesce(func.sum(TokenBalance.balance), 0)).where(
                TokenBalance.security_id == security_id,
                TokenBalance.balance > 0,
            )
        ).scalar_one()
        return int(total)


def count_positive_balances(security_id: int) -> int:
    with get_session() as session:
        return int(
            session.execute(
                select(func.count()).select_from(TokenBalance).where(
                    TokenBalance.security_id == security_id,
                    TokenBalance.balance > 0,
                )
            ).scalar_one()
        )


def latest_balance_slot(security_id: int) -> Optional[int]:
    with get_session() as session:
        value = session.execute(
            select(func.max(TokenBalance.slot)).where(TokenBalance.security_id == security_id)
        ).scalar_one()
        return int(value) if value is not None else None


# --- allowlist --------------------------------------------------------------


def upsert_allowlist_status(
    security_id: int,
    wallet_address: str,
    status: str,
    *,
    slot: int,
    event_index: int,
    approved_by: Optional[str] = None,
    approved_at: Optional[datetime] = None,
    revoked_at: Optional[datetime] = None,
) -> bool:
    """
    Position-ratcheted status upsert.

    The stored row only changes when the incoming (slot, event_index) is
    strictly newer, so replays and late deliveries are no-ops. Returns True
    when a row was inserted or updated.
    """
    now = _now_utc()
    with get_session() as session:
        stmt = _insert(session, AllowlistEntry).values(
            security_id=security_id,
            wallet_address=wallet_address,
            status=status,
            approved_by=approved_by,
            approved_at=approved_at,
            revoked_at=revoked_at,
            slot=slot,
            event_index=event_index,
            created_at=now,
            updated_at=now,
        )
        newer = or_(
            AllowlistEntry.slot < stmt.excluded.slot,
            and_(
                AllowlistEntry.slot == stmt.excluded.slot,
                AllowlistEntry.event_index < stmt.excluded.event_index,
            ),
        )
        set_: Dict[str, Any] = {
            "status": stmt.excluded.status,
            "slot": stmt.excluded.slot,
            "event_index": stmt.excluded.event_index,
            "updated_at": stmt.excluded.updated_at,
        }
        if status == "revoked":
            set_["revoked_at"] = stmt.excluded.revoked_at
        else:
            set_["approved_by"] = stmt.excluded.approved_by
            set_["approved_at"] = stmt.excluded.approved_at
        stmt = stmt.on_conflict_do_update(
            index_elements=[AllowlistEntry.security_id, AllowlistEntry.wallet_address],
            set_=set_,
            where=newer,
        ).returning(AllowlistEntry.id)
        row = session.execute(stmt).first()
        session.commit()
        return row is not None


def get_allowlist_entry(security_id: int, wallet_address: str) -> Optional[AllowlistEntry]:
    with get_session() as session:
        return session.execute(
            select(AllowlistEntry).where(
                AllowlistEntry.security_id == security_id,
                AllowlistEntry.wallet_address == wallet_address,
            )
        ).scalar_one_or_none()


def load_allowlist(security_id: int, wallets: Optional[Iterable[str]] = None) -> Dict[str, AllowlistEntry]:
    with get_session() as session:
        stmt = select(AllowlistEntry).where(AllowlistEntry.security_id == security_id)
        if wallets is not None:
            wallet_list = list(wallets)
            if not wallet_list:
                return {}
            stmt = stmt.where(AllowlistEntry.wallet_address.in_(wallet_list))
        return {e.wallet_address: e for e in session.execute(stmt).scalars().all()}


def load_approved_allowlist(security_id: int) -> List[AllowlistEntry]:
    with get_session() as session:
        stmt = (
            select(AllowlistEntry)
            .where(AllowlistEntry.security_id == security_id, AllowlistEntry.status == "approved")
            .order_by(AllowlistEntry.id.asc())
        )
        return list(session.execute(stmt).scalars().all())


def copy_allowlist_entry(security_id: int, entry: AllowlistEntry) -> bool:
    """Insert an approved entry for another security unless one exists."""
    now = _now_utc()
    with get_session() as session:
        stmt = (
            _insert(session, AllowlistEntry)
            .values(
                security_id=security_id,
                wallet_address=entry.wallet_address,
                status="approved",
                approved_by=entry.approved_by,
                approved_at=entry.approved_at,
                slot=0,
                event_index=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[AllowlistEntry.security_id, AllowlistEntry.wallet_address])
            .returning(AllowlistEntry.id)
        )
        row = session.execute(stmt).first()
        session.commit()
        return row is not None


# --- transfers --------------------------------------------------------------


def insert_transfer(transfer: Mapping[str, Any]) -> bool:
    """Insert into transfers idempotently (unique on transaction_signature)."""
    with get_session() as session:
        stmt = (
            _insert(session, Transfer)
            .values(**transfer)
            .on_conflict_do_nothing(index_elements=[Transfer.transaction_signature])
            .returning(Transfer.id)
        )
        row = session.execute(stmt).first()
        session.commit()
        return row is not None


def query_transfers(
    security_id: int,
    *,
    limit: int,
    offset: int,
    from_wallet: Optional[str] = None,
    to_wallet: Optional[str] = None,
) -> Tuple[List[Transfer], int]:
    filters = [Transfer.security_id == security_id]
    if from_wallet:
        filters.append(Transfer.from_wallet == from_wallet)
    if to_wallet:
        filters.append(Transfer.to_wallet == to_wallet)
    with get_session() as session:
        total = session.execute(select(func.count()).select_from(Transfer).where(*filters)).scalar_one()
        rows = session.execute(
            select(Transfer)
            .where(*filters)
            .order_by(Transfer.slot.desc(), Transfer.id.desc())
            .offset(offset)
            .limit(limit)
        ).scalars().all()
        return list(rows), int(total)


def transfer_volume(security_id: int, start: datetime, end: datetime) -> Dict[str, int]:
    with get_session() as session:
        row = session.execute(
            select(
                func.count(),
                func.coalesce(func.sum(Transfer.amount), 0),
                func.count(func.distinct(Transfer.from_wallet)),
                func.count(func.distinct(Transfer.to_wallet)),
            ).where(
                Transfer.security_id == security_id,
                Transfer.block_time >= start,
                Transfer.block_time <= end,
                Transfer.status == "confirmed",
            )
        ).one()
    return {
        "transfer_count": int(row[0]),
        "total_volume": int(row[1]),
        "unique_senders": int(row[2]),
        "unique_recipients": int(row[3]),
    }


# --- snapshots --------------------------------------------------------------


def get_snapshot_exact(security_id: int, block_height: int) -> Optional[CapTableSnapshot]:
    with get_session() as session:
        return session.execute(
            select(CapTableSnapshot).where(
                CapTableSnapshot.security_id == security_id,
                CapTableSnapshot.block_height == block_height,
            )
        ).scalar_one_or_none()


def get_snapshot_at_or_before(security_id: int, block_height: int) -> Optional[CapTableSnapshot]:
    with get_session() as session:
        return session.execute(
            select(CapTableSnapshot)
            .where(
                CapTableSnapshot.security_id == security_id,
                CapTableSnapshot.block_height <= block_height,
            )
            .order_by(CapTableSnapshot.block_height.desc())
            .limit(1)
        ).scalar_one_or_none()


def insert_snapshot(snapshot: Mapping[str, Any]) -> bool:
    """Write-once per (security_id, block_height); concurrent duplicates are dropped."""
    with get_session() as session:
        stmt = (
            _insert(session, CapTableSnapshot)
            .values(**snapshot)
            .on_conflict_do_nothing(index_elements=[CapTableSnapshot.security_id, CapTableSnapshot.block_height])
            .returning(CapTableSnapshot.id)
        )
        row = session.execute(stmt).first()
        session.commit()
        return row is not None


def list_snapshots(security_id: int, ascending: bool = False) -> List[CapTableSnapshot]:
    order = CapTableSnapshot.block_height.asc() if ascending else CapTableSnapshot.block_height.desc()
    with get_session() as session:
        return list(
            session.execute(
                select(CapTableSnapshot).where(CapTableSnapshot.security_id == security_id).order_by(order)
            ).scalars().all()
        )


# --- corporate actions ------------------------------------------------------


def insert_corporate_action(action: Mapping[str, Any]) -> int:
    with get_session() as session:
        row = CorporateAction(**action)
        session.add(row)
        session.commit()
        return int(row.id)


def rename_security(security_id: int, symbol: str, name: str, action: Mapping[str, Any]) -> int:
    """Change symbol and name and record the action in one transaction."""
    with get_session() as session:
        session.execute(
            update(Security).where(Security.id == security_id).values(symbol=symbol, name=name, updated_at=_now_utc())
        )
        row = CorporateAction(**action)
        session.add(row)
        session.commit()
        return int(row.id)


def update_corporate_action(action_id: int, **fields: Any) -> None:
    fields.setdefault("updated_at", _now_utc())
    with get_session() as session:
        session.execute(update(CorporateAction).where(CorporateAction.id == action_id).values(**fields))
        session.commit()


def get_corporate_action(action_id: int) -> Optional[CorporateAction]:
    with get_session() as session:
        return session.get(CorporateAction, action_id)


def list_corporate_actions(security_id: int) -> List[CorporateAction]:
    with get_session() as session:
        return list(
            session.execute(
                select(CorporateAction)
                .where(CorporateAction.security_id == security_id)
                .order_by(CorporateAction.id.asc())
            ).scalars().all()
        )
