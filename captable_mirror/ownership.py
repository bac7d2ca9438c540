"""
Cap-table computation over the projected ownership state.

Reads never write, with one exception: a historical cap table (one asked for
at a block height) is cached as a write-once snapshot, and every later read
of the same height is served from that stored row.
"""

from __future__ import annotations

from datetime import datetime, timezone
from fractions import Fraction
from typing import Any, Dict, List, Optional, Sequence

import structlog

from captable_mirror.contracts import (
    CapTable,
    CapTableHolder,
    CapTableSummary,
    ChangeType,
    ConcentrationMetrics,
    SnapshotInfo,
    StoredSnapshot,
    TokenInfo,
    TransferPage,
    TransferRecord,
)
from captable_mirror.db import repo
from captable_mirror.db.models import CapTableSnapshot, Security, TokenBalance
from captable_mirror.errors import NotFoundError, ValidationError
from captable_mirror.notifications import NotificationChannel
from captable_mirror.validators import require_identity

log = structlog.get_logger(__name__)

MAX_TRANSFER_PAGE = 1000


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        # SQLite hands back naive values; everything is stored in UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- pure helpers -------------------------------------------------------------


def calculate_ownership_percentages(balances: Sequence[TokenBalance], current_supply: int) -> List[CapTableHolder]:
    holders: List[CapTableHolder] = []
    for b in balances:
        shares = int(b.balance)
        if current_supply:
            percentage = round(shares / current_supply * 100, 4)
        else:
            percentage = 0.0
        holders.append(
            CapTableHolder(
                wallet_address=b.wallet_address,
                shares=shares,
                percentage=percentage,
                block_height=int(b.slot),
                last_updated=_iso(b.updated_at),
            )
        )
    return holders


def gini_coefficient(amounts: Sequence[int]) -> float:
    """
    G = 2 * sum(i * a_i) / (n * sum(a)) - (n + 1) / n over amounts sorted ascending.

    Evaluated with exact rationals so large integer balances lose nothing
    before the final conversion.
    """
    values = sorted(int(a) for a in amounts)
    n = len(values)
    total = sum(values)
    if n == 0 or total == 0:
        return 0.0
    numerator = sum((i + 1) * a for i, a in enumerate(values))
    gini = Fraction(2 * numerator, n * total) - Fraction(n + 1, n)
    return float(gini)


def interpret_gini(gini: float) -> str:
    if gini < 0.2:
        return "Very equal distribution"
    if gini < 0.4:
        return "Relatively equal distribution"
    if gini < 0.6:
        return "Moderate concentration"
    if gini < 0.8:
        return "High concentration"
    return "Very high concentration"


def summarize(holders: Sequence[CapTableHolder], supply: int) -> CapTableSummary:
    total_shares = sum(h.shares for h in holders)
    distributed = round(total_shares / supply * 100, 2) if total_shares > 0 and supply else 0.0
    return CapTableSummary(total_holders=len(holders), total_shares=total_shares, percentage_distributed=distributed)


# --- engine -----------------------------------------------------------------


class OwnershipEngine:
    def __init__(self, notifications: Optional[NotificationChannel] = None) -> None:
        self.notifications = notifications or NotificationChannel()

    def _security(self, mint: str) -> Security:
        require_identity(mint, "mint_address")
        security = repo.get_security(mint)
        if security is None:
            raise NotFoundError("Security", mint)
        return security

    def _holders(self, security: Security, block_height: Optional[int]) -> List[CapTableHolder]:
        balances = repo.load_positive_balances(security.id, max_slot=block_height)
        holders = calculate_ownership_percentages(balances, int(security.current_supply))
        allowlist = repo.load_allowlist(security.id, [h.wallet_address for h in holders])
        for holder in holders:
            entry = allowlist.get(holder.wallet_address)
            if entry is not None:
                holder.allowlist_status = entry.status
                holder.approved_at = _iso(entry.approved_at)
        return holders

    def _token_info(self, security: Security, total_supply: int) -> TokenInfo:
        return TokenInfo(
            mint_address=security.mint_address,
            symbol=security.symbol,
            name=security.name,
            decimals=security.decimals,
            total_supply=total_supply,
            program_id=security.program_id,
        )

    def _from_snapshot(self, security: Security, snapshot: CapTableSnapshot) -> CapTable:
        holders = [CapTableHolder.model_validate(h) for h in snapshot.snapshot_data]
        supply = int(snapshot.total_supply)
        return CapTable(
            token=self._token_info(security, supply),
            snapshot=SnapshotInfo(
                block_height=int(snapshot.block_height),
                timestamp=_iso(snapshot.created_at) or _now_iso(),
                is_historical=True,
            ),
            summary=summarize(holders, supply),
            holders=holders,
        )

    def _store_snapshot(
        self,
        security: Security,
        block_height: int,
        holders: List[CapTableHolder],
        metadata: Dict[str, Any],
    ) -> CapTableSnapshot:
        inserted = repo.insert_snapshot(
            {
                "security_id": security.id,
                "block_height": block_height,
                "total_supply": int(security.current_supply),
                "holder_count": len(holders),
                "snapshot_data": [h.model_dump(mode="json") for h in holders],
                "snapshot_metadata": metadata,
                "created_at": datetime.now(timezone.utc),
            }
        )
        if inserted:
            log.info("snapshot_cached", mint=security.mint_address, block_height=block_height, holders=len(holders))
        # re-read so concurrent writers and repeat callers all see the stored row
        stored = repo.get_snapshot_exact(security.id, block_height)
        if stored is None:
            raise RuntimeError(f"snapshot vanished after write: {security.mint_address}@{block_height}")
        return stored

    # --- cap tables ---------------------------------------------------------

    def compute_cap_table(self, mint: str, block_height: Optional[int] = None) -> CapTable:
        security = self._security(mint)

        if block_height is not None:
            cached = repo.get_snapshot_exact(security.id, block_height)
            if cached is not None:
                log.debug("snapshot_cache_hit", mint=mint, block_height=block_height)
                return self._from_snapshot(security, cached)

        holders = self._holders(security, block_height)

        if block_height is not None:
            stored = self._store_snapshot(
                security, block_height, holders, {"reason": "Historical query", "created_by": "system"}
            )
            return self._from_snapshot(security, stored)

        supply = int(security.current_supply)
        return CapTable(
            token=self._token_info(security, supply),
            snapshot=SnapshotInfo(block_height=None, timestamp=_now_iso(), is_historical=False),
            summary=summarize(holders, supply),
            holders=holders,
        )

    get_cap_table = compute_cap_table

    # --- snapshots ----------------------------------------------------------

    def _stored(self, security: Security, row: CapTableSnapshot, requested: Optional[int] = None) -> StoredSnapshot:
        return StoredSnapshot(
            id=row.id,
            security_mint=security.mint_address,
            block_height=int(row.block_height),
            total_supply=int(row.total_supply),
            holder_count=int(row.holder_count),
            holders=[CapTableHolder.model_validate(h) for h in row.snapshot_data],
            metadata=dict(row.snapshot_metadata or {}),
            created_at=_iso(row.created_at),
            exact=requested is None or int(row.block_height) == requested,
        )

    def get_snapshot(self, mint: str, block_height: int) -> StoredSnapshot:
        """Exact snapshot, else the nearest one at or before block_height."""
        security = self._security(mint)
        row = repo.get_snapshot_exact(security.id, block_height)
        if row is None:
            row = repo.get_snapshot_at_or_before(security.id, block_height)
        if row is None:
            raise NotFoundError("Snapshot", f"{mint} at or before block height {block_height}")
        return self._stored(security, row, requested=block_height)

    def list_snapshots(self, mint: str) -> List[Dict[str, Any]]:
        security = self._security(mint)
        return [
            {
                "id": row.id,
                "block_height": int(row.block_height),
                "total_supply": int(row.total_supply),
                "holder_count": int(row.holder_count),
                "reason": (row.snapshot_metadata or {}).get("reason"),
                "created_at": _iso(row.created_at),
            }
            for row in repo.list_snapshots(security.id)
        ]

    def create_snapshot(
        self,
        mint: str,
        block_height: Optional[int] = None,
        reason: str = "Manual snapshot",
        created_by: str = "system",
    ) -> StoredSnapshot:
        security = self._security(mint)
        if block_height is None:
            block_height = repo.latest_balance_slot(security.id) or 0

        existing = repo.get_snapshot_exact(security.id, block_height)
        if existing is not None:
            log.info("snapshot_exists", mint=mint, block_height=block_height, snapshot_id=existing.id)
            return self._stored(security, existing)

        holders = self._holders(security, block_height)
        row = self._store_snapshot(security, block_height, holders, {"reason": reason, "created_by": created_by})
        snapshot = self._stored(security, row)
        log.info("snapshot_created", mint=mint, block_height=block_height, snapshot_id=row.id, reason=reason)
        self.notifications.publish(
            ChangeType.cap_table_updated,
            mint,
            {"snapshot_id": row.id, "block_height": block_height, "reason": reason},
        )
        return snapshot

    def holder_count_history(self, mint: str) -> List[Dict[str, Any]]:
        security = self._security(mint)
        return [
            {"block_height": int(row.block_height), "holder_count": int(row.holder_count), "created_at": _iso(row.created_at)}
            for row in repo.list_snapshots(security.id, ascending=True)
        ]

    # --- metrics ------------------------------------------------------------

    def concentration_metrics(self, mint: str) -> ConcentrationMetrics:
        holders = self.compute_cap_table(mint).holders
        if not holders:
            return ConcentrationMetrics(
                top_1_holders=0.0,
                top_5_holders=0.0,
                top_10_holders=0.0,
                gini_coefficient=0.0,
                interpretation="No holders",
                holder_count=0,
            )

        ordered = sorted(holders, key=lambda h: h.shares, reverse=True)

        def top(n: int) -> float:
            return round(sum(h.percentage for h in ordered[:n]), 2)

        gini = gini_coefficient([h.shares for h in ordered])
        return ConcentrationMetrics(
            top_1_holders=top(1),
            top_5_holders=top(5),
            top_10_holders=top(10),
            gini_coefficient=round(gini, 4),
            interpretation=interpret_gini(gini),
            holder_count=len(holders),
        )

    # --- transfers ----------------------------------------------------------

    def transfer_history(
        self,
        mint: str,
        limit: int = 100,
        offset: int = 0,
        from_wallet: Optional[str] = None,
        to_wallet: Optional[str] = None,
    ) -> TransferPage:
        if limit < 1 or limit > MAX_TRANSFER_PAGE:
            raise ValidationError(f"limit must be between 1 and {MAX_TRANSFER_PAGE}", details={"field": "limit"})
        if offset < 0:
            raise ValidationError("offset must be >= 0", details={"field": "offset"})
        security = self._security(mint)
        rows, total = repo.query_transfers(
            security.id, limit=limit, offset=offset, from_wallet=from_wallet, to_wallet=to_wallet
        )
        return TransferPage(
            transfers=[
                TransferRecord(
                    transaction_signature=r.transaction_signature,
                    from_wallet=r.from_wallet,
                    to_wallet=r.to_wallet,
                    amount=int(r.amount),
                    slot=int(r.slot),
                    block_time=_iso(r.block_time),
                    status=r.status,
                )
                for r in rows
            ],
            total=total,
            limit=limit,
            offset=offset,
        )

    def transfer_volume(self, mint: str, start: datetime, end: datetime) -> Dict[str, Any]:
        if end < start:
            raise ValidationError("end must not be before start")
        security = self._security(mint)
        volume = repo.transfer_volume(security.id, start, end)
        return {"security_mint": mint, "start": _iso(start), "end": _iso(end), **volume}

    def is_wallet_approved(self, mint: str, wallet: str) -> bool:
        security = self._security(mint)
        entry = repo.get_allowlist_entry(security.id, wallet)
        return entry is not None and entry.status == "approved"
