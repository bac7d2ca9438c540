"""
Idempotent projection of decoded domain events into the ownership store.

Each side-effect of an event (supply change, sender debit, recipient credit)
is guarded by its own projection mark, committed in the same transaction as
the effect. Replaying an event, delivering it twice, or retrying after a
partial failure therefore converges on the same state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

import structlog

from captable_mirror.contracts import (
    AllowlistStatus,
    ChangeType,
    EventContext,
    TokenInitialized,
    TokensMinted,
    TokensTransferred,
    WalletApproved,
    WalletRevoked,
)
from captable_mirror.db import repo
from captable_mirror.db.models import Security
from captable_mirror.hashing import effect_key
from captable_mirror.notifications import NotificationChannel

log = structlog.get_logger(__name__)

SUPPLY = "supply"
SENDER = "sender"
RECIPIENT = "recipient"


@dataclass
class ProjectionResult:
    kind: str
    security_mint: str
    applied: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def _event_time(ts: Optional[int], ctx: EventContext) -> datetime:
    if ts is not None:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    if ctx.block_time is not None:
        return ctx.block_time
    return datetime.now(timezone.utc)


class EventProjector:
    def __init__(self, notifications: Optional[NotificationChannel] = None, program_id: Optional[str] = None) -> None:
        self.notifications = notifications or NotificationChannel()
        self.program_id = program_id

    def apply(self, event: Any, ctx: EventContext) -> ProjectionResult:
        if isinstance(event, TokenInitialized):
            return self._token_initialized(event, ctx)
        if isinstance(event, WalletApproved):
            return self._wallet_approved(event, ctx)
        if isinstance(event, WalletRevoked):
            return self._wallet_revoked(event, ctx)
        if isinstance(event, TokensMinted):
            return self._tokens_minted(event, ctx)
        if isinstance(event, TokensTransferred):
            return self._tokens_transferred(event, ctx)
        raise TypeError(f"unsupported event type: {type(event).__name__}")

    # --- helpers ----------------------------------------------------------

    def _security_or_skip(self, mint: str, kind: str, ctx: EventContext) -> Optional[Security]:
        security = repo.get_security(mint)
        if security is None:
            log.warning("event_for_unknown_security", kind=kind, mint=mint, signature=ctx.signature, slot=ctx.slot)
        return security

    def _mark(self, ctx: EventContext, effect: str) -> repo.Mark:
        return repo.Mark(effect_key(ctx.signature, ctx.event_index, effect), ctx.signature, ctx.slot)

    # --- handlers ---------------------------------------------------------

    def _token_initialized(self, event: TokenInitialized, ctx: EventContext) -> ProjectionResult:
        result = ProjectionResult(kind=event.kind, security_mint=event.mint)
        inserted, security = repo.insert_security(
            {
                "mint_address": event.mint,
                "symbol": event.symbol,
                "name": event.name,
                "decimals": event.decimals,
                "total_supply": 0,
                "current_supply": 0,
                "program_id": self.program_id,
                "is_active": True,
            }
        )
        if not inserted:
            log.info("security_already_exists", mint=event.mint, signature=ctx.signature)
            result.skipped_reason = "conflict"
            return result

        result.applied.append("security")
        log.info("security_created", mint=event.mint, symbol=event.symbol, security_id=security.id)
        self.notifications.publish(
            ChangeType.token_initialized,
            event.mint,
            {"symbol": event.symbol, "name": event.name, "decimals": event.decimals, "slot": ctx.slot},
        )
        return result

    def _wallet_approved(self, event: WalletApproved, ctx: EventContext) -> ProjectionResult:
        result = ProjectionResult(kind=event.kind, security_mint=event.token_mint)
        security = self._security_or_skip(event.token_mint, event.kind, ctx)
        if security is None:
            result.skipped_reason = "unknown_security"
            return result

        approved_at = _event_time(event.timestamp, ctx)
        changed = repo.upsert_allowlist_status(
            security.id,
            event.wallet,
            AllowlistStatus.approved.value,
            slot=ctx.slot,
            event_index=ctx.event_index,
            approved_by=event.approved_by,
            approved_at=approved_at,
        )
        if not changed:
            result.skipped_reason = "stale"
            return result

        result.applied.append("allowlist")
        log.info("wallet_approved", mint=event.token_mint, wallet=event.wallet, slot=ctx.slot)
        self.notifications.publish(
            ChangeType.wallet_approved,
            event.token_mint,
            {"wallet": event.wallet, "approved_by": event.approved_by, "slot": ctx.slot},
        )
        return result

    def _wallet_revoked(self, event: WalletRevoked, ctx: EventContext) -> ProjectionResult:
        result = ProjectionResult(kind=event.kind, security_mint=event.token_mint)
        security = self._security_or_skip(event.token_mint, event.kind, ctx)
        if security is None:
            result.skipped_reason = "unknown_security"
            return result

        changed = repo.upsert_allowlist_status(
            security.id,
            event.wallet,
            AllowlistStatus.revoked.value,
            slot=ctx.slot,
            event_index=ctx.event_index,
            revoked_at=_event_time(event.timestamp, ctx),
        )
        if not changed:
            result.skipped_reason = "stale"
            return result

        result.applied.append("allowlist")
        log.info("wallet_revoked", mint=event.token_mint, wallet=event.wallet, slot=ctx.slot)
        self.notifications.publish(
            ChangeType.wallet_revoked,
            event.token_mint,
            {"wallet": event.wallet, "revoked_by": event.revoked_by, "slot": ctx.slot},
        )
        return result

    def _tokens_minted(self, event: TokensMinted, ctx: EventContext) -> ProjectionResult:
        result = ProjectionResult(kind=event.kind, security_mint=event.token_mint)
        security = self._security_or_skip(event.token_mint, event.kind, ctx)
        if security is None:
            result.skipped_reason = "unknown_security"
            return result

        if repo.apply_supply_delta(security.id, event.amount, mark=self._mark(ctx, SUPPLY)):
            result.applied.append(SUPPLY)
        if repo.apply_balance_delta(
            security.id, event.recipient, event.amount, ctx.slot, mark=self._mark(ctx, RECIPIENT)
        ):
            result.applied.append(RECIPIENT)

        if not result.changed:
            result.skipped_reason = "duplicate"
            return result

        log.info("tokens_minted", mint=event.token_mint, recipient=event.recipient, amount=event.amount, slot=ctx.slot)
        self.notifications.publish(
            ChangeType.tokens_minted,
            event.token_mint,
            {"recipient": event.recipient, "amount": event.amount, "new_supply": event.new_supply, "slot": ctx.slot},
        )
        if RECIPIENT in result.applied:
            self._cap_table_updated(event.token_mint, ctx)
        return result

    def _tokens_transferred(self, event: TokensTransferred, ctx: EventContext) -> ProjectionResult:
        result = ProjectionResult(kind=event.kind, security_mint=event.token_mint)
        security = self._security_or_skip(event.token_mint, event.kind, ctx)
        if security is None:
            result.skipped_reason = "unknown_security"
            return result

        recorded = repo.insert_transfer(
            {
                "security_id": security.id,
                "transaction_signature": ctx.signature,
                "from_wallet": event.from_wallet,
                "to_wallet": event.to_wallet,
                "amount": event.amount,
                "slot": ctx.slot,
                "block_time": ctx.block_time,
                "status": "confirmed",
            }
        )
        if recorded:
            result.applied.append("transfer")
        if repo.apply_balance_delta(
            security.id, event.from_wallet, -event.amount, ctx.slot, mark=self._mark(ctx, SENDER)
        ):
            result.applied.append(SENDER)
        if repo.apply_balance_delta(
            security.id, event.to_wallet, event.amount, ctx.slot, mark=self._mark(ctx, RECIPIENT)
        ):
            result.applied.append(RECIPIENT)

        if not result.changed:
            result.skipped_reason = "duplicate"
            return result

        log.info(
            "tokens_transferred",
            mint=event.token_mint,
            from_wallet=event.from_wallet,
            to_wallet=event.to_wallet,
            amount=event.amount,
            slot=ctx.slot,
        )
        self.notifications.publish(
            ChangeType.tokens_transferred,
            event.token_mint,
            {
                "from": event.from_wallet,
                "to": event.to_wallet,
                "amount": event.amount,
                "signature": ctx.signature,
                "slot": ctx.slot,
            },
        )
        if SENDER in result.applied or RECIPIENT in result.applied:
            self._cap_table_updated(event.token_mint, ctx)
        return result

    def _cap_table_updated(self, mint: str, ctx: EventContext) -> None:
        self.notifications.publish(ChangeType.cap_table_updated, mint, {"slot": ctx.slot, "signature": ctx.signature})
