"""
Corporate actions: stock split and symbol change.

A stock split is a forward-only saga. Each step is idempotent and the last
completed step is persisted on the action record, so a split that failed
part-way can be resumed with ``resume_stock_split`` instead of rolled back.
Balances of the source security are never modified.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import structlog

from captable_mirror.contracts import (
    ActionStatus,
    ActionType,
    ChangeType,
    StockSplitParams,
    StockSplitResult,
    SymbolChangeParams,
    SymbolChangeResult,
)
from captable_mirror.db import repo
from captable_mirror.db.models import CorporateAction, Security
from captable_mirror.errors import ConflictError, NotFoundError, PartialFailureError, ValidationError
from captable_mirror.notifications import NotificationChannel
from captable_mirror.validators import (
    generate_identity,
    is_valid_split_ratio,
    is_valid_symbol,
    is_valid_token_name,
    require_identity,
)

log = structlog.get_logger(__name__)

CREATE_SECURITY = "create_security"
RECORD_ACTION = "record_action"
COPY_ALLOWLIST = "copy_allowlist"
MIGRATE_BALANCES = "migrate_balances"
SET_SUPPLY = "set_supply"
RETIRE_SOURCE = "retire_source"
COMPLETE = "complete"

# steps that run after the action record exists, in order
SPLIT_STEPS: List[str] = [COPY_ALLOWLIST, MIGRATE_BALANCES, SET_SUPPLY, RETIRE_SOURCE, COMPLETE]


def _validate_metadata(symbol: str, name: str) -> None:
    if not is_valid_symbol(symbol):
        raise ValidationError(
            f"Invalid symbol: {symbol!r} (3-10 uppercase letters)", details={"field": "new_symbol"}
        )
    if not is_valid_token_name(name):
        raise ValidationError(f"Invalid name: {name!r} (2-50 characters)", details={"field": "new_name"})


def validate_stock_split(params: StockSplitParams) -> None:
    require_identity(params.token_mint, "token_mint")
    require_identity(params.executed_by, "executed_by")
    if params.new_mint is not None:
        require_identity(params.new_mint, "new_mint")
        if params.new_mint == params.token_mint:
            raise ValidationError("new_mint must differ from token_mint", details={"field": "new_mint"})
    if not is_valid_split_ratio(params.split_ratio):
        raise ValidationError(
            f"Invalid split ratio: {params.split_ratio!r} (1-1000)", details={"field": "split_ratio"}
        )
    _validate_metadata(params.new_symbol, params.new_name)


def validate_symbol_change(params: SymbolChangeParams) -> None:
    require_identity(params.token_mint, "token_mint")
    require_identity(params.executed_by, "executed_by")
    _validate_metadata(params.new_symbol, params.new_name)


class CorporateActionWorkflow:
    def __init__(
        self,
        notifications: Optional[NotificationChannel] = None,
        program_id: Optional[str] = None,
        identity_factory: Callable[[], str] = generate_identity,
    ) -> None:
        self.notifications = notifications or NotificationChannel()
        self.program_id = program_id
        self.identity_factory = identity_factory

    # --- stock split --------------------------------------------------------

    def execute_stock_split(self, params: StockSplitParams) -> StockSplitResult:
        validate_stock_split(params)

        source = repo.get_security(params.token_mint)
        if source is None:
            raise NotFoundError("Security", params.token_mint)
        if not source.is_active:
            raise ConflictError(
                f"Security {params.token_mint} is inactive (replaced by {source.replaced_by})",
                details={"replaced_by": source.replaced_by},
            )

        holders = repo.load_positive_balances(source.id)
        new_mint = params.new_mint or self.identity_factory()
        log.info(
            "stock_split_started",
            mint=params.token_mint,
            new_mint=new_mint,
            split_ratio=params.split_ratio,
            holders=len(holders),
        )

        result = StockSplitResult(
            success=False,
            old_mint=params.token_mint,
            split_ratio=params.split_ratio,
            holders_expected=len(holders),
        )

        try:
            new_security = self._create_security(source, new_mint, params)
        except Exception as exc:
            log.error("stock_split_failed", mint=params.token_mint, step=CREATE_SECURITY, error=str(exc))
            result.failed_step = CREATE_SECURITY
            result.error = str(exc)
            self._publish_split(result, ActionStatus.failed)
            return result
        result.new_mint = new_mint

        try:
            action_id = repo.insert_corporate_action(
                {
                    "security_id": source.id,
                    "action_type": ActionType.stock_split.value,
                    "parameters": {
                        "old_mint": params.token_mint,
                        "new_mint": new_mint,
                        "split_ratio": params.split_ratio,
                        "new_symbol": params.new_symbol,
                        "new_name": params.new_name,
                        "holders_expected": len(holders),
                    },
                    "status": ActionStatus.in_progress.value,
                    "current_step": RECORD_ACTION,
                    "executed_by": params.executed_by,
                    "transaction_signature": params.transaction_signature,
                },
            )
        except Exception as exc:
            log.error("stock_split_failed", mint=params.token_mint, step=RECORD_ACTION, error=str(exc))
            result.failed_step = RECORD_ACTION
            result.error = str(exc)
            self._publish_split(result, ActionStatus.failed)
            return result
        result.action_id = action_id

        return self._run_steps(result, action_id, source, new_security, params.split_ratio, SPLIT_STEPS)

    def resume_stock_split(self, action_id: int) -> StockSplitResult:
        action = repo.get_corporate_action(action_id)
        if action is None:
            raise NotFoundError("Corporate action", action_id)
        if action.action_type != ActionType.stock_split:
            raise ValidationError(f"Corporate action {action_id} is not a stock split")

        parameters: Dict[str, Any] = dict(action.parameters or {})
        source = repo.get_security_by_id(action.security_id)
        new_security = repo.get_security(parameters.get("new_mint", ""))
        if source is None or new_security is None:
            raise NotFoundError("Security", parameters.get("new_mint") if source else action.security_id)

        ratio = int(parameters["split_ratio"])
        result = StockSplitResult(
            success=False,
            old_mint=source.mint_address,
            new_mint=new_security.mint_address,
            split_ratio=ratio,
            holders_expected=int(parameters.get("holders_expected", 0)),
            action_id=action.id,
        )

        if action.status == ActionStatus.completed:
            result.success = True
            result.holders_transitioned = action.holders_migrated
            return result

        remaining = self._remaining_steps(action)
        log.info("stock_split_resumed", action_id=action.id, from_step=remaining[0] if remaining else None)
        repo.update_corporate_action(action.id, status=ActionStatus.in_progress.value, error=None)
        return self._run_steps(result, action.id, source, new_security, ratio, remaining)

    def _remaining_steps(self, action: CorporateAction) -> List[str]:
        if action.current_step in SPLIT_STEPS:
            return SPLIT_STEPS[SPLIT_STEPS.index(action.current_step) + 1:]
        return list(SPLIT_STEPS)

    def _create_security(self, source: Security, new_mint: str, params: StockSplitParams) -> Security:
        inserted, new_security = repo.insert_security(
            {
                "mint_address": new_mint,
                "symbol": params.new_symbol,
                "name": params.new_name,
                "decimals": source.decimals,
                "total_supply": 0,
                "current_supply": 0,
                "program_id": self.program_id or source.program_id,
                "is_active": True,
                "previous_mint": source.mint_address,
            }
        )
        if not inserted:
            raise ConflictError(f"Security already exists: {new_mint}")
        log.info("split_security_created", mint=source.mint_address, new_mint=new_mint, security_id=new_security.id)
        return new_security

    def _run_steps(
        self,
        result: StockSplitResult,
        action_id: int,
        source: Security,
        new_security: Security,
        ratio: int,
        steps: List[str],
    ) -> StockSplitResult:
        for step in steps:
            try:
                self._run_step(step, action_id, source, new_security, ratio)
            except Exception as exc:
                result.holders_transitioned = self._migrated_count(new_security)
                result.failed_step = step
                result.error = str(exc)
                log.error(
                    "stock_split_failed",
                    action_id=action_id,
                    mint=source.mint_address,
                    new_mint=new_security.mint_address,
                    step=step,
                    holders_migrated=result.holders_transitioned,
                    error=str(exc),
                )
                self._mark_failed(action_id, result)
                self._publish_split(result, ActionStatus.failed)
                return result
            repo.update_corporate_action(action_id, current_step=step)

        result.success = True
        result.holders_transitioned = repo.count_positive_balances(new_security.id)
        log.info(
            "stock_split_completed",
            action_id=action_id,
            mint=source.mint_address,
            new_mint=new_security.mint_address,
            holders=result.holders_transitioned,
        )
        self._publish_split(result, ActionStatus.completed)
        return result

    def _run_step(self, step: str, action_id: int, source: Security, new_security: Security, ratio: int) -> None:
        if step == COPY_ALLOWLIST:
            copied = 0
            for entry in repo.load_approved_allowlist(source.id):
                if repo.copy_allowlist_entry(new_security.id, entry):
                    copied += 1
            log.info("split_allowlist_copied", action_id=action_id, copied=copied)
        elif step == MIGRATE_BALANCES:
            self._migrate_balances(action_id, source, new_security, ratio)
        elif step == SET_SUPPLY:
            supply = repo.sum_positive_balances(new_security.id)
            repo.update_security(new_security.id, current_supply=supply, total_supply=supply)
        elif step == RETIRE_SOURCE:
            repo.update_security(source.id, is_active=False, replaced_by=new_security.mint_address)
        elif step == COMPLETE:
            repo.update_corporate_action(action_id, status=ActionStatus.completed.value, error=None)
        else:
            raise ValueError(f"unknown split step: {step}")

    def _migrate_balances(self, action_id: int, source: Security, new_security: Security, ratio: int) -> None:
        failures: List[str] = []
        for holder in repo.load_positive_balances(source.id):
            try:
                repo.set_balance(new_security.id, holder.wallet_address, int(holder.balance) * ratio, int(holder.slot))
            except Exception as exc:
                failures.append(holder.wallet_address)
                log.warning("split_holder_migration_failed", action_id=action_id, wallet=holder.wallet_address, error=str(exc))

        migrated = repo.count_positive_balances(new_security.id)
        repo.update_corporate_action(action_id, holders_migrated=migrated)
        if failures:
            raise PartialFailureError(
                f"{len(failures)} holder(s) failed to migrate",
                step=MIGRATE_BALANCES,
                new_mint=new_security.mint_address,
                holders_migrated=migrated,
                action_id=action_id,
            )

    def _migrated_count(self, new_security: Security) -> int:
        try:
            return repo.count_positive_balances(new_security.id)
        except Exception as exc:
            log.error("split_progress_unavailable", new_mint=new_security.mint_address, error=str(exc))
            return 0

    def _mark_failed(self, action_id: int, result: StockSplitResult) -> None:
        try:
            repo.update_corporate_action(
                action_id,
                status=ActionStatus.failed.value,
                error=f"{result.failed_step}: {result.error}",
                holders_migrated=result.holders_transitioned,
            )
        except Exception as exc:
            log.error("corporate_action_update_failed", action_id=action_id, error=str(exc))

    def _publish_split(self, result: StockSplitResult, status: ActionStatus) -> None:
        self.notifications.publish(
            ChangeType.corporate_action,
            result.old_mint,
            {
                "action_type": ActionType.stock_split.value,
                "status": status.value,
                "action_id": result.action_id,
                "new_mint": result.new_mint,
                "split_ratio": result.split_ratio,
                "holders_transitioned": result.holders_transitioned,
                "failed_step": result.failed_step,
            },
        )

    # --- symbol change ------------------------------------------------------

    def change_symbol(self, params: SymbolChangeParams) -> SymbolChangeResult:
        validate_symbol_change(params)
        security = repo.get_security(params.token_mint)
        if security is None:
            raise NotFoundError("Security", params.token_mint)

        old_symbol, old_name = security.symbol, security.name
        try:
            action_id = repo.rename_security(
                security.id,
                params.new_symbol,
                params.new_name,
                {
                    "security_id": security.id,
                    "action_type": ActionType.symbol_change.value,
                    "parameters": {
                        "old_symbol": old_symbol,
                        "new_symbol": params.new_symbol,
                        "old_name": old_name,
                        "new_name": params.new_name,
                    },
                    "status": ActionStatus.completed.value,
                    "current_step": COMPLETE,
                    "executed_by": params.executed_by,
                    "transaction_signature": params.transaction_signature,
                },
            )
        except Exception as exc:
            log.error("symbol_change_failed", mint=params.token_mint, error=str(exc))
            return SymbolChangeResult(
                success=False,
                token_mint=params.token_mint,
                old_symbol=old_symbol,
                new_symbol=params.new_symbol,
                error=str(exc),
            )

        log.info("symbol_changed", mint=params.token_mint, old_symbol=old_symbol, new_symbol=params.new_symbol)
        self.notifications.publish(
            ChangeType.corporate_action,
            params.token_mint,
            {
                "action_type": ActionType.symbol_change.value,
                "status": ActionStatus.completed.value,
                "action_id": action_id,
                "old_symbol": old_symbol,
                "new_symbol": params.new_symbol,
                "new_name": params.new_name,
            },
        )
        return SymbolChangeResult(
            success=True,
            token_mint=params.token_mint,
            old_symbol=old_symbol,
            new_symbol=params.new_symbol,
            action_id=action_id,
        )
