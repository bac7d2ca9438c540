from __future__ import annotations

import pytest

from captable_mirror.contracts import (
    ChangeType,
    EventContext,
    StockSplitParams,
    SymbolChangeParams,
    WalletApproved,
    WalletRevoked,
)
from captable_mirror.corporate_actions import MIGRATE_BALANCES, CorporateActionWorkflow
from captable_mirror.db import repo
from captable_mirror.errors import ConflictError, NotFoundError, ValidationError
from captable_mirror.notifications import NotificationChannel
from captable_mirror.ownership import OwnershipEngine
from captable_mirror.validators import generate_identity


@pytest.fixture
def workflow(sink) -> CorporateActionWorkflow:
    return CorporateActionWorkflow(notifications=NotificationChannel([sink]))


@pytest.fixture
def acme(ledger, wallets):
    a, b, c = wallets(3)
    mint = ledger.init()
    ledger.mint(mint, a, 600_000, slot=100)
    ledger.mint(mint, b, 400_000, slot=101)
    ledger.projector.apply(WalletApproved(token_mint=mint, wallet=a), EventContext(signature="ap-a", slot=102))
    ledger.projector.apply(WalletApproved(token_mint=mint, wallet=b), EventContext(signature="ap-b", slot=103))
    ledger.projector.apply(WalletApproved(token_mint=mint, wallet=c), EventContext(signature="ap-c", slot=104))
    ledger.projector.apply(WalletRevoked(token_mint=mint, wallet=c), EventContext(signature="rv-c", slot=105))
    return mint, a, b, c


def _split(mint: str, ratio: int = 7, **kw) -> StockSplitParams:
    return StockSplitParams(
        token_mint=mint,
        split_ratio=ratio,
        new_symbol=kw.pop("new_symbol", "ACMEX"),
        new_name=kw.pop("new_name", "Acme Corp (post-split)"),
        executed_by=kw.pop("executed_by", generate_identity()),
        **kw,
    )


def test_seven_for_one_split(workflow, acme, sink):
    mint, a, b, c = acme

    result = workflow.execute_stock_split(_split(mint, 7))

    assert result.success
    assert result.holders_expected == 2
    assert result.holders_transitioned == 2
    new = repo.get_security(result.new_mint)
    assert new.current_supply == 7_000_000
    assert new.total_supply == 7_000_000
    assert new.symbol == "ACMEX"
    assert new.previous_mint == mint
    assert int(repo.get_balance(new.id, a).balance) == 4_200_000
    assert int(repo.get_balance(new.id, b).balance) == 2_800_000
    # holders keep the position of their last change
    assert int(repo.get_balance(new.id, a).slot) == 100

    old = repo.get_security(mint)
    assert not old.is_active
    assert old.replaced_by == result.new_mint
    assert int(repo.get_balance(old.id, a).balance) == 600_000

    engine = OwnershipEngine()
    assert engine.is_wallet_approved(result.new_mint, a)
    assert engine.is_wallet_approved(result.new_mint, b)
    assert not engine.is_wallet_approved(result.new_mint, c)

    action = repo.get_corporate_action(result.action_id)
    assert action.status == "completed"
    assert action.current_step == "complete"
    assert action.holders_migrated == 2
    assert action.parameters["split_ratio"] == 7

    published = sink.of_type(ChangeType.corporate_action)
    assert published[-1].data["status"] == "completed"
    assert published[-1].data["new_mint"] == result.new_mint


def test_split_uses_supplied_new_mint(workflow, acme):
    mint = acme[0]
    target = generate_identity()
    result = workflow.execute_stock_split(_split(mint, 2, new_mint=target))
    assert result.new_mint == target
    assert repo.get_security(target).current_supply == 2_000_000


@pytest.mark.parametrize(
    "overrides",
    [
        {"ratio": 0},
        {"ratio": 1001},
        {"new_symbol": "ab"},
        {"new_symbol": "TOOLONGSYMBOL"},
        {"new_name": "x"},
        {"executed_by": "nope"},
    ],
)
def test_split_validation_happens_before_any_write(workflow, acme, overrides):
    mint = acme[0]
    ratio = overrides.pop("ratio", 7)
    with pytest.raises(ValidationError):
        workflow.execute_stock_split(_split(mint, ratio, **overrides))
    security = repo.get_security(mint)
    assert security.is_active
    assert repo.list_corporate_actions(security.id) == []


def test_split_of_unknown_or_retired_security(workflow, acme):
    with pytest.raises(NotFoundError):
        workflow.execute_stock_split(_split(generate_identity()))

    mint = acme[0]
    assert workflow.execute_stock_split(_split(mint)).success
    with pytest.raises(ConflictError):
        workflow.execute_stock_split(_split(mint))


def test_split_with_existing_target_mint_fails_cleanly(workflow, acme, ledger):
    mint = acme[0]
    taken = ledger.init(symbol="TAKEN")
    result = workflow.execute_stock_split(_split(mint, 3, new_mint=taken))
    assert not result.success
    assert result.failed_step == "create_security"
    assert repo.get_security(mint).is_active


def test_partial_failure_then_resume(workflow, acme, monkeypatch, sink):
    mint, a, b, _ = acme
    real_set_balance = repo.set_balance

    def failing_for_b(security_id, wallet, balance, slot):
        if wallet == b:
            raise RuntimeError("deadlock detected")
        return real_set_balance(security_id, wallet, balance, slot)

    monkeypatch.setattr(repo, "set_balance", failing_for_b)
    failed = workflow.execute_stock_split(_split(mint, 7))

    assert not failed.success
    assert failed.failed_step == MIGRATE_BALANCES
    assert failed.holders_transitioned == 1
    assert failed.holders_expected == 2
    action = repo.get_corporate_action(failed.action_id)
    assert action.status == "failed"
    assert action.current_step == "copy_allowlist"
    assert action.error.startswith("migrate_balances:")
    assert repo.get_security(mint).is_active
    assert sink.of_type(ChangeType.corporate_action)[-1].data["status"] == "failed"

    monkeypatch.setattr(repo, "set_balance", real_set_balance)
    resumed = workflow.resume_stock_split(failed.action_id)

    assert resumed.success
    assert resumed.new_mint == failed.new_mint
    assert resumed.holders_transitioned == 2
    new = repo.get_security(failed.new_mint)
    assert new.current_supply == 7_000_000
    assert int(repo.get_balance(new.id, a).balance) == 4_200_000
    assert not repo.get_security(mint).is_active
    assert repo.get_corporate_action(failed.action_id).status == "completed"

    again = workflow.resume_stock_split(failed.action_id)
    assert again.success
    assert repo.get_security(failed.new_mint).current_supply == 7_000_000


def test_resume_rejects_unknown_or_non_split_actions(workflow, acme):
    with pytest.raises(NotFoundError):
        workflow.resume_stock_split(999)

    changed = workflow.change_symbol(
        SymbolChangeParams(token_mint=acme[0], new_symbol="ACMQ", new_name="Acme Q", executed_by=generate_identity())
    )
    with pytest.raises(ValidationError):
        workflow.resume_stock_split(changed.action_id)


def test_change_symbol(workflow, acme, sink):
    mint, a, _, _ = acme

    result = workflow.change_symbol(
        SymbolChangeParams(
            token_mint=mint,
            new_symbol="NEWCO",
            new_name="NewCo Holdings",
            executed_by=generate_identity(),
        )
    )

    assert result.success
    assert result.old_symbol == "ACME"
    security = repo.get_security(mint)
    assert security.symbol == "NEWCO"
    assert security.name == "NewCo Holdings"
    assert security.mint_address == mint
    assert int(repo.get_balance(security.id, a).balance) == 600_000
    action = repo.get_corporate_action(result.action_id)
    assert action.action_type == "symbol_change"
    assert action.status == "completed"
    assert action.parameters["old_symbol"] == "ACME"
    assert sink.of_type(ChangeType.corporate_action)[-1].data["new_symbol"] == "NEWCO"


def test_change_symbol_validation_and_not_found(workflow, acme):
    with pytest.raises(ValidationError):
        workflow.change_symbol(
            SymbolChangeParams(token_mint=acme[0], new_symbol="bad1", new_name="Fine Name", executed_by=generate_identity())
        )
    with pytest.raises(NotFoundError):
        workflow.change_symbol(
            SymbolChangeParams(
                token_mint=generate_identity(), new_symbol="GOOD", new_name="Fine Name", executed_by=generate_identity()
            )
        )
    assert repo.get_security(acme[0]).symbol == "ACME"


def test_change_symbol_rolls_back_when_action_cannot_be_recorded(workflow, acme, monkeypatch):
    mint = acme[0]

    def refuse(**fields):
        raise RuntimeError("corporate_actions table locked")

    monkeypatch.setattr(repo, "CorporateAction", refuse)
    result = workflow.change_symbol(
        SymbolChangeParams(token_mint=mint, new_symbol="NEWCO", new_name="NewCo Holdings", executed_by=generate_identity())
    )

    monkeypatch.undo()
    assert not result.success
    assert "table locked" in result.error
    security = repo.get_security(mint)
    assert security.symbol == "ACME"
    assert security.name == "Acme Corp"
    assert repo.list_corporate_actions(security.id) == []
