"""Tests for reconciling settlements whose wallet debit was never confirmed."""
from datetime import timedelta
from decimal import Decimal

import pytest

import reconcile
from errors import OutcomeUnknownError, PartialFailureError, StoreUnavailableError
from ledger import LedgerStore
from models import SettlementState
from settlement import PurchaseLine


def _leave_unresolved(coordinator, monkeypatch, customer_id, lines, debit_applied: bool):
    original = LedgerStore.debit

    def flaky_debit(self, cust, amount, reference):
        if debit_applied:
            original(self, cust, amount, reference)
        raise OutcomeUnknownError("commit acknowledgement lost")

    monkeypatch.setattr(LedgerStore, "debit", flaky_debit)
    with pytest.raises(PartialFailureError) as exc_info:
        coordinator.settle_purchase(lines, customer_id)
    monkeypatch.setattr(LedgerStore, "debit", original)
    return exc_info.value.reference


def test_reconcile_completes_when_ledger_applied_the_debit(coordinator, ledger, seed, stock, settlements, monkeypatch):
    ref = _leave_unresolved(coordinator, monkeypatch, seed.rich, [PurchaseLine(seed.p10, 2)], debit_applied=True)

    report = coordinator.reconcile(older_than=timedelta(0))

    assert report.completed == [ref]
    assert report.aborted == []
    [record] = settlements()
    assert record.state == SettlementState.COMPLETED
    assert record.new_balance == Decimal("980.00")
    assert stock(seed.p10) == 3
    assert ledger.get_balance(seed.rich) == Decimal("980.00")


def test_reconcile_gives_stock_back_when_debit_never_happened(coordinator, ledger, seed, stock, settlements, monkeypatch):
    ref = _leave_unresolved(coordinator, monkeypatch, seed.rich, [PurchaseLine(seed.p10, 2), PurchaseLine(seed.p5, 1)],
                            debit_applied=False)
    assert stock(seed.p10) == 3

    report = coordinator.reconcile(older_than=timedelta(0))

    assert report.aborted == [ref]
    assert settlements()[0].state == SettlementState.ABORTED
    assert stock(seed.p10) == 5
    assert stock(seed.p5) == 10
    assert ledger.get_balance(seed.rich) == Decimal("1000.00")


def test_reconcile_skips_recent_settlements(coordinator, seed, stock, settlements, monkeypatch):
    _leave_unresolved(coordinator, monkeypatch, seed.rich, [PurchaseLine(seed.p10, 1)], debit_applied=False)

    report = coordinator.reconcile(older_than=timedelta(hours=1))

    assert report.completed == report.aborted == report.failed == []
    assert settlements()[0].state == SettlementState.UNRESOLVED
    assert stock(seed.p10) == 4


def test_reconcile_is_safe_to_repeat(coordinator, seed, stock, monkeypatch):
    _leave_unresolved(coordinator, monkeypatch, seed.rich, [PurchaseLine(seed.p10, 1)], debit_applied=False)

    coordinator.reconcile(older_than=timedelta(0))
    second = coordinator.reconcile(older_than=timedelta(0))

    assert second.aborted == []
    assert stock(seed.p10) == 5


def test_reconcile_leaves_finished_settlements_alone(coordinator, seed, stock):
    coordinator.settle_purchase([PurchaseLine(seed.p10, 1)], seed.rich)

    report = coordinator.reconcile(older_than=timedelta(0))

    assert report.completed == report.aborted == []
    assert stock(seed.p10) == 4


def test_reconcile_cli(tmp_path, inventory_db, ledger_db, coordinator, seed, stock, monkeypatch, capsys):
    _leave_unresolved(coordinator, monkeypatch, seed.rich, [PurchaseLine(seed.p5, 3)], debit_applied=False)

    code = reconcile.main([
        "--inventory-url", inventory_db.url,
        "--ledger-url", ledger_db.url,
        "--older-than", "0",
    ])

    assert code == 0
    assert "aborted: ['" in capsys.readouterr().out
    assert stock(seed.p5) == 10


def test_debit_landing_after_reconcile_abort_is_refunded(coordinator, ledger, seed, stock, settlements, monkeypatch):
    original = LedgerStore.debit

    def slow_debit(self, cust, amount, reference):
        # reconciler runs while the debit is still on its way to the ledger
        report = coordinator.reconcile(older_than=timedelta(0))
        assert report.aborted == [reference]
        return original(self, cust, amount, reference)

    monkeypatch.setattr(LedgerStore, "debit", slow_debit)
    with pytest.raises(StoreUnavailableError):
        coordinator.settle_purchase([PurchaseLine(seed.p10, 2)], seed.rich)

    [record] = settlements()
    assert record.state == SettlementState.ABORTED
    assert stock(seed.p10) == 5
    assert ledger.get_balance(seed.rich) == Decimal("1000.00")
    refund = ledger.find_movement(f"refund:{record.reference}")
    assert refund is not None
    assert refund.kind == "refund"
    assert refund.amount == Decimal("20.00")
