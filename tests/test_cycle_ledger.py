from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from engine.cycle_ledger import CycleLedger
from engine.errors import LedgerInvariantError
from engine.tp_ladder import TPLevelLadder

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_avg_entry_is_fee_inclusive_and_computed_from_sums():
    ledger = CycleLedger()
    assert ledger.open_if_needed(T0)
    assert not ledger.open_if_needed(T0)
    ledger.record_entry(100.0, 1.0, 1.0, 0.1)
    ledger.record_entry(80.0, 1.0, 1.0, 0.08)

    assert ledger.entries == 2
    assert ledger.cycle_number == 1
    assert ledger.avg_gross_entry == pytest.approx(90.0)
    assert ledger.avg_entry == pytest.approx((180.0 + 0.18) / 2.0)
    assert ledger.remaining_qty == pytest.approx(2.0)


def test_level_fills_accumulate_and_summary_is_snapshot():
    ladder = TPLevelLadder()
    calls = []
    ledger = CycleLedger(ladder=ladder, base_tp_percent=0.05, on_cycle_complete=lambda: calls.append(1))
    ledger.open_if_needed(T0)
    ledger.record_entry(100.0, 10.0, 10.0, 0.0)
    assert [lvl.quantity for lvl in ladder.levels] == pytest.approx([2.0] * 5)

    ledger.record_level_fill(tp_level=1, sold_qty=2.0, price=101.0, ts=T0, commission=0.0, pnl=2.0)
    ledger.record_level_fill(tp_level=2, sold_qty=8.0, price=102.0, ts=T0, commission=0.0, pnl=16.0)
    assert ledger.unrealized_pnl == pytest.approx(18.0)
    assert ledger.remaining_qty == pytest.approx(0.0)

    summary = ledger.close_and_summarize(T0 + timedelta(hours=1), completed=True, target_price=102.0)
    assert summary.realized_pnl == pytest.approx(18.0)
    assert summary.tp_levels_hit == 2
    assert summary.final_exit_price == 102.0
    assert summary.sold_quantity == pytest.approx(10.0)
    assert calls == [1]

    assert not ledger.is_open
    assert ledger.entries == 0
    assert ledger.partial_exits == ()


def test_incomplete_close_still_notifies_strategy():
    calls = []
    ledger = CycleLedger(on_cycle_complete=lambda: calls.append(1))
    ledger.open_if_needed(T0)
    ledger.record_entry(100.0, 1.0, 1.0, 0.0)
    summary = ledger.close_and_summarize(T0, completed=False, realized_pnl=0.0, mark_to_market_pnl=-3.0)
    assert not summary.completed
    assert summary.mark_to_market_pnl == -3.0
    assert summary.remaining_quantity == pytest.approx(1.0)
    assert calls == [1]


def test_new_cycle_starts_fresh():
    ledger = CycleLedger()
    ledger.open_if_needed(T0)
    ledger.record_entry(100.0, 1.0, 1.0, 0.0)
    ledger.record_full_exit(1.0, 0.0)
    ledger.close_and_summarize(T0, completed=True)

    assert ledger.open_if_needed(T0 + timedelta(hours=1))
    assert ledger.cycle_number == 2
    assert ledger.net_qty_sum == 0
    assert ledger.start_time == T0 + timedelta(hours=1)


def test_overselling_violates_conservation():
    ledger = CycleLedger()
    ledger.open_if_needed(T0)
    ledger.record_entry(100.0, 1.0, 1.0, 0.0)
    with pytest.raises(LedgerInvariantError):
        ledger.record_full_exit(1.5, 0.0)


def test_entry_without_open_cycle_rejected():
    with pytest.raises(LedgerInvariantError):
        CycleLedger().record_entry(100.0, 1.0, 1.0, 0.0)
    with pytest.raises(LedgerInvariantError):
        CycleLedger().close_and_summarize(T0, completed=False)
