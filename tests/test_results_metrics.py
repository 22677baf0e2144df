from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from engine.results import (
    ResultAggregator,
    annualized_return,
    annualized_sharpe,
    calmar_ratio,
    profit_factor,
    sortino_ratio,
    total_turnover,
    trade_sharpe,
)
from shared.models.models import TRADE_KIND_TP_LEVEL, EquityPoint, Trade

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _curve(equities: list[float], step: timedelta = timedelta(days=1)) -> list[EquityPoint]:
    return [
        EquityPoint(ts=T0 + i * step, balance=e, position=0.0, price=1.0, equity=e, exposure=0.0, pnl=e - equities[0])
        for i, e in enumerate(equities)
    ]


def _closed(entry: float, exit_: float, qty: float = 1.0) -> Trade:
    return Trade(
        entry_time=T0,
        entry_price=entry,
        quantity=qty,
        exit_time=T0 + timedelta(hours=1),
        exit_price=exit_,
        pnl=(exit_ - entry) * qty,
    )


def test_profit_factor_rules():
    assert profit_factor([3.0, -1.0, -0.5]) == pytest.approx(2.0)
    assert profit_factor([1.0, 2.0]) == math.inf
    assert profit_factor([]) == 0.0
    assert profit_factor([-1.0]) == 0.0


def test_trade_sharpe_uses_population_std():
    trades = [_closed(100.0, 102.0), _closed(100.0, 98.0), _closed(100.0, 103.0)]
    returns = [0.02, -0.02, 0.03]
    mu = sum(returns) / 3
    sigma = math.sqrt(sum((r - mu) ** 2 for r in returns) / 3)
    assert trade_sharpe(trades) == pytest.approx(mu / sigma)


def test_trade_sharpe_degenerate_cases():
    assert trade_sharpe([_closed(100.0, 101.0)]) == 0.0
    assert trade_sharpe([_closed(100.0, 101.0), _closed(50.0, 50.5)]) == 0.0


def test_annualized_return_over_one_year():
    curve = [_curve([100.0])[0], EquityPoint(T0 + timedelta(days=365.25), 110.0, 0.0, 1.0, 110.0, 0.0, 10.0)]
    assert annualized_return(curve, 100.0) == pytest.approx(0.10)
    assert annualized_return(curve[:1], 100.0) == 0.0


def test_annualized_sharpe_scales_with_period_frequency():
    equities = [100.0, 101.0, 100.5, 102.0, 101.0]
    daily = annualized_sharpe(_curve(equities, timedelta(days=1)))
    hourly = annualized_sharpe(_curve(equities, timedelta(hours=1)))
    assert daily != 0.0
    assert hourly == pytest.approx(daily * math.sqrt(24))
    assert annualized_sharpe(_curve([100.0, 100.0, 100.0])) == 0.0


def test_sortino_ratio():
    assert sortino_ratio(_curve([100.0, 101.0, 102.0])) == math.inf
    assert sortino_ratio(_curve([100.0, 100.0])) == 0.0

    curve = _curve([100.0, 110.0, 99.0])
    r = [0.1, 99.0 / 110.0 - 1.0]
    expected = (sum(r) / 2) / math.sqrt(r[1] ** 2)
    assert sortino_ratio(curve) == pytest.approx(expected)


def test_calmar_ratio_rules():
    assert calmar_ratio(0.2, 0.1) == pytest.approx(2.0)
    assert calmar_ratio(0.2, 0.0) == math.inf
    assert calmar_ratio(-0.1, 0.0) == 0.0


def test_total_turnover_counts_entries_and_exits():
    entry = _closed(100.0, 110.0, qty=2.0)
    synthetic = Trade(
        entry_time=T0,
        entry_price=100.0,
        quantity=1.0,
        exit_time=T0,
        exit_price=105.0,
        kind=TRADE_KIND_TP_LEVEL,
    )
    # 入场 200 + 出场 220 + 合成行只算出场 105
    assert total_turnover([entry, synthetic], _curve([1000.0, 1050.0])) == pytest.approx(525.0 / 1025.0)
    assert total_turnover([entry], []) == 0.0


def test_aggregate_counts_and_summary():
    trades = [_closed(100.0, 102.0), _closed(100.0, 99.0), Trade(entry_time=T0, entry_price=100.0, quantity=1.0)]
    res = ResultAggregator().aggregate(
        start_balance=1000.0,
        end_balance=1001.0,
        final_equity=1001.0,
        final_position=0.0,
        max_drawdown=0.01,
        max_intra_cycle_drawdown=0.005,
        avg_exposure=0.2,
        max_exposure=0.5,
        tp_mode="fixed",
        trades=trades,
        cycles=[],
        equity_curve=_curve([1000.0, 1001.0]),
    )
    assert res.total_trades == 3
    assert res.closed_trades == 2
    assert res.winning_trades == 1
    assert res.losing_trades == 1
    assert res.win_rate == 0.5
    assert res.profit_factor == pytest.approx(2.0)
    assert res.total_return == pytest.approx(0.001)

    summary = res.to_summary()
    assert summary["total_trades"] == 3
    assert "trades" not in summary
    assert "dynamic_tp_calculations" not in summary
    assert "hedge_ratio" not in summary
