"""回测结果与绩效指标汇总。"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from statistics import mean, median, pstdev
from typing import Any, Sequence

from algo.strategy.base import HedgeParameters
from engine.cycle_ledger import CycleSummary
from engine.dynamic_tp import DynamicTPRecord
from shared.models.models import TRADE_KIND_ENTRY, EquityPoint, Trade

SECONDS_PER_YEAR = 365.25 * 86400
STD_EPSILON = 1e-12


@dataclass(frozen=True)
class DynamicTPMetrics:
    """动态 TP 溯源统计。"""
    total_calculations: int = 0
    avg_tp_percent: float = 0.0
    min_tp_percent: float = 0.0
    max_tp_percent: float = 0.0
    avg_volatility: float = 0.0
    bounds_hit_count: int = 0
    strategy_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class BacktestResults:
    """一次回测的完整产出（报表/校验模块的唯一输入）。"""
    start_balance: float
    end_balance: float
    final_equity: float
    final_position: float
    total_return: float
    max_drawdown: float
    max_intra_cycle_drawdown: float = 0.0
    total_trades: int = 0
    closed_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    annualized_return: float = 0.0
    annualized_sharpe: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    total_turnover: float = 0.0
    avg_exposure: float = 0.0
    max_exposure: float = 0.0
    completed_cycles: int = 0
    tp_mode: str = "fixed"
    trades: list[Trade] = field(default_factory=list)
    cycles: list[CycleSummary] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    dynamic_tp: DynamicTPMetrics = field(default_factory=DynamicTPMetrics)
    hedge_parameters: HedgeParameters | None = None
    decision_errors: int = 0
    dynamic_tp_fallbacks: int = 0

    def to_summary(self) -> dict[str, Any]:
        """扁平化的标量指标（不含逐笔明细），便于 JSON/表格输出。"""
        summary: dict[str, Any] = {
            "tp_mode": self.tp_mode,
            "start_balance": self.start_balance,
            "end_balance": self.end_balance,
            "final_equity": self.final_equity,
            "final_position": self.final_position,
            "total_return": self.total_return,
            "max_drawdown": self.max_drawdown,
            "max_intra_cycle_drawdown": self.max_intra_cycle_drawdown,
            "total_trades": self.total_trades,
            "closed_trades": self.closed_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "profit_factor": self.profit_factor,
            "sharpe_ratio": self.sharpe_ratio,
            "annualized_return": self.annualized_return,
            "annualized_sharpe": self.annualized_sharpe,
            "sortino_ratio": self.sortino_ratio,
            "calmar_ratio": self.calmar_ratio,
            "total_turnover": self.total_turnover,
            "avg_exposure": self.avg_exposure,
            "max_exposure": self.max_exposure,
            "total_cycles": len(self.cycles),
            "completed_cycles": self.completed_cycles,
            "decision_errors": self.decision_errors,
            "dynamic_tp_fallbacks": self.dynamic_tp_fallbacks,
        }
        dyn = self.dynamic_tp
        if dyn.total_calculations:
            summary.update(
                {
                    "dynamic_tp_calculations": dyn.total_calculations,
                    "dynamic_tp_avg": dyn.avg_tp_percent,
                    "dynamic_tp_min": dyn.min_tp_percent,
                    "dynamic_tp_max": dyn.max_tp_percent,
                    "dynamic_tp_bounds_hit": dyn.bounds_hit_count,
                }
            )
        if self.hedge_parameters is not None:
            summary["hedge_ratio"] = self.hedge_parameters.hedge_ratio
            summary["hedge_tp_percent"] = self.hedge_parameters.hedge_tp_percent
            summary["hedge_sl_percent"] = self.hedge_parameters.hedge_sl_percent
        return summary


def profit_factor(pnls: Sequence[float]) -> float:
    """盈利总和 / 亏损绝对值总和；无亏损有盈利为 inf，无盈利为 0。"""
    total_profit = sum(p for p in pnls if p > 0)
    total_loss_abs = abs(sum(p for p in pnls if p < 0))
    if total_loss_abs > 0:
        return total_profit / total_loss_abs
    return float("inf") if total_profit > 0 else 0.0


def trade_sharpe(trades: Sequence[Trade]) -> float:
    """逐笔收益率 `pnl / (entry_price * qty)` 的均值 / 总体标准差。"""
    returns = []
    for t in trades:
        notional = t.entry_price * t.quantity
        if notional > 0:
            returns.append(t.pnl / notional)
    if len(returns) < 2:
        return 0.0
    sigma = pstdev(returns)
    if sigma < STD_EPSILON:
        return 0.0
    return mean(returns) / sigma


def _periods_per_year(curve: Sequence[EquityPoint]) -> float:
    """按权益点时间间隔中位数估计每年周期数；无法估计时按日线。"""
    deltas = []
    for prev, curr in zip(curve, curve[1:]):
        dt = (curr.ts - prev.ts).total_seconds()
        if dt > 0:
            deltas.append(dt)
    if not deltas:
        return 365.0
    return SECONDS_PER_YEAR / median(deltas)


def _period_returns(curve: Sequence[EquityPoint]) -> list[float]:
    return [
        curr.equity / prev.equity - 1.0
        for prev, curr in zip(curve, curve[1:])
        if prev.equity > 0
    ]


def annualized_return(curve: Sequence[EquityPoint], start_equity: float) -> float:
    if len(curve) < 2 or start_equity <= 0:
        return 0.0
    years = (curve[-1].ts - curve[0].ts).total_seconds() / SECONDS_PER_YEAR
    ratio = curve[-1].equity / start_equity
    if years <= 0 or ratio <= 0:
        return 0.0
    try:
        return ratio ** (1.0 / years) - 1.0
    except OverflowError:
        return float("inf")


def annualized_sharpe(curve: Sequence[EquityPoint]) -> float:
    returns = _period_returns(curve)
    if len(returns) < 2:
        return 0.0
    sigma = pstdev(returns)
    if sigma < STD_EPSILON:
        return 0.0
    return mean(returns) / sigma * math.sqrt(_periods_per_year(curve))


def sortino_ratio(curve: Sequence[EquityPoint]) -> float:
    """平均周期收益 / 下行偏差；没有下行周期时正收益为 inf，否则为 0。"""
    returns = _period_returns(curve)
    if not returns:
        return 0.0
    avg = mean(returns)
    downside = [r for r in returns if r < 0]
    if not downside:
        return float("inf") if avg > 0 else 0.0
    downside_dev = math.sqrt(sum(r * r for r in downside) / len(downside))
    if downside_dev < STD_EPSILON:
        return 0.0
    return avg / downside_dev


def calmar_ratio(ann_return: float, max_drawdown: float) -> float:
    if max_drawdown <= 0:
        return float("inf") if ann_return > 0 else 0.0
    return ann_return / max_drawdown


def total_turnover(trades: Sequence[Trade], curve: Sequence[EquityPoint]) -> float:
    """成交名义金额（入场 + 已有出场）/ 平均权益。"""
    notional = 0.0
    for t in trades:
        if t.kind == TRADE_KIND_ENTRY:
            notional += t.entry_notional
        notional += t.exit_notional
    equities = [p.equity for p in curve if p.equity > 0]
    denom = mean(equities) if equities else 0.0
    return notional / denom if denom > 0 else 0.0


def dynamic_tp_metrics(records: Sequence[DynamicTPRecord]) -> DynamicTPMetrics:
    if not records:
        return DynamicTPMetrics()
    tps = [r.calculated_tp for r in records]
    return DynamicTPMetrics(
        total_calculations=len(records),
        avg_tp_percent=mean(tps),
        min_tp_percent=min(tps),
        max_tp_percent=max(tps),
        avg_volatility=mean(r.market_volatility for r in records),
        bounds_hit_count=sum(1 for r in records if r.bounds_applied),
        strategy_counts=dict(Counter(r.strategy for r in records)),
    )


class ResultAggregator:
    """把主循环产生的成交/周期/权益流折叠成最终指标。"""

    def aggregate(
        self,
        *,
        start_balance: float,
        end_balance: float,
        final_equity: float,
        final_position: float,
        max_drawdown: float,
        max_intra_cycle_drawdown: float,
        avg_exposure: float,
        max_exposure: float,
        tp_mode: str,
        trades: list[Trade],
        cycles: list[CycleSummary],
        equity_curve: list[EquityPoint],
        dynamic_tp_records: Sequence[DynamicTPRecord] = (),
        hedge_parameters: HedgeParameters | None = None,
        decision_errors: int = 0,
        dynamic_tp_fallbacks: int = 0,
    ) -> BacktestResults:
        closed = [t for t in trades if t.exit_time is not None]
        pnls = [t.pnl for t in closed]
        wins = sum(1 for p in pnls if p > 0)
        losses = sum(1 for p in pnls if p < 0)

        ann_return = annualized_return(equity_curve, start_balance)
        return BacktestResults(
            start_balance=start_balance,
            end_balance=end_balance,
            final_equity=final_equity,
            final_position=final_position,
            total_return=(final_equity - start_balance) / start_balance if start_balance else 0.0,
            max_drawdown=max_drawdown,
            max_intra_cycle_drawdown=max_intra_cycle_drawdown,
            total_trades=len(trades),
            closed_trades=len(closed),
            winning_trades=wins,
            losing_trades=losses,
            win_rate=wins / len(closed) if closed else 0.0,
            profit_factor=profit_factor(pnls),
            sharpe_ratio=trade_sharpe(closed),
            annualized_return=ann_return,
            annualized_sharpe=annualized_sharpe(equity_curve),
            sortino_ratio=sortino_ratio(equity_curve),
            calmar_ratio=calmar_ratio(ann_return, max_drawdown),
            total_turnover=total_turnover(trades, equity_curve),
            avg_exposure=avg_exposure,
            max_exposure=max_exposure,
            completed_cycles=sum(1 for c in cycles if c.completed),
            tp_mode=tp_mode,
            trades=trades,
            cycles=cycles,
            equity_curve=equity_curve,
            dynamic_tp=dynamic_tp_metrics(dynamic_tp_records),
            hedge_parameters=hedge_parameters,
            decision_errors=decision_errors,
            dynamic_tp_fallbacks=dynamic_tp_fallbacks,
        )


def equity_curve_pairs(curve: Sequence[EquityPoint]) -> list[tuple[datetime, float]]:
    """(ts, equity) 二元组列表，供绘图使用。"""
    return [(p.ts, p.equity) for p in curve]
