"""DCA 周期账本（CycleLedger）。

当前累积周期财务状态的唯一来源：入场次数、成本/数量汇总、手续费、
剩余未卖数量、级别止盈已兑现的收益。均价永远由汇总值在查询时计算，
不缓存，也不回写历史成交行。

成本口径：手续费以 quote 计价，因此 net_qty == gross_qty；
gross_cost = 名义金额，net_cost = 名义金额 + 买入手续费。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from engine.errors import LedgerInvariantError
from engine.tp_ladder import TPLevelLadder

CONSERVATION_TOLERANCE = 1e-8


@dataclass(frozen=True)
class PartialExit:
    """一次级别止盈成交。"""
    tp_level: int
    quantity: float
    price: float
    timestamp: datetime
    pnl: float
    commission: float


@dataclass(frozen=True)
class CycleSummary:
    """周期快照：周期关闭或期末收尾时写入，之后不再变化。"""
    cycle_number: int
    start_time: datetime | None
    end_time: datetime | None
    entries: int
    avg_entry: float
    avg_gross_entry: float
    total_cost: float
    total_gross_cost: float
    total_commission: float
    target_price: float
    realized_pnl: float
    completed: bool
    mark_to_market_pnl: float = 0.0
    tp_levels_hit: int = 0
    partial_exits: tuple[PartialExit, ...] = ()
    final_exit_price: float = 0.0
    total_quantity: float = 0.0
    sold_quantity: float = 0.0
    remaining_quantity: float = 0.0


@dataclass
class _CycleState:
    start_time: datetime | None = None
    entries: int = 0
    net_cost_sum: float = 0.0
    gross_cost_sum: float = 0.0
    net_qty_sum: float = 0.0
    gross_qty_sum: float = 0.0
    commission_sum: float = 0.0
    sell_commission_sum: float = 0.0
    sold_qty_sum: float = 0.0
    remaining_qty: float = 0.0
    unrealized_pnl: float = 0.0
    partial_exits: list[PartialExit] = field(default_factory=list)


class CycleLedger:
    """
    Parameters
    ----------
    ladder:
        五级止盈计划；单 TP / 无 TP 模式为 None。
    base_tp_percent:
        周期开仓时初始化 ladder 用的基础百分比。
    on_cycle_complete:
        周期关闭回调（通常是 `strategy.on_cycle_complete`）。
    """

    def __init__(
        self,
        ladder: TPLevelLadder | None = None,
        base_tp_percent: float = 0.0,
        on_cycle_complete: Callable[[], None] | None = None,
    ):
        self.ladder = ladder
        self.base_tp_percent = float(base_tp_percent)
        self._on_cycle_complete = on_cycle_complete
        self.cycle_number = 0
        self.is_open = False
        self._state = _CycleState()

    # ---- 只读视图 -------------------------------------------------------

    @property
    def entries(self) -> int:
        return self._state.entries

    @property
    def start_time(self) -> datetime | None:
        return self._state.start_time

    @property
    def net_qty_sum(self) -> float:
        return self._state.net_qty_sum

    @property
    def gross_qty_sum(self) -> float:
        return self._state.gross_qty_sum

    @property
    def net_cost_sum(self) -> float:
        return self._state.net_cost_sum

    @property
    def gross_cost_sum(self) -> float:
        return self._state.gross_cost_sum

    @property
    def commission_sum(self) -> float:
        return self._state.commission_sum

    @property
    def sold_qty_sum(self) -> float:
        return self._state.sold_qty_sum

    @property
    def remaining_qty(self) -> float:
        return self._state.remaining_qty

    @property
    def unrealized_pnl(self) -> float:
        """级别止盈已兑现、但周期尚未关闭的累计收益。"""
        return self._state.unrealized_pnl

    @property
    def partial_exits(self) -> tuple[PartialExit, ...]:
        return tuple(self._state.partial_exits)

    @property
    def avg_entry(self) -> float:
        s = self._state
        return s.net_cost_sum / s.net_qty_sum if s.net_qty_sum > 0 else 0.0

    @property
    def avg_gross_entry(self) -> float:
        s = self._state
        return s.gross_cost_sum / s.gross_qty_sum if s.gross_qty_sum > 0 else 0.0

    # ---- 状态迁移 -------------------------------------------------------

    def open_if_needed(self, ts: datetime) -> bool:
        """没有打开的周期时开启新周期；返回是否新开。"""
        if self.is_open:
            return False
        self.cycle_number += 1
        self.is_open = True
        self._state = _CycleState(start_time=ts)
        if self.ladder is not None:
            self.ladder.initialize_levels(self.base_tp_percent)
        return True

    def record_entry(
        self,
        price: float,
        net_qty: float,
        gross_qty: float,
        commission: float,
    ) -> None:
        if not self.is_open:
            raise LedgerInvariantError("record_entry called without an open cycle")
        s = self._state
        s.entries += 1
        notional = price * gross_qty
        s.gross_cost_sum += notional
        s.net_cost_sum += notional + commission
        s.gross_qty_sum += gross_qty
        s.net_qty_sum += net_qty
        s.commission_sum += commission
        s.remaining_qty += net_qty

        if self.ladder is not None:
            if s.entries == 1:
                self.ladder.allocate_quantities(s.remaining_qty)
            else:
                self.ladder.on_new_entry_added(s.remaining_qty)

    def record_level_fill(
        self,
        *,
        tp_level: int,
        sold_qty: float,
        price: float,
        ts: datetime,
        commission: float,
        pnl: float,
    ) -> PartialExit:
        s = self._state
        s.remaining_qty -= sold_qty
        s.sold_qty_sum += sold_qty
        s.sell_commission_sum += commission
        s.unrealized_pnl += pnl
        exit_ = PartialExit(
            tp_level=tp_level,
            quantity=sold_qty,
            price=price,
            timestamp=ts,
            pnl=pnl,
            commission=commission,
        )
        s.partial_exits.append(exit_)
        self.check_invariants()
        return exit_

    def record_full_exit(self, sold_qty: float, commission: float) -> None:
        """单 TP 模式：一次卖出全部剩余数量。"""
        s = self._state
        s.remaining_qty -= sold_qty
        s.sold_qty_sum += sold_qty
        s.sell_commission_sum += commission
        self.check_invariants()

    def check_invariants(self) -> None:
        s = self._state
        if s.remaining_qty < -CONSERVATION_TOLERANCE:
            raise LedgerInvariantError(f"cycle {self.cycle_number} remaining qty negative: {s.remaining_qty}")
        drift = s.net_qty_sum - (s.sold_qty_sum + s.remaining_qty)
        if abs(drift) > CONSERVATION_TOLERANCE:
            raise LedgerInvariantError(f"cycle {self.cycle_number} quantity not conserved (drift={drift})")

    def close_and_summarize(
        self,
        ts: datetime,
        *,
        completed: bool,
        target_price: float = 0.0,
        realized_pnl: float | None = None,
        mark_to_market_pnl: float = 0.0,
        final_exit_price: float = 0.0,
    ) -> CycleSummary:
        """生成不可变周期快照并通知策略，然后清空周期状态。

        Parameters
        ----------
        realized_pnl:
            None 时使用级别止盈累计收益。
        """
        if not self.is_open:
            raise LedgerInvariantError("close_and_summarize called without an open cycle")
        s = self._state
        exits = tuple(s.partial_exits)
        if not final_exit_price and exits:
            final_exit_price = exits[-1].price
        summary = CycleSummary(
            cycle_number=self.cycle_number,
            start_time=s.start_time,
            end_time=ts,
            entries=s.entries,
            avg_entry=self.avg_entry,
            avg_gross_entry=self.avg_gross_entry,
            total_cost=s.net_cost_sum,
            total_gross_cost=s.gross_cost_sum,
            total_commission=s.commission_sum + s.sell_commission_sum,
            target_price=target_price,
            realized_pnl=s.unrealized_pnl if realized_pnl is None else realized_pnl,
            completed=completed,
            mark_to_market_pnl=mark_to_market_pnl,
            tp_levels_hit=len(exits),
            partial_exits=exits,
            final_exit_price=final_exit_price,
            total_quantity=s.net_qty_sum,
            sold_quantity=s.sold_qty_sum,
            remaining_quantity=max(0.0, s.remaining_qty),
        )

        if self._on_cycle_complete is not None:
            self._on_cycle_complete()

        self.is_open = False
        self._state = _CycleState()
        return summary
