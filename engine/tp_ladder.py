"""五级渐进止盈（TP ladder）。

每个周期开仓时初始化五个级别；每级卖出“当前剩余数量的 20%”。
周期内追加 DCA 入场后，命中状态清零并按新的剩余数量重新分配，
已经兑现的级别 PnL 由周期账本保留，不回滚。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

N_LEVELS = 5
LEVEL_QTY_FRACTION = 0.20
QTY_EPSILON = 1e-9
DEFAULT_LEVEL_MULTIPLIERS: tuple[float, ...] = (0.2, 0.4, 0.6, 0.8, 1.0)


@dataclass
class TPLevel:
    """单个止盈级别。"""
    level: int                     # 1..5
    percent: float = 0.0           # 相对周期均价的涨幅（小数）
    quantity: float = 0.0          # 本级分配的绝对卖出数量
    hit: bool = False
    hit_time: datetime | None = None
    hit_price: float = 0.0
    sold_qty: float = 0.0
    pnl: float = 0.0
    commission: float = 0.0

    def clear_hit(self) -> None:
        self.hit = False
        self.hit_time = None
        self.hit_price = 0.0
        self.sold_qty = 0.0
        self.pnl = 0.0
        self.commission = 0.0


class TPLevelLadder:
    """五级止盈计划。

    Parameters
    ----------
    level_multipliers:
        五个级别相对 base TP 的倍数。初始化的 `percent` 与成交判定的目标价
        使用同一组倍数。
    """

    def __init__(self, level_multipliers: Sequence[float] = DEFAULT_LEVEL_MULTIPLIERS):
        multipliers = tuple(float(m) for m in level_multipliers)
        if len(multipliers) != N_LEVELS:
            raise ValueError(f"level_multipliers must have {N_LEVELS} values, got {len(multipliers)}")
        self.level_multipliers = multipliers
        self.base_tp_percent = 0.0
        self.levels: list[TPLevel] = [TPLevel(level=i + 1) for i in range(N_LEVELS)]

    def initialize_levels(self, base_tp_percent: float) -> None:
        """周期开仓：按倍数设定每级百分比，数量归零，清空命中信息。"""
        self.base_tp_percent = float(base_tp_percent)
        for i, lvl in enumerate(self.levels):
            lvl.percent = self.base_tp_percent * self.level_multipliers[i]
            lvl.quantity = 0.0
            lvl.clear_hit()

    def allocate_quantities(self, remaining_qty: float) -> None:
        """每级分配 `0.20 * remaining_qty`；浮点误差导致总和超出时等比例缩小。"""
        remaining = max(0.0, float(remaining_qty))
        for lvl in self.levels:
            lvl.quantity = remaining * LEVEL_QTY_FRACTION
        total = sum(lvl.quantity for lvl in self.levels)
        if total > remaining and total > 0:
            scale = remaining / total
            for lvl in self.levels:
                lvl.quantity *= scale

    def on_new_entry_added(self, remaining_qty: float) -> None:
        """周期内新增入场：清零命中状态并按新的剩余数量重新分配。

        不触碰余额/持仓；此前已成交级别的收益已记入账本。
        """
        for lvl in self.levels:
            lvl.clear_hit()
        self.allocate_quantities(remaining_qty)

    def level_target(self, index: int, avg_entry: float, base_tp_percent: float | None = None) -> float:
        base = self.base_tp_percent if base_tp_percent is None else float(base_tp_percent)
        return avg_entry * (1.0 + self.level_multipliers[index] * base)

    def unfired(self) -> list[int]:
        """未命中级别的下标（升序）。"""
        return [i for i, lvl in enumerate(self.levels) if not lvl.hit]

    def fill_quantity(self, index: int, remaining_qty: float) -> float:
        """本级实际卖出数量：分配量与剩余量取小；最后一个未命中级别清掉全部剩余。"""
        remaining = max(0.0, float(remaining_qty))
        if self.unfired() == [index]:
            return remaining
        return min(self.levels[index].quantity, remaining)

    def mark_hit(
        self,
        index: int,
        *,
        ts: datetime,
        price: float,
        sold_qty: float,
        pnl: float,
        commission: float,
    ) -> TPLevel:
        lvl = self.levels[index]
        lvl.hit = True
        lvl.hit_time = ts
        lvl.hit_price = price
        lvl.sold_qty = sold_qty
        lvl.pnl = pnl
        lvl.commission = commission
        return lvl

    def hits(self) -> int:
        return sum(1 for lvl in self.levels if lvl.hit)

    @staticmethod
    def is_cycle_complete(remaining_qty: float) -> bool:
        """按剩余数量判断周期是否卖完，与命中级数无关。"""
        return remaining_qty <= QTY_EPSILON
