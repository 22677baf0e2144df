"""核心数据结构：Candle / TradeDecision / Trade / EquityPoint。"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Candle:
    """K 线数据（不可变）。

    TP 判定使用 `high`（bar 内是否触及目标价），权益估值使用 `close`。
    """
    ts: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    symbol: str | None = None


class TradeAction(str, Enum):
    """策略动作。"""
    HOLD = "hold"
    BUY = "buy"
    SELL = "sell"


@dataclass
class TradeDecision:
    """策略对单根 bar 的决策；引擎只在该 bar 内使用，不做保留。"""
    action: TradeAction = TradeAction.HOLD
    amount: float = 0.0      # 计划投入的名义金额（quote）
    confidence: float = 0.0
    strength: float = 0.0
    reason: str = ""

    @classmethod
    def hold(cls, reason: str = "") -> "TradeDecision":
        return cls(action=TradeAction.HOLD, reason=reason)


TRADE_KIND_ENTRY = "entry"
TRADE_KIND_TP_LEVEL = "tp_level"
TRADE_KIND_MTM = "mark_to_market"


@dataclass
class Trade:
    """成交记录。

    - 入场行：买入时创建，`exit_time is None` 表示仍持有；
      单 TP 模式下止盈/期末时写入 exit 字段与 pnl（只改一次）。
    - 合成行（多级 TP）：每次某一级 TP 成交生成一行，entry/exit 时间都等于成交时刻，
      entry_price 为当时的周期均价（成本基础），exit_price 为目标价。
    """
    entry_time: datetime
    entry_price: float
    quantity: float
    commission: float = 0.0
    exit_time: datetime | None = None
    exit_price: float = 0.0
    pnl: float = 0.0
    cycle: int = 0
    kind: str = TRADE_KIND_ENTRY
    tp_level: int | None = None
    # 动态 TP 溯源（入场时解析）
    tp_percent: float = 0.0
    tp_strategy: str = "fixed"
    market_volatility: float = 0.0
    signal_strength: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    @property
    def entry_notional(self) -> float:
        return self.entry_price * self.quantity

    @property
    def exit_notional(self) -> float:
        return self.exit_price * self.quantity if self.exit_time is not None else 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EquityPoint:
    """权益曲线点。"""
    ts: datetime
    balance: float
    position: float
    price: float
    equity: float
    exposure: float
    pnl: float
