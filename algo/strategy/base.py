"""策略接口（回测核心消费的能力集合）。

必需能力由 `Strategy` 抽象基类定义；可选能力用 Protocol 表达，
引擎通过 isinstance 查询能力，而不是检查具体策略类型。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from shared.models.models import Candle, TradeDecision


@dataclass(frozen=True)
class DynamicTPQuote:
    """动态 TP 报价及其溯源信息。"""
    percent: float
    strategy: str = "dynamic"
    market_volatility: float = 0.0
    signal_strength: float = 0.0
    bounds_applied: bool = False


@dataclass(frozen=True)
class HedgeParameters:
    """对冲参数（由支持对冲的策略提供，随回测结果一起输出）。"""
    hedge_ratio: float = 0.0
    hedge_tp_percent: float = 0.0
    hedge_sl_percent: float = 0.0


class Strategy(ABC):
    """回测策略基类。"""

    name: str = "strategy"

    @abstractmethod
    def decide(self, window: Sequence[Candle]) -> TradeDecision:
        """
        输入以当前 bar 结尾的历史窗口，输出本 bar 的决策。

        抛出异常时引擎按 HOLD 处理，不会中断回测。
        """
        ...

    def dynamic_tp_percent(self, candle: Candle, window: Sequence[Candle]) -> float:
        """返回动态 TP 百分比；0 表示使用固定 TP。"""
        return 0.0

    def is_dynamic_tp_enabled(self) -> bool:
        return False

    def on_cycle_complete(self) -> None:
        """周期结束通知（重置上次入场价等内部锚点）。"""

    def reset_for_new_period(self) -> None:
        """walk-forward 折与折之间重置状态；单次回测内引擎不会调用。"""


@runtime_checkable
class DynamicTPQuoteProvider(Protocol):
    """可选能力：带溯源信息的动态 TP。"""

    def dynamic_tp_quote(self, candle: Candle, window: Sequence[Candle]) -> DynamicTPQuote:
        ...


@runtime_checkable
class HedgeParameterProvider(Protocol):
    """可选能力：提供对冲参数。"""

    def hedge_parameters(self) -> HedgeParameters:
        ...
