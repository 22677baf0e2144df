"""动态 TP 目标解析。

对当前 bar 给出止盈目标价：固定百分比，或向策略询问与行情相关的百分比。
策略出错/返回 0 时回退到固定百分比，并把错误交还调用方记录；
解析本身永远不抛出，保证每根 bar 都有可用目标。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from algo.strategy.base import DynamicTPQuote, DynamicTPQuoteProvider, Strategy
from engine.errors import DynamicTPError
from shared.models.models import Candle

FIXED_TP_STRATEGY = "fixed"


@dataclass(frozen=True)
class DynamicTPRecord:
    """一次成功的动态 TP 计算。"""
    ts: datetime
    price: float
    base_tp_percent: float
    calculated_tp: float
    strategy: str
    market_volatility: float
    signal_strength: float
    bounds_applied: bool


@dataclass(frozen=True)
class TPResolution:
    """解析结果：目标价永远可用；record 仅在动态计算成功时存在。"""
    target: float
    percent: float
    strategy: str = FIXED_TP_STRATEGY
    market_volatility: float = 0.0
    signal_strength: float = 0.0
    record: DynamicTPRecord | None = None
    error: DynamicTPError | None = None


class DynamicTPResolver:
    """
    Parameters
    ----------
    strategy:
        提供动态 TP 能力的策略。
    """

    def __init__(self, strategy: Strategy):
        self.strategy = strategy

    def _quote(self, candle: Candle, window: Sequence[Candle]) -> DynamicTPQuote:
        if isinstance(self.strategy, DynamicTPQuoteProvider):
            return self.strategy.dynamic_tp_quote(candle, window)
        percent = self.strategy.dynamic_tp_percent(candle, window)
        return DynamicTPQuote(percent=float(percent), strategy=getattr(self.strategy, "dynamic_tp_strategy", "dynamic"))

    def resolve_target(
        self,
        candle: Candle,
        window: Sequence[Candle],
        avg_entry: float,
        base_tp_percent: float,
        dynamic_enabled: bool,
    ) -> TPResolution:
        """解析本 bar 的 TP 目标价。

        Parameters
        ----------
        candle:
            当前 bar。
        window:
            以当前 bar 结尾的历史窗口。
        avg_entry:
            周期当前均价（由账本汇总值实时计算）。
        base_tp_percent:
            固定 TP 百分比，同时是回退值。
        dynamic_enabled:
            False 时直接用固定百分比，不产生记录。

        Returns
        -------
        TPResolution
            target 总是有效；动态失败时 error 非空、record 为空。
        """
        fixed = TPResolution(target=avg_entry * (1.0 + base_tp_percent), percent=base_tp_percent)
        if not dynamic_enabled:
            return fixed

        try:
            quote = self._quote(candle, window)
            percent = float(quote.percent)
            strategy = str(quote.strategy)
            market_volatility = float(quote.market_volatility)
            signal_strength = float(quote.signal_strength)
            bounds_applied = bool(quote.bounds_applied)
        except Exception as exc:
            err = DynamicTPError(f"dynamic TP calculation failed: {exc}")
            err.__cause__ = exc
            return TPResolution(target=fixed.target, percent=base_tp_percent, error=err)

        if percent == 0:
            return fixed
        if not math.isfinite(percent):
            err = DynamicTPError(f"dynamic TP returned unusable percent {quote.percent!r}")
            return TPResolution(target=fixed.target, percent=base_tp_percent, error=err)

        record = DynamicTPRecord(
            ts=candle.ts,
            price=candle.close,
            base_tp_percent=base_tp_percent,
            calculated_tp=percent,
            strategy=strategy,
            market_volatility=market_volatility,
            signal_strength=signal_strength,
            bounds_applied=bounds_applied,
        )
        return TPResolution(
            target=avg_entry * (1.0 + percent),
            percent=percent,
            strategy=strategy,
            market_volatility=market_volatility,
            signal_strength=signal_strength,
            record=record,
        )
