"""增强型 DCA 策略（指标共识 + 动态止盈）。

逻辑：
1. 指标投票：RSI 超卖、收盘价低于均线各算一票买入信号（RSI 超买算卖出信号，抵扣强度）；
2. confidence = 买入票数 / 指标总数，达到 `min_confidence` 才买；
3. 金额 = base_amount × min(1 + confidence × strength, max_multiplier)；
4. 同一周期内再次加仓要求价格相对上次入场至少下跌 `price_threshold`；
5. 动态 TP：fixed / volatility_adaptive（ATR 相对波动率）/ indicator_based（RSI），
   结果裁剪到 [min_tp_percent, max_tp_percent]。
"""

from __future__ import annotations

import math
from typing import Any, Sequence

import pandas as pd

from algo.factors.registry import apply_factors, build_factors, candles_to_frame
from algo.strategy.base import DynamicTPQuote, HedgeParameters, Strategy
from shared.models.models import Candle, TradeAction, TradeDecision
from shared.utils.logging import setup_logger

DYNAMIC_TP_STRATEGIES = ("fixed", "volatility_adaptive", "indicator_based")

_LOGGER = setup_logger("strategy-dca")


class EnhancedDCAStrategy(Strategy):
    """
    Parameters
    ----------
    base_amount:
        单次入场基础金额（quote）。
    max_multiplier:
        金额放大倍数上限。
    min_confidence:
        买入所需的最小投票比例。
    price_threshold:
        相对上次入场价的最小跌幅（小数），0 表示不限制。
    dynamic_tp:
        "fixed" | "volatility_adaptive" | "indicator_based"。
    """

    name = "enhanced_dca"

    def __init__(
        self,
        base_amount: float = 100.0,
        max_multiplier: float = 3.0,
        min_confidence: float = 0.5,
        price_threshold: float = 0.0,
        rsi_period: int = 14,
        rsi_oversold: float = 30.0,
        rsi_overbought: float = 70.0,
        ma_window: int = 20,
        dynamic_tp: str = "fixed",
        base_tp_percent: float = 0.02,
        atr_period: int = 14,
        volatility_multiplier: float = 0.5,
        strength_multiplier: float = 0.5,
        min_tp_percent: float = 0.01,
        max_tp_percent: float = 0.05,
    ):
        if base_amount <= 0:
            raise ValueError("base_amount must be > 0")
        if max_multiplier < 1:
            raise ValueError("max_multiplier must be >= 1")
        if not 0 < min_confidence <= 1:
            raise ValueError("min_confidence must be in (0, 1]")
        if dynamic_tp not in DYNAMIC_TP_STRATEGIES:
            raise ValueError(f"dynamic_tp must be one of {DYNAMIC_TP_STRATEGIES}, got {dynamic_tp!r}")
        if min_tp_percent > max_tp_percent:
            raise ValueError("min_tp_percent must be <= max_tp_percent")

        self.base_amount = float(base_amount)
        self.max_multiplier = float(max_multiplier)
        self.min_confidence = float(min_confidence)
        self.price_threshold = float(price_threshold)
        self.rsi_oversold = float(rsi_oversold)
        self.rsi_overbought = float(rsi_overbought)
        self.dynamic_tp_strategy = dynamic_tp
        self.base_tp_percent = float(base_tp_percent)
        self.volatility_multiplier = float(volatility_multiplier)
        self.strength_multiplier = float(strength_multiplier)
        self.min_tp_percent = float(min_tp_percent)
        self.max_tp_percent = float(max_tp_percent)

        self._rsi_col = f"rsi_{int(rsi_period)}"
        self._ma_col = f"ma_{int(ma_window)}"
        self._atr_col = f"atr_pct_{int(atr_period)}"
        self.factors = build_factors(
            [
                {"name": "rsi", "period": int(rsi_period), "out_col": self._rsi_col},
                {"name": "ma", "window": int(ma_window), "out_col": self._ma_col},
                {"name": "atr", "period": int(atr_period), "normalize": True, "out_col": self._atr_col},
            ]
        )
        self.required_bars = max(int(rsi_period) + 1, int(ma_window), int(atr_period) + 1)

        self.last_entry_price: float | None = None
        self._cache_key: tuple[Any, int] | None = None
        self._cache_row: pd.Series | None = None

    # ---- 指标 -----------------------------------------------------------

    def _latest(self, window: Sequence[Candle]) -> pd.Series:
        """最后一根 bar 的指标行；同一窗口只计算一次。"""
        key = (window[-1].ts, len(window))
        if key != self._cache_key:
            df = apply_factors(candles_to_frame(window), self.factors)
            row = df.iloc[-1]
            self._cache_row = row
            self._cache_key = key
            return row
        if self._cache_row is None:
            raise RuntimeError("indicator cache is empty")
        return self._cache_row

    @staticmethod
    def _value(row: pd.Series, col: str) -> float | None:
        val = row.get(col)
        if val is None or pd.isna(val):
            return None
        return float(val)

    # ---- 决策 -----------------------------------------------------------

    def decide(self, window: Sequence[Candle]) -> TradeDecision:
        if not window:
            raise ValueError("no market data provided")
        if len(window) < self.required_bars:
            return TradeDecision.hold("warming up")

        price = float(window[-1].close)
        if self.last_entry_price is not None and self.price_threshold > 0:
            if price > self.last_entry_price * (1.0 - self.price_threshold):
                return TradeDecision.hold("price drop below threshold")

        row = self._latest(window)
        rsi = self._value(row, self._rsi_col)
        ma = self._value(row, self._ma_col)

        buy_votes = 0
        strength = 0.0
        if rsi is not None:
            if rsi < self.rsi_oversold:
                buy_votes += 1
                strength += (self.rsi_oversold - rsi) / self.rsi_oversold
            elif rsi > self.rsi_overbought:
                strength -= (rsi - self.rsi_overbought) / (100.0 - self.rsi_overbought)
        if ma is not None and ma > 0 and price < ma:
            buy_votes += 1
            # 低于均线 5% 视为满强度
            strength += min(1.0, (ma - price) / ma / 0.05)

        confidence = buy_votes / 2.0
        if confidence < self.min_confidence:
            return TradeDecision.hold("insufficient buy signal consensus")

        multiplier = min(1.0 + confidence * max(strength, 0.0), self.max_multiplier)
        self.last_entry_price = price
        return TradeDecision(
            action=TradeAction.BUY,
            amount=self.base_amount * multiplier,
            confidence=confidence,
            strength=strength,
            reason="buy signal consensus reached",
        )

    # ---- 动态 TP --------------------------------------------------------

    def is_dynamic_tp_enabled(self) -> bool:
        return self.dynamic_tp_strategy != "fixed"

    def _clamp(self, percent: float) -> tuple[float, bool]:
        clamped = min(max(percent, self.min_tp_percent), self.max_tp_percent)
        return clamped, clamped != percent

    def dynamic_tp_quote(self, candle: Candle, window: Sequence[Candle]) -> DynamicTPQuote:
        """
        Raises
        ------
        ValueError
            数据不足以计算所需指标（引擎会回退到固定 TP）。
        """
        if not self.is_dynamic_tp_enabled():
            return DynamicTPQuote(percent=0.0, strategy="fixed")
        if not window:
            raise ValueError("no market data provided")

        row = self._latest(window)
        if self.dynamic_tp_strategy == "volatility_adaptive":
            vol = self._value(row, self._atr_col)
            if vol is None:
                raise ValueError(f"insufficient data for ATR ({len(window)} bars)")
            raw = self.base_tp_percent * (1.0 + self.volatility_multiplier * vol * 100.0)
            percent, bounded = self._clamp(raw)
            return DynamicTPQuote(
                percent=percent,
                strategy="volatility_adaptive",
                market_volatility=vol,
                bounds_applied=bounded,
            )

        rsi = self._value(row, self._rsi_col)
        if rsi is None:
            raise ValueError(f"insufficient data for RSI ({len(window)} bars)")
        # 超卖越深信号越强，给更高的止盈目标
        signal = (50.0 - rsi) / 50.0
        raw = self.base_tp_percent * (1.0 + self.strength_multiplier * signal)
        percent, bounded = self._clamp(raw)
        vol = self._value(row, self._atr_col)
        return DynamicTPQuote(
            percent=percent,
            strategy="indicator_based",
            market_volatility=vol if vol is not None and math.isfinite(vol) else 0.0,
            signal_strength=signal,
            bounds_applied=bounded,
        )

    def dynamic_tp_percent(self, candle: Candle, window: Sequence[Candle]) -> float:
        return self.dynamic_tp_quote(candle, window).percent

    # ---- 生命周期 -------------------------------------------------------

    def on_cycle_complete(self) -> None:
        self.last_entry_price = None

    def reset_for_new_period(self) -> None:
        self.last_entry_price = None
        self._cache_key = None
        self._cache_row = None


class HedgedDCAStrategy(EnhancedDCAStrategy):
    """带对冲参数的 DCA 策略：交易逻辑同 EnhancedDCAStrategy，额外提供对冲参数。"""

    name = "hedged_dca"

    def __init__(
        self,
        hedge_ratio: float = 0.5,
        hedge_tp_percent: float = 0.01,
        hedge_sl_percent: float = 0.02,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        if not 0 <= hedge_ratio <= 1:
            raise ValueError("hedge_ratio must be in [0, 1]")
        self._hedge = HedgeParameters(
            hedge_ratio=float(hedge_ratio),
            hedge_tp_percent=float(hedge_tp_percent),
            hedge_sl_percent=float(hedge_sl_percent),
        )

    def hedge_parameters(self) -> HedgeParameters:
        return self._hedge
