from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from algo.factors.atr import ATRFactor
from algo.factors.ma import MAFactor
from algo.factors.registry import apply_factors, build_factors, candles_to_frame
from algo.factors.rsi import RSIFactor
from shared.models.models import Candle


def _df(prices: list[float]) -> pd.DataFrame:
    ts0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    rows = []
    for i, p in enumerate(prices):
        rows.append(
            {
                "ts": ts0 + timedelta(hours=i),
                "open": p,
                "high": p + 1,
                "low": p - 1,
                "close": p,
                "volume": 1.0,
            }
        )
    return pd.DataFrame(rows)


def test_ma_factor_adds_column_and_nans_are_limited():
    df = _df([1, 2, 3, 4, 5])
    out = MAFactor(window=3, price_col="close", out_col="ma3").compute(df)
    assert "ma3" in out.columns
    assert out["ma3"].isna().sum() == 2
    assert abs(out["ma3"].iloc[-1] - 4.0) < 1e-9


def test_ma_factor_default_column_name():
    out = MAFactor(window=2).compute(_df([1, 2, 3]))
    assert "ma_2" in out.columns


def test_rsi_factor_outputs_in_0_100_after_warmup():
    df = _df([1, 2, 3, 2, 1, 2, 3, 4, 3, 2, 3, 4, 5, 6, 7])
    out = RSIFactor(period=5, price_col="close", out_col="rsi5").compute(df)
    s = out["rsi5"].dropna()
    assert not s.empty
    assert (s >= 0).all()
    assert (s <= 100).all()
    assert out["rsi5"].isna().sum() == 5


def test_rsi_factor_edge_values():
    rising = RSIFactor(period=3, out_col="r").compute(_df([1, 2, 3, 4, 5]))
    assert rising["r"].iloc[-1] == 100.0

    flat = RSIFactor(period=3, out_col="r").compute(_df([5, 5, 5, 5, 5]))
    assert flat["r"].iloc[-1] == 50.0


def test_atr_factor_adds_column():
    df = _df([10, 11, 12, 11, 9, 10, 11])
    out = ATRFactor(period=3, out_col="atr3").compute(df)
    assert "atr3" in out.columns
    assert out["atr3"].isna().sum() == 2


def test_atr_factor_normalized_is_relative_to_close():
    df = _df([100, 100, 100, 100])
    out = ATRFactor(period=2, normalize=True).compute(df)
    # high-low 恒为 2，收盘 100
    assert abs(out["atr_pct_2"].iloc[-1] - 0.02) < 1e-12


def test_factor_params_validated():
    with pytest.raises(ValueError):
        MAFactor(window=0)
    with pytest.raises(ValueError):
        RSIFactor(period=-1)


def test_build_factors_accepts_flat_and_nested_params():
    factors = build_factors(
        [
            {"name": "ma", "window": 3, "unused": 1},
            {"name": "rsi", "params": {"period": 4}},
        ]
    )
    assert [f.name for f in factors] == ["ma", "rsi"]
    assert factors[0].window == 3
    assert factors[1].period == 4

    with pytest.raises(ValueError):
        build_factors([{"name": "nope"}])
    with pytest.raises(ValueError):
        build_factors([{"window": 3}])


def test_apply_factors_on_candle_window():
    ts0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    candles = [
        Candle(ts=ts0 + timedelta(hours=i), open=p, high=p + 1, low=p - 1, close=p)
        for i, p in enumerate([10.0, 11.0, 12.0, 13.0])
    ]
    df = apply_factors(candles_to_frame(candles), build_factors([{"name": "ma", "window": 2}]))
    assert list(df.columns[:6]) == ["ts", "open", "high", "low", "close", "volume"]
    assert df["ma_2"].iloc[-1] == 12.5
