"""历史 K 线加载与合成样本数据。

支持从 CSV 读取 Candle（时间列 ts/timestamp/time，ISO 字符串或秒/毫秒时间戳），
以及用显式传入的 numpy Generator 生成可复现的随机游走 K 线。
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from shared.config.schema import MainConfig
from shared.models.models import Candle

TS_COLUMNS = ("ts", "timestamp", "time", "open_time")
PRICE_COLUMNS = ("open", "high", "low", "close")

_INTERVAL_UNITS = {"m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def interval_to_timedelta(interval: str) -> timedelta:
    """'1m' / '4h' / '1d' -> timedelta。"""
    text = str(interval).strip().lower()
    if len(text) < 2 or text[-1] not in _INTERVAL_UNITS or not text[:-1].isdigit():
        raise ValueError(f"Invalid interval: {interval!r}")
    return timedelta(**{_INTERVAL_UNITS[text[-1]]: int(text[:-1])})


def _parse_dt(val: str | datetime) -> datetime:
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromisoformat(str(val).replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError as exc:
        raise ValueError(f"Invalid datetime value: {val}") from exc


def _to_utc_series(col: pd.Series) -> pd.Series:
    """时间列统一转成 UTC；纯数字按量级区分秒/毫秒。"""
    if pd.api.types.is_numeric_dtype(col):
        unit = "ms" if float(col.abs().max()) > 1e12 else "s"
        return pd.to_datetime(col, unit=unit, utc=True)
    return pd.to_datetime(col, utc=True)


def load_candles_csv(
    path: str | Path,
    *,
    symbol: str | None = None,
    start: str | datetime | None = None,
    end: str | datetime | None = None,
) -> list[Candle]:
    """从 CSV 读取 K 线（按时间升序）。

    Parameters
    ----------
    path:
        CSV 文件路径；至少包含时间列与 open/high/low/close。
    symbol:
        写入 Candle.symbol；为空时使用文件中的 symbol 列（若有）。
    start, end:
        可选时间过滤（闭区间）。

    Raises
    ------
    FileNotFoundError
        文件不存在。
    ValueError
        缺少必需列。
    """
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Kline file not found: {csv_path}")

    df = pd.read_csv(csv_path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    ts_col = next((c for c in TS_COLUMNS if c in df.columns), None)
    if ts_col is None:
        raise ValueError(f"{csv_path} has no timestamp column (expected one of {TS_COLUMNS})")
    missing = [c for c in PRICE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{csv_path} missing columns: {missing}")

    df["ts"] = _to_utc_series(df[ts_col])
    if start is not None:
        df = df[df["ts"] >= pd.Timestamp(_parse_dt(start))]
    if end is not None:
        df = df[df["ts"] <= pd.Timestamp(_parse_dt(end))]
    df = df.sort_values("ts").reset_index(drop=True)

    has_volume = "volume" in df.columns
    has_symbol = "symbol" in df.columns
    candles: list[Candle] = []
    for row in df.itertuples(index=False):
        candles.append(
            Candle(
                ts=row.ts.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume) if has_volume else 0.0,
                symbol=symbol or (str(row.symbol) if has_symbol else None),
            )
        )
    return candles


def candles_to_csv(candles: Sequence[Candle], path: str | Path) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame(
        {
            "ts": [c.ts.isoformat() for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        }
    )
    df.to_csv(out, index=False)


def generate_sample_candles(
    n_bars: int,
    rng: np.random.Generator,
    *,
    start_price: float = 100.0,
    volatility: float = 0.01,
    drift: float = 0.0,
    interval: str = "1h",
    start: datetime | None = None,
    symbol: str | None = None,
) -> list[Candle]:
    """生成几何随机游走 K 线（可复现：随机源完全来自 `rng`）。

    Parameters
    ----------
    n_bars:
        K 线数量。
    rng:
        调用方持有的 numpy Generator（例如 `np.random.default_rng(42)`）。
    volatility:
        每根 bar 对数收益的标准差。
    """
    if n_bars < 0:
        raise ValueError("n_bars must be >= 0")
    if start_price <= 0:
        raise ValueError("start_price must be > 0")
    step = interval_to_timedelta(interval)
    t0 = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    log_returns = rng.normal(drift, volatility, size=n_bars)
    closes = start_price * np.exp(np.cumsum(log_returns))
    opens = np.concatenate(([start_price], closes[:-1])) if n_bars else closes
    wick = np.abs(rng.normal(0.0, volatility / 2, size=(2, n_bars)))
    highs = np.maximum(opens, closes) * (1.0 + wick[0])
    lows = np.minimum(opens, closes) * (1.0 - wick[1])
    volumes = rng.uniform(100.0, 1000.0, size=n_bars)

    return [
        Candle(
            ts=t0 + i * step,
            open=float(opens[i]),
            high=float(highs[i]),
            low=float(lows[i]),
            close=float(closes[i]),
            volume=float(volumes[i]),
            symbol=symbol,
        )
        for i in range(n_bars)
    ]


def load_market_data(cfg: MainConfig) -> list[Candle]:
    """按配置加载 K 线：给了 `data.path` 读 CSV，否则生成带种子的合成数据。"""
    data_cfg = cfg.data
    if data_cfg.path:
        return load_candles_csv(data_cfg.path, symbol=cfg.symbol, start=data_cfg.start, end=data_cfg.end)
    return generate_sample_candles(
        data_cfg.sample_bars,
        np.random.default_rng(data_cfg.sample_seed),
        start_price=data_cfg.sample_start_price,
        volatility=data_cfg.sample_volatility,
        interval=cfg.interval,
        symbol=cfg.symbol,
    )
