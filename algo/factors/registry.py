"""因子注册表：字符串 -> 因子实现。"""

from __future__ import annotations

import inspect
from typing import Any, Mapping, Protocol, Sequence

import pandas as pd

from algo.factors.atr import ATRFactor
from algo.factors.ma import MAFactor
from algo.factors.rsi import RSIFactor
from shared.models.models import Candle


class Factor(Protocol):
    """在 K 线窗口 DataFrame 上追加指标列，返回同一个 df。"""

    name: str
    params: Mapping[str, Any]

    def compute(self, df: pd.DataFrame) -> pd.DataFrame:
        ...


_REGISTRY: dict[str, type] = {}


def register_factor(name: str, cls: type) -> None:
    _REGISTRY[name] = cls


def get_factor_cls(name: str) -> type:
    if name not in _REGISTRY:
        raise ValueError(f"Unknown factor: {name}")
    return _REGISTRY[name]


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数，避免配置里多字段导致报错。"""
    try:
        sig = inspect.signature(cls.__init__)
    except (TypeError, ValueError):
        return dict(params)

    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return dict(params)

    allowed = {name for name in sig.parameters.keys() if name not in {"self", "name", "params"}}
    return {k: v for k, v in params.items() if k in allowed}


def build_factors(items: Sequence[Mapping[str, Any]] | None) -> list[Factor]:
    """从配置构建因子列表。

    支持形态：
    - [{name: "ma", params: {...}}, ...]
    - [{name: "rsi", period: 14}, ...]  # params 直接平铺
    """
    if items is None:
        return []
    if not isinstance(items, (list, tuple)):
        raise ValueError("factors config must be a list")

    factors: list[Factor] = []
    reserved = {"name", "type", "params"}
    for item in items:
        if not isinstance(item, Mapping):
            raise ValueError("factor item must be a dict")
        name = str(item.get("name") or item.get("type") or "")
        if not name:
            raise ValueError("factor item missing name")
        raw_params = item.get("params")
        if raw_params is not None and not isinstance(raw_params, Mapping):
            raise ValueError("factor params must be a dict")
        params = dict(raw_params or {})
        for k, v in item.items():
            if k not in reserved and k not in params:
                params[k] = v
        cls = get_factor_cls(name)
        try:
            factors.append(cls(**_filter_init_kwargs(cls, params)))
        except TypeError as exc:
            raise ValueError(f"Invalid params for factor '{name}': {params}") from exc
    return factors


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """K 线窗口 -> DataFrame（列：ts/open/high/low/close/volume）。"""
    return pd.DataFrame(
        {
            "ts": [c.ts for c in candles],
            "open": [float(c.open) for c in candles],
            "high": [float(c.high) for c in candles],
            "low": [float(c.low) for c in candles],
            "close": [float(c.close) for c in candles],
            "volume": [float(c.volume) for c in candles],
        }
    )


def apply_factors(df: pd.DataFrame, factors: Sequence[Factor]) -> pd.DataFrame:
    for f in factors:
        df = f.compute(df)
    return df


# 默认注册
register_factor("ma", MAFactor)
register_factor("rsi", RSIFactor)
register_factor("atr", ATRFactor)
