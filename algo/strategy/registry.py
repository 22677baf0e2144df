"""策略注册表：字符串 -> Strategy 实现。"""

from __future__ import annotations

import inspect
from typing import Any, Mapping

from algo.strategy.base import Strategy
from algo.strategy.dca import EnhancedDCAStrategy, HedgedDCAStrategy
from shared.config.schema import StrategyConfig

_REGISTRY: dict[str, type[Strategy]] = {}


def register_strategy(name: str, cls: type[Strategy]) -> None:
    _REGISTRY[name] = cls


def get_strategy_cls(name: str) -> type[Strategy]:
    if name not in _REGISTRY:
        raise ValueError(f"Unknown strategy: {name} (available: {', '.join(sorted(_REGISTRY))})")
    return _REGISTRY[name]


def _filter_init_kwargs(cls: type, params: Mapping[str, Any]) -> dict[str, Any]:
    """过滤出 __init__ 支持的参数，避免配置里多字段导致报错。

    子类通过 **kwargs 透传给父类时，按整条 MRO 的签名求并集。
    """
    allowed: set[str] = set()
    for klass in cls.__mro__:
        init = klass.__dict__.get("__init__")
        if init is None:
            continue
        try:
            sig = inspect.signature(init)
        except (TypeError, ValueError):
            continue
        allowed |= {
            name
            for name, p in sig.parameters.items()
            if name != "self" and p.kind not in (inspect.Parameter.VAR_KEYWORD, inspect.Parameter.VAR_POSITIONAL)
        }
    return {k: v for k, v in params.items() if k in allowed}


def build_strategy(cfg: StrategyConfig | Mapping[str, Any] | None) -> Strategy:
    """从配置构建策略实例。

    支持：
    - StrategyConfig（来自 shared.config.schema）
    - dict（含 type + 参数字段）
    """
    if cfg is None:
        return EnhancedDCAStrategy()

    if isinstance(cfg, StrategyConfig):
        name = str(cfg.type)
        params = dict(cfg.params or {})
    elif isinstance(cfg, Mapping):
        name = str(cfg.get("type") or "enhanced_dca")
        params = dict(cfg.get("params") or {})
        params.update({k: v for k, v in cfg.items() if k not in {"type", "params"}})
    else:
        raise ValueError("strategy cfg must be StrategyConfig or dict")

    cls = get_strategy_cls(name)
    kwargs = _filter_init_kwargs(cls, params)
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ValueError(f"Invalid params for strategy '{name}': {params}") from exc


# 默认注册
register_strategy("enhanced_dca", EnhancedDCAStrategy)
register_strategy("hedged_dca", HedgedDCAStrategy)
