"""配置 key 校验。

pydantic 的 extra="forbid" 只会报 “Extra inputs are not permitted”；
这里在进入 schema 之前先检查各配置块的 key，并给出 did-you-mean 提示。
策略参数是开放字段，由策略模块自行解释，不在这里约束。
"""

from __future__ import annotations

import difflib
from typing import Any, Iterable

from pydantic import BaseModel

from shared.config.schema import (
    BatchConfig,
    DataConfig,
    EngineConfig,
    MainConfig,
    OutputConfig,
    WalkForwardConfig,
)

_BLOCKS: dict[str, type[BaseModel]] = {
    "data": DataConfig,
    "engine": EngineConfig,
    "output": OutputConfig,
    "batch": BatchConfig,
    "walkforward": WalkForwardConfig,
}


def _suggest_key(key: str, allowed: Iterable[str]) -> str | None:
    matches = difflib.get_close_matches(key, list(allowed), n=1, cutoff=0.75)
    return matches[0] if matches else None


def _ensure_allowed_keys(block: dict[str, Any], *, allowed: set[str], ctx: str) -> None:
    unknown = [k for k in block.keys() if k not in allowed]
    if not unknown:
        return
    parts = []
    for k in sorted(unknown, key=str):
        suggestion = _suggest_key(str(k), allowed)
        if suggestion:
            parts.append(f"{k} (did you mean '{suggestion}'?)")
        else:
            parts.append(str(k))
    raise ValueError(f"{ctx} contains unknown keys: {', '.join(parts)}")


def validate_raw_config(cfg: dict[str, Any]) -> None:
    """校验 raw config dict（来自 YAML + env 展开后）。"""
    if not isinstance(cfg, dict):
        raise ValueError("Config root must be a dict")

    _ensure_allowed_keys(cfg, allowed=set(MainConfig.model_fields), ctx="config")

    for key, model in _BLOCKS.items():
        block = cfg.get(key)
        if block is None:
            continue
        if not isinstance(block, dict):
            raise ValueError(f"config.{key} must be a dict")
        _ensure_allowed_keys(block, allowed=set(model.model_fields), ctx=f"config.{key}")

    strategy = cfg.get("strategy")
    if strategy is not None:
        if not isinstance(strategy, dict):
            raise ValueError("config.strategy must be a dict")
        if "type" in strategy and (not isinstance(strategy["type"], str) or not strategy["type"].strip()):
            raise ValueError("config.strategy.type must be a non-empty string")
