"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型 + 可演进”的边界协议；
- 启动阶段尽早失败，避免 typo/自相矛盾的 TP 设置在长回测中途才暴露；
- `EngineConfig` 同时供策略构造与引擎使用，替代隐式 key 约定的字典。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_LEVEL_MULTIPLIERS: Tuple[float, ...] = (0.2, 0.4, 0.6, 0.8, 1.0)


class EngineConfig(BaseModel):
    """回测引擎配置。

    说明：
    - 百分比字段均为小数（0.02 == 2%）；
    - `tp_percent == 0` 表示不设固定 TP（持续累积，只在期末估值）；
    - `min_order_qty == 0` 关闭 lot-size 取整。
    """
    initial_balance: float = 10_000.0
    commission: float = 0.001
    tp_percent: float = 0.02
    min_order_qty: float = 0.0
    use_tp_levels: bool = False
    level_multipliers: Tuple[float, ...] = DEFAULT_LEVEL_MULTIPLIERS
    window_size: int = 100
    equity_subsample_threshold: int = 10_000
    equity_max_points: int = 10_000

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_consistency(self) -> "EngineConfig":
        if self.initial_balance <= 0:
            raise ValueError("initial_balance must be > 0")
        if not 0 <= self.commission < 1:
            raise ValueError("commission must be in [0, 1)")
        if self.tp_percent < 0:
            raise ValueError("tp_percent must be >= 0")
        if self.min_order_qty < 0:
            raise ValueError("min_order_qty must be >= 0")
        if self.use_tp_levels and self.tp_percent == 0:
            raise ValueError("use_tp_levels requires tp_percent > 0")
        mults = self.level_multipliers
        if len(mults) != 5 or any(m <= 0 for m in mults) or any(b <= a for a, b in zip(mults, mults[1:])):
            raise ValueError("level_multipliers must be five strictly increasing positive numbers")
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if self.equity_subsample_threshold < 1 or self.equity_max_points < 1:
            raise ValueError("equity subsampling limits must be >= 1")
        return self


class StrategyConfig(BaseModel):
    """策略配置（type + params）。

    说明：
    - 策略参数不允许“散落在顶层”：必须进入 `params`；
    - `strategy:` 下的扁平字段会自动挪到 `params`，写起来方便，schema 仍然严格。
    """
    type: str = "enhanced_dca"
    params: Dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def _pack_flat_params(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "params" in data and isinstance(data.get("params"), dict) and set(data.keys()) <= {"type", "params"}:
            return data
        strat_type = data.get("type", "enhanced_dca")
        params = {k: v for k, v in data.items() if k not in {"type", "params"}}
        existing = data.get("params")
        if isinstance(existing, dict):
            params = {**params, **existing}
        return {"type": strat_type, "params": params}


class DataConfig(BaseModel):
    """行情数据来源：CSV 文件，或（未给 path 时）带种子的合成数据。"""
    path: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    sample_bars: int = 2_000
    sample_seed: int = 42
    sample_start_price: float = 100.0
    sample_volatility: float = 0.01
    model_config = ConfigDict(extra="forbid")


class OutputConfig(BaseModel):
    """回测产物输出。"""
    dir: str = "results/backtest"
    write_csv: bool = True
    write_json: bool = True
    skip_plots: bool = False
    model_config = ConfigDict(extra="forbid")


class BatchConfig(BaseModel):
    """批量回测（参数网格 × 线程池）。"""
    max_workers: int = 4
    params: Dict[str, List[Any]] = Field(default_factory=dict)
    engine_params: Dict[str, List[Any]] = Field(default_factory=dict)
    model_config = ConfigDict(extra="forbid")


class WalkForwardConfig(BaseModel):
    """Walk-forward 分折配置。"""
    n_folds: int = 3
    min_fold_bars: int = 50
    model_config = ConfigDict(extra="forbid")


class MainConfig(BaseModel):
    """应用总配置。"""
    symbol: str = "BTCUSDT"
    interval: str = "1h"
    mode: Literal["backtest", "batch", "walkforward"] = "backtest"

    data: DataConfig = Field(default_factory=DataConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    walkforward: WalkForwardConfig = Field(default_factory=WalkForwardConfig)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)
