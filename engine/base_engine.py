"""配置驱动引擎的公共基类。

单次回测 / 批量回测 / walk-forward 都以 `XxxEngine.run() -> EngineResult` 对外；
配置与 K 线的获取方式在这里统一：优先使用调用方传入的对象，否则读 YAML / 按配置加载。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

from market_data.loader import load_market_data
from shared.config.config_loader import load_config
from shared.config.schema import MainConfig
from shared.models.models import Candle

DEFAULT_CONFIG_PATH = "config/backtest.yml"


@dataclass(frozen=True)
class EngineResult:
    summary: dict[str, Any]
    artifacts: dict[str, Any] | None = None


class BaseEngine(ABC):
    """
    Parameters
    ----------
    cfg_path:
        YAML 配置路径（`cfg_obj` 为空时读取）。
    cfg_obj:
        已解析的配置对象。
    candles:
        直接提供 K 线，跳过数据加载。
    """

    def __init__(
        self,
        *,
        cfg_path: str = DEFAULT_CONFIG_PATH,
        cfg_obj: MainConfig | None = None,
        candles: Sequence[Candle] | None = None,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._candles = list(candles) if candles is not None else None

    def load_cfg(self) -> MainConfig:
        return self._cfg_obj or load_config(self._cfg_path)

    def load_candles(self, cfg: MainConfig) -> list[Candle]:
        return self._candles if self._candles is not None else load_market_data(cfg)

    @abstractmethod
    def run(self) -> EngineResult:
        raise NotImplementedError
