"""Walk-Forward 分折回测。

把 K 线按时间切成连续的若干折，每折用全新的引擎跑一次，
折与折之间调用 `strategy.reset_for_new_period()`，检验参数在不同时期的稳定性。
这里只汇总描述性统计，不做显著性检验。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from statistics import mean
from typing import Any, List, Sequence, Tuple

import pandas as pd

from algo.strategy.base import Strategy
from algo.strategy.registry import build_strategy
from analysis.reporting import write_summary_json
from engine.backtest_engine import BacktestEngine
from engine.base_engine import DEFAULT_CONFIG_PATH, BaseEngine, EngineResult
from engine.results import BacktestResults
from shared.config.schema import EngineConfig, MainConfig
from shared.models.models import Candle
from shared.utils.logging import setup_logger

logger = setup_logger("walkforward")


@dataclass
class FoldResult:
    fold: int
    start_index: int
    end_index: int
    results: BacktestResults

    def summary(self) -> dict[str, Any]:
        data = self.results.to_summary()
        first, last = self.results.equity_curve[:1], self.results.equity_curve[-1:]
        return {
            "fold": self.fold,
            "start": first[0].ts.isoformat() if first else "",
            "end": last[0].ts.isoformat() if last else "",
            "bars": self.end_index - self.start_index,
            **data,
        }


@dataclass
class WalkForwardReport:
    folds: List[FoldResult] = field(default_factory=list)

    def overall(self) -> dict[str, Any]:
        if not self.folds:
            return {"n_folds": 0}
        returns = [f.results.total_return for f in self.folds]
        drawdowns = [f.results.max_drawdown for f in self.folds]
        return {
            "n_folds": len(self.folds),
            "mean_return": mean(returns),
            "min_return": min(returns),
            "max_return": max(returns),
            "mean_max_drawdown": mean(drawdowns),
            "worst_max_drawdown": max(drawdowns),
            "profitable_folds": sum(1 for r in returns if r > 0),
            "total_trades": sum(f.results.total_trades for f in self.folds),
            "completed_cycles": sum(f.results.completed_cycles for f in self.folds),
        }


def split_folds(n_bars: int, n_folds: int, min_fold_bars: int = 1) -> List[Tuple[int, int]]:
    """按下标把 [0, n_bars) 均分为 n_folds 个连续区间（最后一折吃掉余数）。

    Raises
    ------
    ValueError
        折数非法，或每折不足 `min_fold_bars` 根。
    """
    if n_folds < 1:
        raise ValueError("n_folds must be >= 1")
    size = n_bars // n_folds
    if size < max(1, min_fold_bars):
        raise ValueError(f"{n_bars} bars cannot be split into {n_folds} folds of >= {min_fold_bars} bars")
    bounds = []
    for i in range(n_folds):
        start = i * size
        end = n_bars if i == n_folds - 1 else (i + 1) * size
        bounds.append((start, end))
    return bounds


def run_walkforward(
    strategy: Strategy,
    candles: Sequence[Candle],
    engine_cfg: EngineConfig | None = None,
    *,
    n_folds: int = 3,
    min_fold_bars: int = 1,
) -> WalkForwardReport:
    """逐折回测；同一策略实例跨折复用，但每折开始前重置其状态。"""
    data = list(candles)
    report = WalkForwardReport()
    for i, (start, end) in enumerate(split_folds(len(data), n_folds, min_fold_bars), 1):
        strategy.reset_for_new_period()
        engine = BacktestEngine(strategy, engine_cfg)
        res = engine.run(data[start:end])
        report.folds.append(FoldResult(fold=i, start_index=start, end_index=end, results=res))
        logger.info(
            "Fold %d/%d bars=%d return=%.4f max_dd=%.4f trades=%d",
            i,
            n_folds,
            end - start,
            res.total_return,
            res.max_drawdown,
            res.total_trades,
        )
    return report


class WalkforwardEngine(BaseEngine):
    """配置驱动的 walk-forward：`walkforward.n_folds` 折，每折一个全新引擎。"""

    def __init__(
        self,
        *,
        cfg_path: str = DEFAULT_CONFIG_PATH,
        cfg_obj: MainConfig | None = None,
        n_folds: int | None = None,
        output_dir: str | Path | None = None,
        candles: Sequence[Candle] | None = None,
    ):
        super().__init__(cfg_path=cfg_path, cfg_obj=cfg_obj, candles=candles)
        self._n_folds = n_folds
        self._output_dir = output_dir

        self.report: WalkForwardReport | None = None

    def run(self) -> EngineResult:
        cfg = self.load_cfg()
        candles = self.load_candles(cfg)
        n_folds = self._n_folds or cfg.walkforward.n_folds

        strategy = build_strategy(cfg.strategy)
        self.report = run_walkforward(
            strategy,
            candles,
            cfg.engine,
            n_folds=n_folds,
            min_fold_bars=cfg.walkforward.min_fold_bars,
        )
        folds = [f.summary() for f in self.report.folds]
        summary = {"overall": self.report.overall(), "folds": folds}

        artifacts = None
        if self._output_dir is not None:
            out_dir = Path(self._output_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            pd.DataFrame(folds).to_csv(out_dir / "folds.csv", index=False)
            write_summary_json(summary, out_dir / "walkforward.json")
            artifacts = {"dir": str(out_dir), "folds": str(out_dir / "folds.csv")}
        return EngineResult(summary=summary, artifacts=artifacts)
