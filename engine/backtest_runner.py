"""配置驱动的单次回测入口（BacktestRunner）。

配置 → 数据 → 策略 → 引擎 → 指标/产物，统一以 `EngineResult` 返回。
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from algo.strategy.registry import build_strategy
from analysis.plotter import plot_drawdown, plot_equity_curve
from analysis.reporting import write_artifacts
from engine.backtest_engine import BacktestEngine
from engine.base_engine import DEFAULT_CONFIG_PATH, BaseEngine, EngineResult
from engine.results import BacktestResults
from shared.config.schema import MainConfig
from shared.models.models import Candle
from shared.utils.logging import setup_logger

logger = setup_logger("backtest")


def data_health(cfg: MainConfig, candles: Sequence[Candle]) -> dict[str, Any]:
    return {
        "n_bars": len(candles),
        "symbol": cfg.symbol,
        "interval": cfg.interval,
        "source": cfg.data.path or f"sample(seed={cfg.data.sample_seed})",
        "start": candles[0].ts.isoformat() if candles else "",
        "end": candles[-1].ts.isoformat() if candles else "",
    }


class BacktestRunner(BaseEngine):
    """单次回测。

    Parameters
    ----------
    artifacts_dir:
        产物目录；为空时使用 `output.dir`。
    export:
        False 时不写任何文件。

    其余参数见 `BaseEngine`。
    """

    def __init__(
        self,
        *,
        cfg_path: str = DEFAULT_CONFIG_PATH,
        cfg_obj: MainConfig | None = None,
        artifacts_dir: str | Path | None = None,
        export: bool = True,
        candles: Sequence[Candle] | None = None,
    ):
        super().__init__(cfg_path=cfg_path, cfg_obj=cfg_obj, candles=candles)
        self._artifacts_dir = artifacts_dir
        self._export = export

        self.results: BacktestResults | None = None

    def run(self) -> EngineResult:
        cfg = self.load_cfg()
        candles = self.load_candles(cfg)

        strategy = build_strategy(cfg.strategy)
        engine = BacktestEngine(strategy, cfg.engine)
        results = engine.run(candles)
        self.results = results

        summary = results.to_summary()
        summary["strategy"] = cfg.strategy.type
        summary["data_health"] = data_health(cfg, candles)

        artifacts = self._export_artifacts(cfg, results) if self._export else None
        logger.info(
            "Backtest done: mode=%s return=%.4f max_dd=%.4f trades=%d cycles=%d/%d",
            results.tp_mode,
            results.total_return,
            results.max_drawdown,
            results.total_trades,
            results.completed_cycles,
            len(results.cycles),
        )
        return EngineResult(summary=summary, artifacts=artifacts)

    def _export_artifacts(self, cfg: MainConfig, results: BacktestResults) -> dict[str, Any]:
        out_dir = Path(self._artifacts_dir or cfg.output.dir)
        paths: dict[str, Any] = write_artifacts(
            results,
            out_dir,
            write_csv=cfg.output.write_csv,
            write_json=cfg.output.write_json,
        )
        if not cfg.output.skip_plots and results.equity_curve:
            try:
                plot_equity_curve(results.equity_curve, out_dir / "equity.png")
                plot_drawdown(results.equity_curve, out_dir / "drawdown.png")
                paths["plots"] = [str(out_dir / "equity.png"), str(out_dir / "drawdown.png")]
            except Exception as exc:  # pragma: no cover
                logger.warning("Plotting failed: %s", exc)
        return {"dir": str(out_dir), **paths}
