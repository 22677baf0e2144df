"""批量回测：参数网格 × 有界线程池。

每个任务独立构建自己的策略与引擎实例，任务之间不共享可变状态；
K 线序列由所有任务只读共享（Candle 不可变）。
单个任务失败只记录在它自己的结果里，不影响其它任务。
"""

from __future__ import annotations

import itertools
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence

import pandas as pd

from algo.strategy.registry import build_strategy
from engine.backtest_engine import BacktestEngine
from engine.base_engine import DEFAULT_CONFIG_PATH, BaseEngine, EngineResult
from engine.results import BacktestResults
from shared.config.schema import EngineConfig, MainConfig, StrategyConfig
from shared.models.models import Candle
from shared.utils.logging import setup_logger

logger = setup_logger("batch")


@dataclass(frozen=True)
class BacktestJob:
    """一次独立回测的完整输入。"""
    job_id: int
    strategy: StrategyConfig
    engine: EngineConfig
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BacktestJobResult:
    job: BacktestJob
    results: BacktestResults | None = None
    error: str | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.results is not None


def product_dict(param_grid: Dict[str, List[Any]]) -> List[Dict[str, Any]]:
    """参数网格 -> 所有组合；空网格返回一个空组合。"""
    keys = list(param_grid.keys())
    values = [list(param_grid[k]) for k in keys]
    return [dict(zip(keys, vals)) for vals in itertools.product(*values)]


def build_jobs(
    strategy_cfg: StrategyConfig,
    engine_cfg: EngineConfig,
    strategy_grid: Dict[str, List[Any]] | None = None,
    engine_grid: Dict[str, List[Any]] | None = None,
) -> List[BacktestJob]:
    """展开策略参数网格与引擎参数网格的笛卡尔积。

    Raises
    ------
    ValueError
        某个组合得到非法的引擎配置（在提交任务前就失败）。
    """
    jobs: List[BacktestJob] = []
    for s_params in product_dict(strategy_grid or {}):
        for e_params in product_dict(engine_grid or {}):
            strat = StrategyConfig(type=strategy_cfg.type, params={**strategy_cfg.params, **s_params})
            eng = EngineConfig.model_validate({**engine_cfg.model_dump(), **e_params})
            jobs.append(
                BacktestJob(
                    job_id=len(jobs),
                    strategy=strat,
                    engine=eng,
                    params={**s_params, **{f"engine.{k}": v for k, v in e_params.items()}},
                )
            )
    return jobs


def run_job(job: BacktestJob, candles: Sequence[Candle]) -> BacktestJobResult:
    """运行单个任务；任何异常都收进结果，不向上抛。"""
    t0 = time.perf_counter()
    try:
        strategy = build_strategy(job.strategy)
        engine = BacktestEngine(strategy, job.engine)
        results = engine.run(candles)
    except Exception as exc:
        return BacktestJobResult(job=job, error=f"{type(exc).__name__}: {exc}", elapsed=time.perf_counter() - t0)
    return BacktestJobResult(job=job, results=results, elapsed=time.perf_counter() - t0)


def run_batch(
    jobs: Sequence[BacktestJob],
    candles: Sequence[Candle],
    *,
    max_workers: int = 4,
) -> List[BacktestJobResult]:
    """在有界线程池中运行全部任务，按 job 顺序返回结果。"""
    if not jobs:
        return []
    data = list(candles)
    max_workers = min(max(1, int(max_workers)), len(jobs))

    ordered: List[BacktestJobResult | None] = [None] * len(jobs)
    done = 0
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        future_map = {pool.submit(run_job, job, data): idx for idx, job in enumerate(jobs)}
        for future in as_completed(future_map):
            idx = future_map[future]
            res = future.result()
            ordered[idx] = res
            done += 1
            if res.error:
                logger.warning("Job %d failed: %s", res.job.job_id, res.error)
            if done % 10 == 0 or done == len(jobs):
                logger.info("Batch progress %d/%d", done, len(jobs))

    return [r for r in ordered if r is not None]


def batch_frame(job_results: Sequence[BacktestJobResult], sort_by: str = "total_return") -> pd.DataFrame:
    """汇总成表：每行一个任务（参数列 + 标量指标），按 `sort_by` 降序。"""
    rows = []
    for r in job_results:
        row: Dict[str, Any] = {"job_id": r.job.job_id, **r.job.params, "error": r.error or ""}
        if r.results is not None:
            row.update(r.results.to_summary())
        rows.append(row)
    df = pd.DataFrame(rows)
    if not df.empty and sort_by in df.columns:
        df = df.sort_values(sort_by, ascending=False, na_position="last").reset_index(drop=True)
    return df


class BatchBacktestEngine(BaseEngine):
    """配置驱动的批量回测：`batch.params` × `batch.engine_params`。"""

    def __init__(
        self,
        *,
        cfg_path: str = DEFAULT_CONFIG_PATH,
        cfg_obj: MainConfig | None = None,
        output_dir: str | Path | None = None,
        max_workers: int | None = None,
        candles: Sequence[Candle] | None = None,
    ):
        super().__init__(cfg_path=cfg_path, cfg_obj=cfg_obj, candles=candles)
        self._output_dir = output_dir
        self._max_workers = max_workers

        self.job_results: List[BacktestJobResult] = []

    def run(self) -> EngineResult:
        cfg = self.load_cfg()
        candles = self.load_candles(cfg)

        jobs = build_jobs(cfg.strategy, cfg.engine, cfg.batch.params, cfg.batch.engine_params)
        max_workers = self._max_workers or cfg.batch.max_workers
        logger.info("Running %d jobs on %d bars with %d workers", len(jobs), len(candles), max_workers)
        self.job_results = run_batch(jobs, candles, max_workers=max_workers)

        df = batch_frame(self.job_results)
        failed = sum(1 for r in self.job_results if not r.ok)
        summary: Dict[str, Any] = {
            "n_jobs": len(jobs),
            "failed": failed,
            "best": df.iloc[0].to_dict() if not df.empty and failed < len(jobs) else None,
        }

        artifacts = None
        if self._output_dir is not None:
            out_dir = Path(self._output_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            df.to_csv(out_dir / "batch.csv", index=False)
            artifacts = {"dir": str(out_dir), "batch": str(out_dir / "batch.csv")}
        return EngineResult(summary=summary, artifacts=artifacts)
