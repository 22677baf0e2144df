from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from engine.backtest_engine import BacktestEngine
from engine.batch_backtest import (
    BacktestJob,
    BatchBacktestEngine,
    batch_frame,
    build_jobs,
    product_dict,
    run_batch,
)
from algo.strategy.registry import build_strategy
from market_data.loader import generate_sample_candles
from shared.config.schema import EngineConfig, MainConfig, StrategyConfig

STRATEGY = StrategyConfig(type="enhanced_dca", params={"rsi_period": 7, "ma_window": 10, "atr_period": 7})


@pytest.fixture(scope="module")
def candles():
    return generate_sample_candles(300, np.random.default_rng(11), volatility=0.02)


def test_product_dict():
    assert product_dict({}) == [{}]
    combos = product_dict({"a": [1, 2], "b": ["x"]})
    assert combos == [{"a": 1, "b": "x"}, {"a": 2, "b": "x"}]


def test_build_jobs_expands_strategy_and_engine_grids():
    jobs = build_jobs(
        STRATEGY,
        EngineConfig(),
        {"base_amount": [100, 200]},
        {"tp_percent": [0.01, 0.02, 0.03]},
    )
    assert len(jobs) == 6
    assert [j.job_id for j in jobs] == list(range(6))
    assert jobs[0].strategy.params["base_amount"] == 100
    assert jobs[0].strategy.params["rsi_period"] == 7
    assert jobs[2].engine.tp_percent == 0.03
    assert jobs[0].params == {"base_amount": 100, "engine.tp_percent": 0.01}


def test_build_jobs_rejects_invalid_engine_combo():
    with pytest.raises(ValueError):
        build_jobs(STRATEGY, EngineConfig(), None, {"commission": [2.0]})


def test_run_batch_matches_sequential_runs(candles):
    jobs = build_jobs(STRATEGY, EngineConfig(), {"base_amount": [100, 300]}, {"tp_percent": [0.01, 0.03]})
    results = run_batch(jobs, candles, max_workers=3)

    assert [r.job.job_id for r in results] == [j.job_id for j in jobs]
    assert all(r.ok for r in results)
    for r in results:
        expected = BacktestEngine(build_strategy(r.job.strategy), r.job.engine).run(candles)
        assert r.results.to_summary() == expected.to_summary()


def test_failed_job_is_isolated(candles):
    good = build_jobs(STRATEGY, EngineConfig())[0]
    bad = BacktestJob(job_id=1, strategy=StrategyConfig(type="no_such_strategy"), engine=EngineConfig())
    results = run_batch([good, bad], candles, max_workers=2)

    assert results[0].ok
    assert not results[1].ok
    assert "no_such_strategy" in results[1].error

    df = batch_frame(results)
    assert len(df) == 2
    assert df.iloc[0]["job_id"] == 0


def test_run_batch_empty():
    assert run_batch([], []) == []


def test_batch_engine_writes_csv(tmp_path: Path, candles):
    cfg = MainConfig.model_validate(
        {
            "strategy": {"type": "enhanced_dca", "rsi_period": 7, "ma_window": 10, "atr_period": 7},
            "batch": {"max_workers": 2, "params": {"base_amount": [100, 200]}},
        }
    )
    engine = BatchBacktestEngine(cfg_obj=cfg, output_dir=tmp_path, candles=candles)
    res = engine.run()

    assert res.summary["n_jobs"] == 2
    assert res.summary["failed"] == 0
    assert res.summary["best"] is not None
    df = pd.read_csv(tmp_path / "batch.csv")
    assert len(df) == 2
    assert list(df["total_return"]) == sorted(df["total_return"], reverse=True)
