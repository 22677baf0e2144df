from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from algo.strategy.dca import EnhancedDCAStrategy
from engine.walkforward import WalkforwardEngine, run_walkforward, split_folds
from market_data.loader import generate_sample_candles
from shared.config.schema import EngineConfig, MainConfig


def test_split_folds_last_fold_takes_remainder():
    assert split_folds(10, 3) == [(0, 3), (3, 6), (6, 10)]
    assert split_folds(5, 1) == [(0, 5)]
    with pytest.raises(ValueError):
        split_folds(10, 0)
    with pytest.raises(ValueError):
        split_folds(10, 3, min_fold_bars=5)


class _CountingStrategy(EnhancedDCAStrategy):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.resets = 0

    def reset_for_new_period(self) -> None:
        super().reset_for_new_period()
        self.resets += 1


def test_run_walkforward_resets_strategy_per_fold():
    candles = generate_sample_candles(240, np.random.default_rng(5), volatility=0.02)
    strategy = _CountingStrategy(rsi_period=7, ma_window=10, atr_period=7)
    report = run_walkforward(strategy, candles, EngineConfig(), n_folds=3, min_fold_bars=50)

    assert strategy.resets == 3
    assert [f.fold for f in report.folds] == [1, 2, 3]
    assert [(f.start_index, f.end_index) for f in report.folds] == [(0, 80), (80, 160), (160, 240)]
    for f in report.folds:
        assert f.results.start_balance == EngineConfig().initial_balance
        assert len(f.results.equity_curve) == 80

    overall = report.overall()
    assert overall["n_folds"] == 3
    assert overall["min_return"] <= overall["mean_return"] <= overall["max_return"]
    assert overall["total_trades"] == sum(f.results.total_trades for f in report.folds)

    summary = report.folds[0].summary()
    assert summary["bars"] == 80
    assert summary["start"] == candles[0].ts.isoformat()


def test_walkforward_engine_writes_artifacts(tmp_path: Path):
    cfg = MainConfig.model_validate(
        {
            "strategy": {"type": "enhanced_dca", "rsi_period": 7, "ma_window": 10, "atr_period": 7},
            "data": {"sample_bars": 200, "sample_seed": 3},
            "walkforward": {"n_folds": 2, "min_fold_bars": 50},
        }
    )
    res = WalkforwardEngine(cfg_obj=cfg, output_dir=tmp_path).run()

    assert res.summary["overall"]["n_folds"] == 2
    assert len(res.summary["folds"]) == 2
    assert (tmp_path / "folds.csv").exists()
    assert (tmp_path / "walkforward.json").exists()
