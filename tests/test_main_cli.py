from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import main as app_main


@dataclass
class _Res:
    summary: dict[str, Any]


def test_parse_args_accepts_config_before_or_after_subcommand():
    a = app_main.parse_args(["--config", "cfg.yml", "backtest"])
    b = app_main.parse_args(["backtest", "--config", "cfg.yml"])
    assert a.config == b.config == "cfg.yml"
    assert a.task == b.task == "backtest"

    default = app_main.parse_args([])
    assert default.task == "backtest"
    assert default.config == "config/backtest.yml"


def test_main_backtest_uses_runner(monkeypatch):
    calls: list[dict[str, Any]] = []

    class _FakeRunner:
        def __init__(self, **kwargs):
            calls.append(kwargs)
            self.results = None

        def run(self):
            return _Res(summary={"ok": True})

    monkeypatch.setattr(app_main, "BacktestRunner", _FakeRunner)
    monkeypatch.setattr(app_main, "print_summary", lambda summary: None)
    res = app_main.main(["backtest", "--config", "c.yml", "--output-dir", "out", "--no-export"])
    assert res == {"ok": True}
    assert calls == [{"cfg_path": "c.yml", "artifacts_dir": "out", "export": False}]


def test_main_batch_and_walkforward_delegate(monkeypatch):
    calls: list[tuple[str, dict[str, Any]]] = []

    def _fake(name):
        class _Engine:
            def __init__(self, **kwargs):
                calls.append((name, kwargs))

            def run(self):
                return _Res(summary={"task": name})

        return _Engine

    monkeypatch.setattr(app_main, "BatchBacktestEngine", _fake("batch"))
    monkeypatch.setattr(app_main, "WalkforwardEngine", _fake("walkforward"))

    assert app_main.main(["batch", "--max-workers", "2"]) == {"task": "batch"}
    assert app_main.main(["walkforward", "--n-folds", "5", "--config", "w.yml"]) == {"task": "walkforward"}
    assert calls == [
        ("batch", {"cfg_path": "config/backtest.yml", "output_dir": None, "max_workers": 2}),
        ("walkforward", {"cfg_path": "w.yml", "n_folds": 5, "output_dir": None}),
    ]


def test_main_backtest_end_to_end(tmp_path: Path):
    cfg_path = tmp_path / "cfg.yml"
    cfg_path.write_text(
        "data:\n"
        "  sample_bars: 300\n"
        "  sample_seed: 9\n"
        "engine:\n"
        "  initial_balance: 5000\n"
        "strategy:\n"
        "  type: enhanced_dca\n"
        "  rsi_period: 7\n"
        "  ma_window: 10\n"
        "  atr_period: 7\n"
        "output:\n"
        "  skip_plots: true\n",
        encoding="utf-8",
    )
    out_dir = tmp_path / "out"
    summary = app_main.main(["backtest", "--config", str(cfg_path), "--output-dir", str(out_dir), "--quiet"])

    assert summary["start_balance"] == 5000
    assert summary["data_health"]["n_bars"] == 300
    for name in ("trades.csv", "cycles.csv", "equity.csv", "summary.json"):
        assert (out_dir / name).exists()
    data = json.loads((out_dir / "summary.json").read_text(encoding="utf-8"))
    assert data["start_balance"] == 5000
