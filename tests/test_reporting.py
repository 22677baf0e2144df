from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd
import pytest
from rich.console import Console

from algo.strategy.base import Strategy
from analysis.plotter import drawdown_series, plot_drawdown, plot_equity_curve
from analysis.reporting import print_summary, trades_frame, write_artifacts
from engine.backtest_engine import BacktestEngine
from shared.config.schema import EngineConfig
from shared.models.models import Candle, TradeAction, TradeDecision

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _BuyFirstBar(Strategy):
    def decide(self, window):
        if len(window) == 1:
            return TradeDecision(action=TradeAction.BUY, amount=100.0)
        return TradeDecision.hold()


@pytest.fixture
def results():
    candles = [
        Candle(ts=T0 + timedelta(hours=i), open=c, high=h, low=c * 0.99, close=c)
        for i, (c, h) in enumerate([(100.0, 100.0), (101.0, 102.5), (99.0, 99.5)])
    ]
    engine = BacktestEngine(_BuyFirstBar(), EngineConfig(initial_balance=1000.0, commission=0.0))
    return engine.run(candles)


def test_write_artifacts(tmp_path: Path, results):
    paths = write_artifacts(results, tmp_path)
    assert set(paths) == {"trades", "cycles", "equity", "summary"}

    trades = pd.read_csv(tmp_path / "trades.csv")
    assert len(trades) == 1
    assert trades.loc[0, "kind"] == "entry"

    summary = json.loads((tmp_path / "summary.json").read_text(encoding="utf-8"))
    # 无亏损时 profit factor 为 inf，JSON 中写成字符串
    assert summary["profit_factor"] == "inf"
    assert summary["completed_cycles"] == 1


def test_write_artifacts_respects_flags(tmp_path: Path, results):
    paths = write_artifacts(results, tmp_path, write_csv=False)
    assert list(paths) == ["summary"]
    assert not (tmp_path / "trades.csv").exists()


def test_trades_frame_blank_exit_for_open_rows():
    engine = BacktestEngine(_BuyFirstBar(), EngineConfig(tp_percent=0.5))
    engine.run([Candle(ts=T0, open=100.0, high=100.0, low=99.0, close=100.0)])
    engine.trades[0].exit_time = None
    df = trades_frame(engine.results())
    assert df.loc[0, "exit_time"] == ""


def test_print_summary_renders_percentages(results):
    console = Console(record=True, width=120)
    print_summary(results.to_summary(), console=console)
    text = console.export_text()
    assert "total_return" in text
    assert "%" in text


def test_drawdown_series():
    assert drawdown_series([100.0, 110.0, 99.0, 120.0]) == pytest.approx([0.0, 0.0, 0.1, 0.0])
    assert drawdown_series([]) == []


def test_plots_saved(tmp_path: Path, results):
    plot_equity_curve(results.equity_curve, tmp_path / "equity.png")
    plot_drawdown(results.equity_curve, tmp_path / "drawdown.png")
    assert (tmp_path / "equity.png").exists()
    assert (tmp_path / "drawdown.png").exists()
    assert plot_equity_curve([]) is None
