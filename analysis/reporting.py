"""回测产物输出：CSV（成交/周期/权益）、summary.json、终端汇总表。"""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Mapping

import pandas as pd
from rich import box
from rich.console import Console
from rich.table import Table

from engine.results import BacktestResults
from shared.utils.json_sanitize import sanitize_for_json

PERCENT_KEYS = {
    "total_return",
    "max_drawdown",
    "max_intra_cycle_drawdown",
    "win_rate",
    "annualized_return",
    "avg_exposure",
    "max_exposure",
    "dynamic_tp_avg",
    "dynamic_tp_min",
    "dynamic_tp_max",
}


def trades_frame(results: BacktestResults) -> pd.DataFrame:
    rows = [t.to_dict() for t in results.trades]
    df = pd.DataFrame(rows)
    if df.empty:
        return df
    for col in ("entry_time", "exit_time"):
        df[col] = df[col].map(lambda v: v.isoformat() if pd.notna(v) else "")
    return df


def cycles_frame(results: BacktestResults) -> pd.DataFrame:
    rows = []
    for c in results.cycles:
        row = asdict(c)
        row.pop("partial_exits", None)
        row["start_time"] = c.start_time.isoformat() if c.start_time else ""
        row["end_time"] = c.end_time.isoformat() if c.end_time else ""
        rows.append(row)
    return pd.DataFrame(rows)


def equity_frame(results: BacktestResults) -> pd.DataFrame:
    df = pd.DataFrame([asdict(p) for p in results.equity_curve])
    if df.empty:
        return df
    df["ts"] = df["ts"].map(lambda v: v.isoformat())
    return df


def write_summary_json(summary: Mapping[str, Any], path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(sanitize_for_json(dict(summary)), f, indent=2, ensure_ascii=False)
    return out


def write_artifacts(
    results: BacktestResults,
    out_dir: str | Path,
    *,
    write_csv: bool = True,
    write_json: bool = True,
) -> dict[str, str]:
    """写出回测产物，返回 {名称: 路径}。"""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    paths: dict[str, str] = {}
    if write_csv:
        for name, frame in (
            ("trades", trades_frame(results)),
            ("cycles", cycles_frame(results)),
            ("equity", equity_frame(results)),
        ):
            path = out / f"{name}.csv"
            frame.to_csv(path, index=False)
            paths[name] = str(path)
    if write_json:
        paths["summary"] = str(write_summary_json(results.to_summary(), out / "summary.json"))
    return paths


def _fmt(key: str, value: Any) -> str:
    if isinstance(value, float):
        if key in PERCENT_KEYS:
            return f"{value * 100:.2f}%"
        return f"{value:,.4f}"
    return str(value)


def summary_table(summary: Mapping[str, Any], title: str = "Backtest Summary") -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right", style="green")
    for key, value in summary.items():
        table.add_row(key, _fmt(key, value))
    return table


def print_summary(summary: Mapping[str, Any], *, title: str = "Backtest Summary", console: Console | None = None) -> None:
    (console or Console()).print(summary_table(summary, title=title))
