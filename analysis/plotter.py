from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Sequence

from shared.models.models import EquityPoint


def _require_matplotlib():
    try:
        import matplotlib

        matplotlib.use("Agg")
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - import guard
        raise RuntimeError("matplotlib 未安装，无法绘图。请先安装 matplotlib。") from exc
    return plt


def _to_mpl_time(xs: List[datetime]) -> List[float]:
    import matplotlib.dates as mdates

    return [float(mdates.date2num(x)) for x in xs]


def _format_time_axis(fig, ax) -> None:
    import matplotlib.dates as mdates  # type: ignore

    locator = mdates.AutoDateLocator()
    ax.xaxis.set_major_locator(locator)
    ax.xaxis.set_major_formatter(mdates.AutoDateFormatter(locator))
    fig.autofmt_xdate()


def _save(plt, fig, save_path: str | Path | None):
    if save_path:
        path = Path(save_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(str(path), bbox_inches="tight")
        plt.close(fig)
    return fig


def drawdown_series(equities: Sequence[float]) -> List[float]:
    """逐点回撤比例（正数），峰值从第一个点开始。"""
    out: List[float] = []
    peak = equities[0] if equities else 0.0
    for v in equities:
        peak = max(peak, v)
        out.append((peak - v) / peak if peak else 0.0)
    return out


def plot_equity_curve(curve: Sequence[EquityPoint], save_path: str | Path | None = None):
    """
    绘制权益曲线与持仓市值占比，save_path 不传则仅返回 fig。
    """
    if not curve:
        return None
    plt = _require_matplotlib()

    xs = _to_mpl_time([p.ts for p in curve])
    fig, (ax, ax_exp) = plt.subplots(2, 1, figsize=(10, 6), sharex=True, gridspec_kw={"height_ratios": [3, 1]})
    ax.plot(xs, [p.equity for p in curve], label="Equity")
    ax.plot(xs, [p.balance for p in curve], label="Cash", alpha=0.6)
    ax.set_title("Equity Curve")
    ax.set_ylabel("Equity")
    ax.grid(True, alpha=0.3)
    ax.legend()

    ax_exp.fill_between(xs, [p.exposure for p in curve], color="steelblue", alpha=0.4)
    ax_exp.set_ylabel("Exposure")
    ax_exp.set_xlabel("Time")
    ax_exp.grid(True, alpha=0.3)
    _format_time_axis(fig, ax_exp)
    return _save(plt, fig, save_path)


def plot_drawdown(curve: Sequence[EquityPoint], save_path: str | Path | None = None):
    """
    绘制回撤曲线（正数表示回撤比例）。
    """
    if not curve:
        return None
    plt = _require_matplotlib()

    xs = _to_mpl_time([p.ts for p in curve])
    fig, ax = plt.subplots(figsize=(10, 3))
    ax.plot(xs, drawdown_series([p.equity for p in curve]), color="tomato", label="Drawdown")
    ax.set_title("Drawdown")
    ax.set_xlabel("Time")
    ax.set_ylabel("Drawdown")
    ax.grid(True, alpha=0.3)
    ax.legend()
    _format_time_axis(fig, ax)
    return _save(plt, fig, save_path)
