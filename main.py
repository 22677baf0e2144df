"""DCA 回测统一命令行入口。

通过子命令驱动不同任务：

- `backtest`：单次回测，写出交易/周期/权益产物与汇总。
- `batch`：参数网格批量回测，线程池并行。
- `walkforward`：按时间分折回测，检验参数稳定性。
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Any

from analysis.reporting import print_summary
from engine.backtest_runner import BacktestRunner
from engine.batch_backtest import BatchBacktestEngine
from engine.walkforward import WalkforwardEngine


@dataclass
class CliArgs:
    """命令行参数结构。

    config: 配置文件路径
    task: 要运行的任务类型 (backtest/batch/walkforward)
    """
    config: str
    task: str
    output_dir: str | None = None
    no_export: bool = False
    max_workers: int | None = None  # batch 模式下覆盖 batch.max_workers
    n_folds: int | None = None      # walkforward 模式下覆盖 walkforward.n_folds
    quiet: bool = False


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。

    Returns
    -------
    argparse.ArgumentParser
        配置好的参数解析器。
    """
    parser = argparse.ArgumentParser(prog="dca-backtest", description="DCA 回测统一入口")

    def _add_common_args(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/backtest.yml)",
        )
        p.add_argument(
            "--quiet",
            action="store_true",
            default=argparse.SUPPRESS,
            help="不在终端打印汇总表",
        )

    # 允许 `main.py --config ... backtest` 与 `main.py backtest --config ...`
    _add_common_args(parser, default="config/backtest.yml")

    sub = parser.add_subparsers(dest="task")

    p_backtest = sub.add_parser("backtest", help="单次回测")
    _add_common_args(p_backtest, default=argparse.SUPPRESS)
    p_backtest.add_argument("--output-dir", type=str, default=None, help="产物目录（默认 output.dir）")
    p_backtest.add_argument("--no-export", action="store_true", help="不写任何产物文件")

    p_batch = sub.add_parser("batch", help="参数网格批量回测")
    _add_common_args(p_batch, default=argparse.SUPPRESS)
    p_batch.add_argument("--output-dir", type=str, default=None, help="batch.csv 输出目录")
    p_batch.add_argument("--max-workers", type=int, default=None)

    p_wf = sub.add_parser("walkforward", help="Walk-Forward 分折回测")
    _add_common_args(p_wf, default=argparse.SUPPRESS)
    p_wf.add_argument("--output-dir", type=str, default=None, help="folds.csv 输出目录")
    p_wf.add_argument("--n-folds", type=int, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    """解析命令行参数。

    Parameters
    ----------
    argv:
        传入的参数列表；为 None 时读取 sys.argv。
    """
    parser = build_parser()
    ns = parser.parse_args(argv)
    task = ns.task or "backtest"
    return CliArgs(
        config=str(getattr(ns, "config", "config/backtest.yml")),
        task=task,
        output_dir=getattr(ns, "output_dir", None),
        no_export=bool(getattr(ns, "no_export", False)),
        max_workers=getattr(ns, "max_workers", None),
        n_folds=getattr(ns, "n_folds", None),
        quiet=bool(getattr(ns, "quiet", False)),
    )


def main(argv: list[str] | None = None) -> Any:
    """程序主入口。

    Returns
    -------
    Any
        对应子命令的 summary dict。
    """
    args = parse_args(argv)

    if args.task == "backtest":
        runner = BacktestRunner(
            cfg_path=args.config,
            artifacts_dir=args.output_dir,
            export=not args.no_export,
        )
        summary = runner.run().summary
        if not args.quiet:
            print_summary(summary)
        return summary

    if args.task == "batch":
        return BatchBacktestEngine(
            cfg_path=args.config,
            output_dir=args.output_dir,
            max_workers=args.max_workers,
        ).run().summary

    if args.task == "walkforward":
        return WalkforwardEngine(
            cfg_path=args.config,
            n_folds=args.n_folds,
            output_dir=args.output_dir,
        ).run().summary

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
