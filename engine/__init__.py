"""回测引擎层（engine）。

- `BacktestEngine`：DCA 周期模拟主循环（纯内存，输入 K 线输出 BacktestResults）；
- `BacktestRunner` / `BatchBacktestEngine` / `WalkforwardEngine`：配置驱动入口，
  以 `run() -> EngineResult` 形式对外；命令行入口由仓库根目录 `main.py` 承载。
"""
