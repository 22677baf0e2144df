"""行情数据模块（market_data）。

- 历史 K 线加载（CSV）
- 可复现的合成样本数据（显式传入随机数生成器，不使用全局种子）
- 按 `MainConfig.data` 选择数据来源
"""

from market_data.loader import candles_to_csv, generate_sample_candles, load_candles_csv, load_market_data

__all__ = [
    "candles_to_csv",
    "generate_sample_candles",
    "load_candles_csv",
    "load_market_data",
]
