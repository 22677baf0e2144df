"""回测核心的异常分类。

- 配置错误：构造阶段抛出，致命；
- 动态 TP 错误：不抛出，由解析器返回给调用方记录（回退到固定 TP）；
- 账本不变量错误：代表实现 bug，直接抛出。
"""

from __future__ import annotations


class SimulationConfigError(ValueError):
    """引擎配置非法或自相矛盾。"""


class DynamicTPError(RuntimeError):
    """策略动态 TP 计算失败（已回退到固定 TP）。"""


class LedgerInvariantError(RuntimeError):
    """周期账本数量守恒被破坏。"""
