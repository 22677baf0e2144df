"""精度与步进工具（lot size 取整、数值展示稳定）。"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def decimals_from_step(step: float) -> int:
    """根据 step（通常是 10 的负次幂）推导小数位数。"""
    try:
        d = Decimal(str(step))
    except Exception:
        return 0
    if d == 0:
        return 0
    exp = d.as_tuple().exponent
    return max(0, -int(exp))


def snap_to_decimals(value: float, decimals: int) -> float:
    """把 float “钉死”到指定小数位，避免 0.30000000000004 这类噪声。"""
    if decimals < 0:
        return float(value)
    return float(f"{float(value):.{decimals}f}")


def round_to_step(value: float, step: float, *, min_steps: int = 1) -> float:
    """把 value 四舍五入到 step 的整数倍，且至少 `min_steps` 个步长。

    模拟交易所 lot size：0.0149 / step=0.01 -> 0.01；0.004 -> 0.01（最少一步）。
    用 Decimal 计算倍数，避免 0.1 * 3 = 0.30000000000000004。

    Parameters
    ----------
    value:
        原始数量。
    step:
        最小下单数量/步长；<=0 时原样返回。
    min_steps:
        最少步数。

    Returns
    -------
    float
        对齐后的数量。
    """
    if step is None or step <= 0:
        return float(value)

    sd = Decimal(str(step))
    n = (Decimal(str(value)) / sd).to_integral_value(rounding=ROUND_HALF_UP)
    if n < min_steps:
        n = Decimal(min_steps)
    decs = decimals_from_step(step)
    out = (n * sd).quantize(Decimal(1).scaleb(-decs)) if decs > 0 else (n * sd).quantize(Decimal(1))
    return snap_to_decimals(float(out), decs)
