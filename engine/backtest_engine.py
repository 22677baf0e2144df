"""单次回测引擎（BacktestEngine）：DCA 周期模拟主循环。

每根 bar 按固定顺序处理：
决策 → 入场 → 止盈检查（用 high）→ 权益/风险记录；数据结束后统一收尾。

TP 模式在构造时一次性确定（FIVE_LEVEL / DYNAMIC / FIXED / NONE），
同一套循环处理所有模式。
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Sequence

from pydantic import ValidationError

from algo.strategy.base import HedgeParameterProvider, Strategy
from engine.cycle_ledger import CycleLedger, CycleSummary
from engine.dynamic_tp import DynamicTPRecord, DynamicTPResolver, TPResolution
from engine.errors import SimulationConfigError
from engine.results import BacktestResults, ResultAggregator
from engine.tp_ladder import QTY_EPSILON, TPLevelLadder
from shared.config.schema import EngineConfig
from shared.models.models import (
    TRADE_KIND_ENTRY,
    TRADE_KIND_MTM,
    TRADE_KIND_TP_LEVEL,
    Candle,
    EquityPoint,
    Trade,
    TradeAction,
    TradeDecision,
)
from shared.utils.logging import setup_logger
from shared.utils.precision import round_to_step

logger = setup_logger("backtest")


class TPMode(str, Enum):
    """止盈模式（构造时选定，运行中不变）。"""
    NONE = "none"
    FIXED = "fixed"
    DYNAMIC = "dynamic"
    FIVE_LEVEL = "five_level"


def select_tp_mode(cfg: EngineConfig, dynamic_enabled: bool) -> TPMode:
    if cfg.use_tp_levels:
        return TPMode.FIVE_LEVEL
    if cfg.tp_percent > 0:
        return TPMode.DYNAMIC if dynamic_enabled else TPMode.FIXED
    return TPMode.NONE


def _build_config(config: EngineConfig | None, overrides: dict[str, Any]) -> EngineConfig:
    base = config.model_dump() if config is not None else {}
    try:
        return EngineConfig.model_validate({**base, **overrides})
    except ValidationError as exc:
        raise SimulationConfigError(f"invalid engine config: {exc}") from exc


class BacktestEngine:
    """DCA 回测引擎。

    Parameters
    ----------
    strategy:
        决策来源；可选实现 `DynamicTPQuoteProvider` / `HedgeParameterProvider`。
    config:
        引擎配置；为空时使用默认值。
    **overrides:
        覆盖 `config` 中的同名字段（便于测试与批量扫参）。

    Raises
    ------
    SimulationConfigError
        配置非法或自相矛盾（例如动态 TP 策略却 `tp_percent == 0`）。

    Notes
    -----
    同一实例可以多次调用 `run`，每次运行都会重置内部状态；
    实例之间不共享任何可变状态，可以在线程池中并发构造与运行。
    """

    def __init__(self, strategy: Strategy, config: EngineConfig | None = None, **overrides: Any):
        self.strategy = strategy
        self.config = _build_config(config, overrides)

        dynamic_enabled = bool(strategy.is_dynamic_tp_enabled())
        if dynamic_enabled and not self.config.use_tp_levels and self.config.tp_percent == 0:
            raise SimulationConfigError("strategy enables dynamic TP but tp_percent is 0 (no fallback target)")
        self.tp_mode = select_tp_mode(self.config, dynamic_enabled)
        self.resolver = DynamicTPResolver(strategy)
        self._reset()

    # ---- 运行状态 -------------------------------------------------------

    def _reset(self) -> None:
        cfg = self.config
        ladder = TPLevelLadder(cfg.level_multipliers) if self.tp_mode is TPMode.FIVE_LEVEL else None
        self.ladder = ladder
        self.ledger = CycleLedger(
            ladder=ladder,
            base_tp_percent=cfg.tp_percent,
            on_cycle_complete=self.strategy.on_cycle_complete,
        )
        self.balance = cfg.initial_balance
        self.position = 0.0
        self.trades: list[Trade] = []
        self.cycles: list[CycleSummary] = []
        self.equity_curve: list[EquityPoint] = []
        self.dynamic_tp_records: list[DynamicTPRecord] = []

        self.peak_equity = cfg.initial_balance
        self.max_drawdown = 0.0
        self.cycle_peak_equity: float | None = None
        self.max_intra_cycle_drawdown = 0.0
        self.exposure_sum = 0.0
        self.max_exposure = 0.0
        self.bars_processed = 0
        self.last_equity = cfg.initial_balance

        self.decision_errors = 0
        self.dynamic_tp_fallbacks = 0

    def _equity_step_for(self, n_bars: int) -> int:
        cfg = self.config
        if n_bars <= cfg.equity_subsample_threshold:
            return 1
        return max(1, math.ceil(n_bars / cfg.equity_max_points))

    # ---- 主循环 ---------------------------------------------------------

    def run(self, candles: Sequence[Candle]) -> BacktestResults:
        """对整段 K 线跑一次完整回测。

        Parameters
        ----------
        candles:
            按时间升序的 K 线。

        Returns
        -------
        BacktestResults
            空序列时返回零成交、余额不变的结果。
        """
        self._reset()
        data = list(candles)
        n = len(data)
        step = self._equity_step_for(n)
        window_size = self.config.window_size

        for i, candle in enumerate(data):
            window = data[max(0, i + 1 - window_size): i + 1]

            decision = self._decide(window)
            if decision is not None:
                self._try_enter(candle, window, decision)

            if self.ledger.is_open and self.position > QTY_EPSILON:
                if self.tp_mode is TPMode.FIVE_LEVEL:
                    self._check_tp_levels(candle)
                elif self.tp_mode in (TPMode.FIXED, TPMode.DYNAMIC):
                    self._check_single_tp(candle, window)

            record = i % step == 0 or i == n - 1
            self._update_equity(candle, record=record)

        if data:
            self.finalize(data[-1])

        if self.decision_errors:
            logger.info("Strategy decisions treated as HOLD: %d", self.decision_errors)
        if self.dynamic_tp_fallbacks:
            logger.info("Dynamic TP fell back to fixed TP %d times", self.dynamic_tp_fallbacks)
        return self.results()

    def _decide(self, window: Sequence[Candle]) -> TradeDecision | None:
        """返回可执行的买入决策；HOLD/SELL/异常/非法决策一律返回 None。"""
        ts = window[-1].ts
        try:
            decision = self.strategy.decide(window)
        except Exception as exc:
            self.decision_errors += 1
            logger.debug("decide() failed at %s, treating as HOLD: %s", ts, exc)
            return None

        if not isinstance(decision, TradeDecision):
            self.decision_errors += 1
            logger.debug("decide() returned %r at %s, treating as HOLD", type(decision).__name__, ts)
            return None
        if decision.action != TradeAction.BUY:
            return None
        try:
            amount = float(decision.amount)
        except (TypeError, ValueError):
            amount = float("nan")
        if not math.isfinite(amount) or amount <= 0:
            self.decision_errors += 1
            logger.debug("BUY with unusable amount %r at %s, treating as HOLD", decision.amount, ts)
            return None
        return decision

    # ---- 入场 -----------------------------------------------------------

    def _try_enter(self, candle: Candle, window: Sequence[Candle], decision: TradeDecision) -> bool:
        price = float(candle.close)
        if price <= 0:
            return False
        cfg = self.config

        qty = float(decision.amount) / price
        if cfg.min_order_qty > 0:
            qty = round_to_step(qty, cfg.min_order_qty)
        notional = qty * price
        commission = notional * cfg.commission
        if qty <= 0 or self.balance < notional + commission:
            return False

        self.balance -= notional + commission
        self.position += qty
        self.ledger.open_if_needed(candle.ts)
        self.ledger.record_entry(price, qty, qty, commission)

        resolution = self.resolver.resolve_target(
            candle,
            window,
            self.ledger.avg_entry,
            cfg.tp_percent,
            self.tp_mode is TPMode.DYNAMIC,
        )
        self._note_resolution(resolution)

        self.trades.append(
            Trade(
                entry_time=candle.ts,
                entry_price=price,
                quantity=qty,
                commission=commission,
                cycle=self.ledger.cycle_number,
                kind=TRADE_KIND_ENTRY,
                tp_percent=resolution.percent,
                tp_strategy=resolution.strategy,
                market_volatility=resolution.market_volatility,
                signal_strength=resolution.signal_strength,
            )
        )
        return True

    def _note_resolution(self, resolution: TPResolution) -> None:
        if resolution.record is not None:
            self.dynamic_tp_records.append(resolution.record)
        if resolution.error is not None:
            self.dynamic_tp_fallbacks += 1
            if self.dynamic_tp_fallbacks == 1:
                logger.warning("%s; falling back to fixed TP", resolution.error)
            else:
                logger.debug("%s; falling back to fixed TP", resolution.error)

    # ---- 止盈 -----------------------------------------------------------

    def _check_tp_levels(self, candle: Candle) -> None:
        """五级止盈：按升序检查未命中级别，命中即按目标价卖出该级数量。"""
        ladder = self.ladder
        if ladder is None:
            raise RuntimeError("five-level TP check without a level ladder")
        ledger = self.ledger
        rate = self.config.commission
        avg = ledger.avg_entry
        cost_basis = ledger.avg_gross_entry
        last_target = 0.0

        for idx in ladder.unfired():
            if ledger.remaining_qty <= QTY_EPSILON:
                break
            target = ladder.level_target(idx, avg)
            if candle.high < target:
                continue
            qty = ladder.fill_quantity(idx, ledger.remaining_qty)
            if qty <= 0:
                continue

            proceeds = qty * target
            commission = proceeds * rate
            pnl = (target - cost_basis) * qty - commission
            self.balance += proceeds - commission
            self.position -= qty
            last_target = target

            level = ladder.mark_hit(idx, ts=candle.ts, price=target, sold_qty=qty, pnl=pnl, commission=commission)
            ledger.record_level_fill(
                tp_level=level.level,
                sold_qty=qty,
                price=target,
                ts=candle.ts,
                commission=commission,
                pnl=pnl,
            )
            self.trades.append(
                Trade(
                    entry_time=candle.ts,
                    entry_price=cost_basis,
                    quantity=qty,
                    commission=commission,
                    exit_time=candle.ts,
                    exit_price=target,
                    pnl=pnl,
                    cycle=ledger.cycle_number,
                    kind=TRADE_KIND_TP_LEVEL,
                    tp_level=level.level,
                    tp_percent=level.percent,
                )
            )

        if ledger.is_open and ladder.is_cycle_complete(ledger.remaining_qty):
            # 剩余的浮点尘埃随周期一起清掉
            self.position = 0.0
            self._close_cycle(candle, completed=True, target_price=last_target, final_exit_price=last_target)

    def _check_single_tp(self, candle: Candle, window: Sequence[Candle]) -> None:
        resolution = self.resolver.resolve_target(
            candle,
            window,
            self.ledger.avg_entry,
            self.config.tp_percent,
            self.tp_mode is TPMode.DYNAMIC,
        )
        self._note_resolution(resolution)
        target = resolution.target
        if candle.high < target:
            return

        qty, commission, realized = self._close_entry_rows(candle, target, self.config.commission)
        self.balance += qty * target - commission
        self.position = 0.0
        self.ledger.record_full_exit(qty, commission)
        self._close_cycle(
            candle,
            completed=True,
            target_price=target,
            realized_pnl=realized,
            final_exit_price=target,
        )

    def _close_entry_rows(self, candle: Candle, price: float, rate: float) -> tuple[float, float, float]:
        """按 `price` 结清当前周期所有未平入场行；卖出手续费按数量占比分摊。

        Returns
        -------
        tuple
            (总数量, 总卖出手续费, 各行 pnl 之和)
        """
        cycle = self.ledger.cycle_number
        rows = [t for t in self.trades if t.is_open and t.kind == TRADE_KIND_ENTRY and t.cycle == cycle]
        qty = sum(t.quantity for t in rows)
        commission = qty * price * rate
        realized = 0.0
        for t in rows:
            share = t.quantity / qty if qty > 0 else 0.0
            sell_commission = commission * share
            t.exit_time = candle.ts
            t.exit_price = price
            t.pnl = (price - t.entry_price) * t.quantity - t.commission - sell_commission
            realized += t.pnl
        return qty, commission, realized

    def _close_cycle(self, candle: Candle, *, completed: bool, **summary_fields: Any) -> CycleSummary:
        summary = self.ledger.close_and_summarize(candle.ts, completed=completed, **summary_fields)
        self.cycles.append(summary)
        self.cycle_peak_equity = None
        return summary

    # ---- 权益/风险 ------------------------------------------------------

    def _update_equity(self, candle: Candle, *, record: bool) -> None:
        price = float(candle.close)
        position_value = self.position * price
        equity = self.balance + position_value

        if equity > self.peak_equity:
            self.peak_equity = equity
        if self.peak_equity > 0:
            self.max_drawdown = max(self.max_drawdown, (self.peak_equity - equity) / self.peak_equity)

        if self.ledger.is_open:
            if self.cycle_peak_equity is None or equity > self.cycle_peak_equity:
                self.cycle_peak_equity = equity
            if self.cycle_peak_equity > 0:
                dd = (self.cycle_peak_equity - equity) / self.cycle_peak_equity
                self.max_intra_cycle_drawdown = max(self.max_intra_cycle_drawdown, dd)

        exposure = position_value / equity if equity > 0 else 0.0
        self.exposure_sum += exposure
        self.max_exposure = max(self.max_exposure, exposure)
        self.bars_processed += 1
        self.last_equity = equity

        if record:
            self.equity_curve.append(
                EquityPoint(
                    ts=candle.ts,
                    balance=self.balance,
                    position=self.position,
                    price=price,
                    equity=equity,
                    exposure=exposure,
                    pnl=equity - self.config.initial_balance,
                )
            )

    # ---- 收尾 -----------------------------------------------------------

    def finalize(self, last_candle: Candle) -> None:
        """数据结束时的收尾（幂等）。

        - 五级模式：剩余数量按最后收盘价生成一条 mark-to-market 合成行（不收手续费）；
        - 单 TP / 无 TP：未平入场行按最后收盘价结清（估值，不真实卖出）；
        - 仍打开的周期记为未完成周期。

        持仓只估值不卖出：余额不变，最终权益包含持仓市值。
        状态驱动：第二次调用时已无未平行/打开周期，不会重复计数。
        """
        price = float(last_candle.close)
        ledger = self.ledger
        if not ledger.is_open:
            return

        realized: float | None = None
        mtm_pnl = 0.0
        if self.tp_mode is TPMode.FIVE_LEVEL:
            remaining = ledger.remaining_qty
            if remaining > QTY_EPSILON:
                cost_basis = ledger.avg_gross_entry
                mtm_pnl = (price - cost_basis) * remaining
                self.trades.append(
                    Trade(
                        entry_time=last_candle.ts,
                        entry_price=cost_basis,
                        quantity=remaining,
                        commission=0.0,
                        exit_time=last_candle.ts,
                        exit_price=price,
                        pnl=mtm_pnl,
                        cycle=ledger.cycle_number,
                        kind=TRADE_KIND_MTM,
                    )
                )
        else:
            _, _, mtm_pnl = self._close_entry_rows(last_candle, price, 0.0)
            realized = 0.0

        target = ledger.avg_entry * (1.0 + self.config.tp_percent) if self.config.tp_percent > 0 else 0.0
        self._close_cycle(
            last_candle,
            completed=False,
            target_price=target,
            realized_pnl=realized,
            mark_to_market_pnl=mtm_pnl,
            final_exit_price=price,
        )

    # ---- 结果 -----------------------------------------------------------

    def results(self) -> BacktestResults:
        hedge = None
        if isinstance(self.strategy, HedgeParameterProvider):
            hedge = self.strategy.hedge_parameters()
        return ResultAggregator().aggregate(
            start_balance=self.config.initial_balance,
            end_balance=self.balance,
            final_equity=self.last_equity,
            final_position=self.position,
            max_drawdown=self.max_drawdown,
            max_intra_cycle_drawdown=self.max_intra_cycle_drawdown,
            avg_exposure=self.exposure_sum / self.bars_processed if self.bars_processed else 0.0,
            max_exposure=self.max_exposure,
            tp_mode=self.tp_mode.value,
            trades=self.trades,
            cycles=self.cycles,
            equity_curve=self.equity_curve,
            dynamic_tp_records=self.dynamic_tp_records,
            hedge_parameters=hedge,
            decision_errors=self.decision_errors,
            dynamic_tp_fallbacks=self.dynamic_tp_fallbacks,
        )
