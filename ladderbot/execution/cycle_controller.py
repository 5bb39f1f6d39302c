"""
TradingCycleController: drives one laddered trade cycle after another.

Architecture:
    IDLE           fetch a usable price (fresh feed, else direct quote); adopt
                   an existing position, or go to PLACING
    PLACING        cancel leftovers (or keep them), plan the ladder, submit
                   rungs one by one
    AWAITING_FILL  poll the position; a no-fill timer reprices the ladder
    POSITION_OPEN  evaluate take-profit / stop-loss / trailing stop on every
                   poll and every price update
    CLOSING        reduce-only market close, then cancel residual orders
    RESETTING      clear per-cycle state, cool down, start over

    Poll ticks, price updates and no-fill timeouts all go through one
    asyncio.Queue consumed by a single task, so steps never overlap.
    Single-threaded asyncio, no internal locks.

Risk gate:
    A position or open-order query that fails after retries blocks any new
    order in that step and leaves the state unchanged. AuthError halts the
    controller altogether.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from ladderbot.exchange.backpack_client import ExchangeClient
from ladderbot.exchange.models import OrderSpec, OrderType, Position, PositionSide, pick_position
from ladderbot.execution.cycle_state import CycleState, CycleStateMachine, CycleTransition
from ladderbot.infra.errors import (
    AuthError,
    InsufficientFundsError,
    LadderBotError,
    RateLimitError,
    StaleDataError,
)
from ladderbot.infra.retry import RetryExecutor
from ladderbot.market_data.price_feed import PriceFeed, PriceUpdate
from ladderbot.strategy.exit_rules import ExitDecision, ExitEvaluator, ExitReason, ExitRules, profit_percent
from ladderbot.strategy.ladder_planner import LadderPlan, OrderLadderPlanner

log = logging.getLogger("ladderbot")

T = TypeVar("T")


class ControllerEventKind(Enum):
    TICK = auto()
    PRICE = auto()
    NO_FILL_TIMEOUT = auto()


@dataclass(frozen=True)
class ControllerEvent:
    kind: ControllerEventKind
    generation: int = 0


@dataclass
class ControllerConfig:
    """Configuration for TradingCycleController."""
    symbol: str
    side: PositionSide = PositionSide.LONG
    exit_rules: ExitRules = field(default_factory=ExitRules)

    poll_interval_sec: float = 5.0
    no_fill_timeout_sec: float = 1800.0
    order_delay_sec: float = 1.0
    cancel_settle_sec: float = 2.0

    # Entry actions need a price younger than this
    max_price_age_sec: float = 60.0

    keep_existing_orders: bool = False
    cancel_orders_on_start: bool = False
    auto_restart: bool = False
    cycle_cooldown_sec: float = 5.0
    reinit_feed_on_reset: bool = False

    # Consecutive failed close submissions before re-evaluating the exit
    close_retry_limit: int = 3

    close_on_stop: bool = True
    shutdown_grace_sec: float = 15.0


@dataclass
class CloseRecord:
    """Outcome of the last closed cycle."""
    reason: str
    price: Optional[Decimal]
    entry_price: Optional[Decimal]
    quantity: Optional[Decimal]
    profit_percent: Optional[Decimal]
    order_id: Optional[str] = None
    closed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "price": self.price,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "profit_percent": self.profit_percent,
            "order_id": self.order_id,
            "closed_at": self.closed_at,
        }


class TradingCycleController:
    """
    Usage:
        controller = TradingCycleController(
            config=ControllerConfig(symbol="SOL_USDC_PERP"),
            client=client,
            planner=planner,
            price_feed=feed,
        )
        await controller.start()
        ...
        await controller.stop()   # idempotent
    """

    def __init__(
        self,
        config: ControllerConfig,
        client: ExchangeClient,
        planner: OrderLadderPlanner,
        price_feed: Optional[PriceFeed] = None,
        retry: Optional[RetryExecutor] = None,
        metrics: Optional[Any] = None,
        alerts: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config
        self.symbol = config.symbol
        self.client = client
        self.planner = planner
        self.price_feed = price_feed
        self.retry = retry or RetryExecutor()
        self.metrics = metrics
        self.alerts = alerts
        self._clock = clock
        self._log_event = log_event or self._default_log

        self.machine = CycleStateMachine(on_change=self._on_transition, log_event=self._log_event)
        self._events: "asyncio.Queue[ControllerEvent]" = asyncio.Queue()

        # Per-cycle state
        self._position: Optional[Position] = None
        self._exits: Optional[ExitEvaluator] = None
        self._last_decision: Optional[ExitDecision] = None
        self._placed_order_ids: List[str] = []
        self._close_failures = 0
        self._next_cycle_at: float = 0.0
        self._no_fill_generation = 0
        self._no_fill_task: Optional[asyncio.Task] = None

        # Guards
        self._tick_pending = False
        self._price_pending = False
        self._step_in_flight = False
        self._running = False
        self._stopping = False
        self._halted = False
        self._halt_reason: Optional[str] = None

        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Future] = None
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe_price: Optional[Callable[[], None]] = None
        self._client_id_seq = int(time.time()) % 1_000_000 * 1000

        self.last_close: Optional[CloseRecord] = None
        self._stats = {
            "cycles_started": 0,
            "cycles_completed": 0,
            "reprices": 0,
            "orders_placed": 0,
            "orders_failed": 0,
            "closes_submitted": 0,
            "close_failures": 0,
            "risk_gate_blocks": 0,
            "no_price_skips": 0,
            "take_profits": 0,
            "stop_losses": 0,
            "trailing_stops": 0,
            "external_closes": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, "symbol": self.symbol, **kwargs}, default=str))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> CycleState:
        return self.machine.state

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def position(self) -> Optional[Position]:
        return self._position

    def get_state(self) -> Dict[str, Any]:
        pos = self._position
        return {
            "state": self.state.name,
            "halted": self._halted,
            "halt_reason": self._halt_reason,
            "stopping": self._stopping,
            "position": None if pos is None else {
                "side": pos.side.value,
                "quantity": pos.quantity,
                "entry_price": pos.entry_price,
                "unrealized_pnl": pos.unrealized_pnl,
            },
            "trailing_stop": self._exits.trailing_stop_price if self._exits else None,
            "placed_orders": len(self._placed_order_ids),
            "next_cycle_in_sec": max(0.0, self._next_cycle_at - self._clock()) if self.state is CycleState.IDLE else None,
            "last_close": self.last_close.to_dict() if self.last_close else None,
            "recent_transitions": self.machine.recent(5),
        }

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, **self.machine.get_stats(), "halted": self._halted}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running or self._stopping:
            return
        self._running = True
        if self.price_feed is not None:
            self._unsubscribe_price = self.price_feed.subscribe(self._on_price_update)
        if self.config.cancel_orders_on_start:
            await self._cancel_on_start()
        self._loop_task = asyncio.create_task(self._run_loop(), name="cycle-controller")
        self._tick_task = asyncio.create_task(self._tick_loop(), name="cycle-ticker")
        self._enqueue_tick()
        self._log_event("controller_started", side=self.config.side.value, state=self.state.name)

    async def stop(self, flatten: Optional[bool] = None) -> None:
        """
        Stop timers and the control loop, then flatten if configured.

        Every call shares one shutdown, so a second call only waits for it.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._shutdown(flatten))
        await asyncio.shield(self._stop_task)

    async def _shutdown(self, flatten: Optional[bool]) -> None:
        self._stopping = True
        self._running = False
        if self._unsubscribe_price is not None:
            self._unsubscribe_price()
            self._unsubscribe_price = None

        tasks = [t for t in [self._tick_task, self._no_fill_task, self._loop_task, *self._background] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tick_task = self._no_fill_task = self._loop_task = None
        self._background.clear()

        do_flatten = self.config.close_on_stop if flatten is None else flatten
        if do_flatten and self._halt_reason == "auth":
            self._log_event("flatten_skipped", reason="auth_failure")
        elif do_flatten:
            try:
                await asyncio.wait_for(self._flatten(), timeout=self.config.shutdown_grace_sec)
            except asyncio.TimeoutError:
                self._log_event("flatten_failed", reason="grace_period_exceeded", grace_sec=self.config.shutdown_grace_sec)
            except Exception as exc:
                self._log_event("flatten_failed", err=str(exc), err_type=type(exc).__name__)

        self._log_event("controller_stopped", state=self.state.name, **self._stats)

    async def _flatten(self) -> None:
        """Best effort: cancel open orders, then close any position at market."""
        try:
            await self._call(lambda: self.client.cancel_all_orders(self.symbol), "cancel_all_orders")
            self._log_event("orders_cancelled_on_stop")
        except LadderBotError as exc:
            self._log_event("cancel_error", where="stop", err=str(exc), err_type=type(exc).__name__)

        try:
            position = await self._fetch_position()
        except LadderBotError as exc:
            self._log_event("close_position_failed_on_stop", err=str(exc), stage="query")
            return
        if position is None:
            return

        try:
            ack = await self._submit_close(position)
        except LadderBotError as exc:
            self._log_event("close_position_failed_on_stop", err=str(exc), stage="submit")
            return
        self._log_event(
            "position_closed_on_stop",
            order_id=ack.id,
            side=position.side.value,
            quantity=position.quantity,
            entry_price=position.entry_price,
        )

    async def _cancel_on_start(self) -> None:
        try:
            await self._call(lambda: self.client.cancel_all_orders(self.symbol), "cancel_all_orders")
            self._log_event("orders_cancelled_on_start")
        except LadderBotError as exc:
            self._log_event("cancel_error", where="start", err=str(exc), err_type=type(exc).__name__)

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def _enqueue_tick(self) -> None:
        if not self._tick_pending:
            self._tick_pending = True
            self._events.put_nowait(ControllerEvent(ControllerEventKind.TICK))

    def _on_price_update(self, update: PriceUpdate) -> None:
        # Only an open position reacts between polls; one pending event is enough
        if self.state is CycleState.POSITION_OPEN and not self._price_pending:
            self._price_pending = True
            self._events.put_nowait(ControllerEvent(ControllerEventKind.PRICE))

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval_sec)
            self._enqueue_tick()

    async def _run_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.process(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event(
                    "controller_step_error",
                    kind=event.kind.name,
                    state=self.state.name,
                    err=str(exc),
                    err_type=type(exc).__name__,
                )
                await self._halt("step_error", exc)

    async def process(self, event: ControllerEvent) -> None:
        """Handle one event. Public so callers can drive the controller step by step."""
        if event.kind is ControllerEventKind.TICK:
            self._tick_pending = False
        elif event.kind is ControllerEventKind.PRICE:
            self._price_pending = False

        if self._halted or self._stopping or self._step_in_flight:
            return

        self._step_in_flight = True
        try:
            if event.kind is ControllerEventKind.NO_FILL_TIMEOUT:
                if event.generation == self._no_fill_generation and self.state is CycleState.AWAITING_FILL:
                    await self._handle_no_fill_timeout()
            elif event.kind is ControllerEventKind.PRICE:
                if self.state is CycleState.POSITION_OPEN:
                    price = self._fresh_feed_price()
                    if price is not None:
                        await self._evaluate_exit(price)
            else:
                await self.step()
        finally:
            self._step_in_flight = False

    async def step(self) -> None:
        state = self.state
        if self.metrics:
            self.metrics.controller_ticks.labels(symbol=self.symbol, state=state.name).inc()
        if state is CycleState.IDLE:
            await self._step_idle()
        elif state is CycleState.PLACING:
            await self._step_placing()
        elif state is CycleState.AWAITING_FILL:
            await self._step_awaiting_fill()
        elif state is CycleState.POSITION_OPEN:
            await self._step_position_open()
        elif state is CycleState.CLOSING:
            await self._step_closing()
        elif state is CycleState.RESETTING:
            await self._step_resetting()

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _step_idle(self) -> None:
        if self._clock() < self._next_cycle_at:
            return
        try:
            position = await self._fetch_position()
        except LadderBotError as exc:
            self._risk_gate("get_positions", exc)
            return
        if position is not None:
            self._enter_position(position, reason="position_adopted")
            return

        price = await self._entry_price()
        if price is None:
            return
        self._stats["cycles_started"] += 1
        self.machine.transition(CycleState.PLACING, reason="cycle_start", price=price)
        await self._place_ladder(price)

    async def _step_placing(self) -> None:
        price = await self._entry_price()
        if price is None:
            self.machine.transition(CycleState.IDLE, reason="no_usable_price")
            return
        await self._place_ladder(price)

    async def _place_ladder(self, price: Decimal) -> None:
        try:
            open_orders = await self._call(lambda: self.client.get_open_orders(self.symbol), "get_open_orders")
        except LadderBotError as exc:
            self._risk_gate("get_open_orders", exc)
            return

        if open_orders and self.config.keep_existing_orders:
            self._placed_order_ids = [o.id for o in open_orders]
            self.machine.transition(CycleState.AWAITING_FILL, reason="kept_existing_orders", orders=len(open_orders))
            self._arm_no_fill_timer()
            return

        if open_orders and not await self._cancel_and_verify("before_place"):
            return

        plan = self.planner.build(price)
        if plan.empty:
            self._log_event("ladder_empty", price=price, min_amount=plan.min_order_amount, dropped=len(plan.dropped))
            self._next_cycle_at = self._clock() + self.config.cycle_cooldown_sec
            self.machine.transition(CycleState.IDLE, reason="empty_ladder")
            return

        self._log_event(
            "ladder_planned",
            price=price,
            rungs=len(plan.orders),
            dropped=plan.dropped,
            amount=plan.planned_amount,
            scale=plan.scale,
        )
        placed = await self._submit_ladder(plan)
        if self._stopping or self._halted:
            return
        if placed == 0:
            self._next_cycle_at = self._clock() + self.config.cycle_cooldown_sec
            self.machine.transition(CycleState.IDLE, reason="no_orders_placed")
            return

        self.machine.transition(CycleState.AWAITING_FILL, reason="ladder_placed", orders=placed)
        self._arm_no_fill_timer()

    async def _submit_ladder(self, plan: LadderPlan) -> int:
        placed = 0
        self._placed_order_ids = []
        for i, rung in enumerate(plan.orders):
            if self._stopping or self._halted:
                break
            if i > 0 and self.config.order_delay_sec > 0:
                await asyncio.sleep(self.config.order_delay_sec)
            spec = OrderSpec(
                symbol=self.symbol,
                side=rung.side,
                order_type=OrderType.LIMIT,
                quantity=rung.quantity,
                price=rung.price,
                time_in_force="GTC",
                client_id=self._next_client_id(),
            )
            try:
                ack = await self._call(lambda spec=spec: self.client.create_order(spec), "create_order")
            except InsufficientFundsError as exc:
                self._stats["orders_failed"] += 1
                self._order_rejected("insufficient_funds")
                self._log_event(
                    "ladder_aborted_insufficient_funds",
                    rung=rung.index,
                    placed=placed,
                    skipped=len(plan.orders) - i,
                    err=str(exc),
                )
                break
            except RateLimitError as exc:
                self._stats["orders_failed"] += 1
                self._order_rejected("rate_limit")
                self._log_event("order_rejected_rate_limit", rung=rung.index, err=str(exc))
                continue
            except AuthError:
                break
            except LadderBotError as exc:
                self._stats["orders_failed"] += 1
                self._order_rejected(type(exc).__name__)
                self._log_event("order_submit_error", rung=rung.index, err=str(exc), err_type=type(exc).__name__)
                continue

            placed += 1
            self._stats["orders_placed"] += 1
            self._placed_order_ids.append(ack.id)
            if self.metrics:
                self.metrics.orders_submitted.labels(symbol=self.symbol, side=rung.side.value).inc()
            self._log_event(
                "order_placed",
                rung=rung.index,
                order_id=ack.id,
                status=ack.status,
                side=rung.side.value,
                price=rung.price,
                quantity=rung.quantity,
                amount=rung.amount,
            )
        return placed

    async def _step_awaiting_fill(self) -> None:
        try:
            position = await self._fetch_position()
        except LadderBotError as exc:
            self._risk_gate("get_positions", exc)
            return
        if position is not None:
            self._enter_position(position, reason="fill_detected")
            return

        try:
            open_orders = await self._call(lambda: self.client.get_open_orders(self.symbol), "get_open_orders")
        except LadderBotError as exc:
            self._risk_gate("get_open_orders", exc)
            return
        if open_orders:
            return
        # Cancelled elsewhere, or filled and already closed between polls
        self._cancel_no_fill_timer()
        self._log_event("orders_vanished", placed=len(self._placed_order_ids))
        self._placed_order_ids = []
        self._next_cycle_at = self._clock() + self.config.cycle_cooldown_sec
        self.machine.transition(CycleState.IDLE, reason="orders_vanished")

    async def _handle_no_fill_timeout(self) -> None:
        try:
            position = await self._fetch_position()
        except LadderBotError as exc:
            self._risk_gate("get_positions", exc)
            self._arm_no_fill_timer(self.config.poll_interval_sec)
            return
        if position is not None:
            self._enter_position(position, reason="fill_detected")
            return

        self._log_event("no_fill_timeout", timeout_sec=self.config.no_fill_timeout_sec, orders=len(self._placed_order_ids))
        if not await self._cancel_and_verify("no_fill_timeout"):
            self._arm_no_fill_timer(self.config.poll_interval_sec)
            return

        self._stats["reprices"] += 1
        if self.metrics:
            self.metrics.reprices.labels(symbol=self.symbol).inc()
        self._placed_order_ids = []
        self.machine.transition(CycleState.PLACING, reason="no_fill_timeout")
        price = await self._entry_price()
        if price is None:
            self.machine.transition(CycleState.IDLE, reason="no_usable_price")
            return
        await self._place_ladder(price)

    async def _step_position_open(self) -> None:
        try:
            position = await self._fetch_position()
        except LadderBotError as exc:
            # Exits are reduce-only; keep evaluating on the cached position
            self._risk_gate("get_positions", exc)
            position = self._position
        else:
            if position is None:
                await self._position_gone()
                return
            self._position = position

        if position is None:
            return
        price = await self._exit_price(position)
        if price is None:
            return
        await self._evaluate_exit(price)

    async def _evaluate_exit(self, price: Decimal) -> None:
        position = self._position
        if position is None or self._exits is None or self.state is not CycleState.POSITION_OPEN:
            return

        profit = profit_percent(position.side, position.entry_price, price)
        if self.metrics:
            self.metrics.unrealized_profit_pct.labels(symbol=self.symbol).set(float(profit))

        decision = self._exits.evaluate(position.entry_price, price)
        if decision is None:
            return

        self._last_decision = decision
        self.machine.transition(
            CycleState.CLOSING,
            reason=decision.reason.value,
            price=price,
            entry_price=position.entry_price,
            profit_percent=round(decision.profit_percent, 4),
            trigger_price=decision.trigger_price,
        )
        await self._step_closing()

    async def _step_closing(self) -> None:
        decision = self._last_decision
        try:
            position = await self._fetch_position()
        except LadderBotError as exc:
            self._log_event("close_position_error", stage="query", err=str(exc), err_type=type(exc).__name__)
            return

        if position is None:
            self._log_event("close_position_already_flat")
            await self._finish_close(decision, position=self._position, order_id=None)
            return

        try:
            ack = await self._submit_close(position)
        except LadderBotError as exc:
            self._close_failures += 1
            self._stats["close_failures"] += 1
            self._log_event(
                "close_position_error",
                stage="submit",
                attempt=self._close_failures,
                err=str(exc),
                err_type=type(exc).__name__,
            )
            if self._close_failures >= self.config.close_retry_limit and not self._halted:
                self._close_failures = 0
                self._position = position
                self.machine.transition(CycleState.POSITION_OPEN, reason="close_failed")
            return

        self._log_event(
            "position_close_submitted",
            order_id=ack.id,
            status=ack.status,
            side=position.side.close_side.value,
            quantity=position.quantity,
        )
        await self._finish_close(decision, position=position, order_id=ack.id)

    async def _finish_close(self, decision: Optional[ExitDecision], position: Optional[Position], order_id: Optional[str]) -> None:
        reason = decision.reason if decision else ExitReason.EXTERNAL
        self._record_close(reason, decision, position, order_id)
        if self.config.cancel_settle_sec > 0:
            await asyncio.sleep(self.config.cancel_settle_sec)
        await self._cancel_and_verify("after_close", settle=False)
        self.machine.transition(CycleState.RESETTING, reason=reason.value)
        await self._step_resetting()

    async def _position_gone(self) -> None:
        self._log_event("position_closed_externally", entry_price=self._position.entry_price if self._position else None)
        self._record_close(ExitReason.EXTERNAL, None, self._position, None)
        self.machine.transition(CycleState.RESETTING, reason=ExitReason.EXTERNAL.value)
        await self._step_resetting()

    async def _step_resetting(self) -> None:
        self._cancel_no_fill_timer()
        self._position = None
        self._exits = None
        self._last_decision = None
        self._placed_order_ids = []
        self._close_failures = 0

        if self.config.reinit_feed_on_reset and self.price_feed is not None:
            try:
                await self.price_feed.restart()
            except Exception as exc:
                self._log_event("price_feed_restart_error", err=str(exc), err_type=type(exc).__name__)

        if self.config.auto_restart:
            price = await self._entry_price()
            if price is not None:
                self._stats["cycles_started"] += 1
                self.machine.transition(CycleState.PLACING, reason="auto_restart", price=price)
                await self._place_ladder(price)
                return

        self._next_cycle_at = self._clock() + self.config.cycle_cooldown_sec
        self.machine.transition(CycleState.IDLE, reason="cycle_reset", cooldown_sec=self.config.cycle_cooldown_sec)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter_position(self, position: Position, reason: str) -> None:
        self._cancel_no_fill_timer()
        self._position = position
        self._close_failures = 0
        if self._exits is None or self._exits.side is not position.side:
            self._exits = ExitEvaluator(position.side, self.config.exit_rules)
        self.machine.transition(
            CycleState.POSITION_OPEN,
            reason=reason,
            side=position.side.value,
            quantity=position.quantity,
            entry_price=position.entry_price,
        )

    def _record_close(
        self,
        reason: ExitReason,
        decision: Optional[ExitDecision],
        position: Optional[Position],
        order_id: Optional[str],
    ) -> None:
        self._stats["cycles_completed"] += 1
        counter = {
            ExitReason.TAKE_PROFIT: "take_profits",
            ExitReason.STOP_LOSS: "stop_losses",
            ExitReason.TRAILING_STOP: "trailing_stops",
            ExitReason.EXTERNAL: "external_closes",
        }[reason]
        self._stats[counter] += 1
        self.last_close = CloseRecord(
            reason=reason.value,
            price=decision.price if decision else None,
            entry_price=position.entry_price if position else None,
            quantity=position.quantity if position else None,
            profit_percent=decision.profit_percent if decision else None,
            order_id=order_id,
        )
        if self.metrics:
            self.metrics.cycles_completed.labels(symbol=self.symbol, reason=reason.value).inc()
        self._log_event("cycle_closed", **self.last_close.to_dict())
        if reason is ExitReason.STOP_LOSS and self.alerts is not None:
            self._spawn(self.alerts.alert_stop_loss(
                self.symbol,
                entry_price=self.last_close.entry_price,
                price=self.last_close.price,
                profit_percent=self.last_close.profit_percent,
            ))

    async def _submit_close(self, position: Position):
        spec = OrderSpec(
            symbol=self.symbol,
            side=position.side.close_side,
            order_type=OrderType.MARKET,
            quantity=abs(position.quantity),
            reduce_only=True,
            client_id=self._next_client_id(),
        )
        ack = await self._call(lambda: self.client.create_order(spec), "create_order")
        self._stats["closes_submitted"] += 1
        if self.metrics:
            self.metrics.orders_submitted.labels(symbol=self.symbol, side=spec.side.value).inc()
        return ack

    async def _cancel_and_verify(self, reason: str, settle: bool = True) -> bool:
        """Cancel all open orders; False only when the cancel itself failed."""
        try:
            await self._call(lambda: self.client.cancel_all_orders(self.symbol), "cancel_all_orders")
        except LadderBotError as exc:
            self._log_event("cancel_error", where=reason, err=str(exc), err_type=type(exc).__name__)
            return False

        if settle and self.config.cancel_settle_sec > 0:
            await asyncio.sleep(self.config.cancel_settle_sec)

        try:
            remaining = await self._call(lambda: self.client.get_open_orders(self.symbol), "get_open_orders")
        except LadderBotError as exc:
            self._log_event("cancel_verify_failed", where=reason, err=str(exc))
            return True
        if remaining:
            self._log_event("cancel_verify_remaining", where=reason, remaining=len(remaining), ids=[o.id for o in remaining][:10])
        else:
            self._log_event("orders_cancelled", where=reason)
        return True

    async def _fetch_position(self) -> Optional[Position]:
        positions = await self._call(lambda: self.client.get_positions(self.symbol), "get_positions")
        return pick_position(positions, self.symbol)

    def _fresh_feed_price(self) -> Optional[Decimal]:
        if self.price_feed is None:
            return None
        try:
            return self.price_feed.require_fresh(self.config.max_price_age_sec).price
        except StaleDataError:
            return None

    async def _direct_quote(self) -> Optional[Decimal]:
        try:
            ticker = await self._call(lambda: self.client.get_ticker(self.symbol), "get_ticker")
        except LadderBotError as exc:
            self._log_event("direct_quote_failed", err=str(exc), err_type=type(exc).__name__)
            return None
        return ticker.last_price if ticker.last_price > 0 else None

    async def _entry_price(self) -> Optional[Decimal]:
        """Price for new entries: fresh feed (stream or REST), else a direct quote."""
        if self.price_feed is not None:
            try:
                update = await self.price_feed.get_fresh_price(self.config.max_price_age_sec)
            except StaleDataError as exc:
                age = None if exc.age_sec is None else round(exc.age_sec, 1)
                self._log_event("price_stale", age_sec=age)
            else:
                return update.price
        price = await self._direct_quote()
        if price is None:
            self._stats["no_price_skips"] += 1
            self._log_event("no_usable_price", state=self.state.name)
        return price

    async def _exit_price(self, position: Position) -> Optional[Decimal]:
        """Best available price for exits: fresh feed, direct quote, mark price, last known."""
        price = self._fresh_feed_price()
        if price is not None:
            return price
        price = await self._direct_quote()
        if price is not None:
            return price
        if position.mark_price is not None and position.mark_price > 0:
            return position.mark_price
        if self.price_feed is not None and self.price_feed.current_price is not None:
            return self.price_feed.current_price
        self._log_event("no_usable_price", state=self.state.name)
        return None

    async def _call(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        started = time.perf_counter()
        try:
            return await self.retry.execute(operation, label=label)
        except AuthError as exc:
            await self._halt("auth", exc)
            raise
        finally:
            if self.metrics:
                self.metrics.api_latency.labels(op=label).observe(time.perf_counter() - started)

    def _risk_gate(self, where: str, exc: BaseException) -> None:
        self._stats["risk_gate_blocks"] += 1
        self._log_event(
            "risk_gate_blocked",
            where=where,
            state=self.state.name,
            err=str(exc),
            err_type=type(exc).__name__,
        )

    def _order_rejected(self, reason: str) -> None:
        if self.metrics:
            self.metrics.orders_rejected.labels(symbol=self.symbol, reason=reason).inc()

    async def _halt(self, reason: str, exc: Optional[BaseException] = None) -> None:
        if self._halted:
            return
        self._halted = True
        self._halt_reason = reason
        self._cancel_no_fill_timer()
        self._log_event(
            "controller_halted",
            reason=reason,
            state=self.state.name,
            err=str(exc) if exc else None,
            err_type=type(exc).__name__ if exc else None,
        )
        if self.metrics:
            self.metrics.controller_halted.labels(symbol=self.symbol).set(1)
        if self.alerts is not None:
            self._spawn(self.alerts.alert_controller_halted(reason, self.symbol, state=self.state.name, error=str(exc) if exc else None))

    def _arm_no_fill_timer(self, delay: Optional[float] = None) -> None:
        self._cancel_no_fill_timer()
        self._no_fill_generation += 1
        generation = self._no_fill_generation
        timeout = self.config.no_fill_timeout_sec if delay is None else delay
        self._no_fill_task = asyncio.create_task(self._no_fill_after(timeout, generation), name="no-fill-timer")

    async def _no_fill_after(self, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        self._events.put_nowait(ControllerEvent(ControllerEventKind.NO_FILL_TIMEOUT, generation=generation))

    def _cancel_no_fill_timer(self) -> None:
        # Bumping the generation also invalidates a timeout already queued
        self._no_fill_generation += 1
        task = self._no_fill_task
        self._no_fill_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _on_transition(self, record: CycleTransition) -> None:
        if self.metrics:
            self.metrics.cycle_state.labels(symbol=self.symbol).set(record.to_state.value)

    def _next_client_id(self) -> int:
        self._client_id_seq = (self._client_id_seq + 1) % 4_294_967_295
        return self._client_id_seq

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
