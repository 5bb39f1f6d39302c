"""
ConnectionManager: one logical market-data connection and subscription.

State machine:

    CLOSED ──> CONNECTING ──> OPEN ──> CLOSING ──> CLOSED
                   │            │
                   ▼            ▼
              RECONNECT_WAIT <──┘   (unexpected close, backoff)
                   │
                   ├──> CONNECTING
                   └──> FAILED      (attempts exhausted, until reset())

Every transport event (opened, message, error, closed) is tagged with the id
of the connection attempt that produced it and goes through a single event
queue. The dispatcher drops events whose id is not the current one, so a
superseded connection can never touch manager state.

Single-threaded asyncio; mutual exclusion is by the dispatcher and explicit
guards (``connect_in_progress``, pending-connection flag), no locks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from ladderbot.infra.errors import ProtocolError, TransportError
from ladderbot.infra.logging_cfg import should_sample
from ladderbot.market_data.dedup import DedupCache
from ladderbot.market_data.protocol import BackpackStreamProtocol, StreamProtocol
from ladderbot.market_data.transport import StreamTransport, WebsocketsTransport

log = logging.getLogger("ladderbot")

TransportFactory = Callable[[str], Awaitable[StreamTransport]]


class ConnectionState(Enum):
    CLOSED = auto()
    CONNECTING = auto()
    OPEN = auto()
    CLOSING = auto()
    RECONNECT_WAIT = auto()
    FAILED = auto()


@dataclass
class ConnectionConfig:
    """Configuration for ConnectionManager."""
    url: str = "wss://ws.backpack.exchange"
    connect_timeout_sec: float = 10.0
    close_timeout_sec: float = 5.0

    # Reconnect backoff: min(cap, base * 1.5 ** attempts)
    max_reconnect_attempts: int = 5
    reconnect_base_sec: float = 5.0
    reconnect_cap_sec: float = 60.0
    force_reconnect_delay_sec: float = 5.0

    # Heartbeat
    heartbeat_interval_sec: float = 30.0
    heartbeat_timeout_sec: float = 10.0
    max_heartbeat_failures: int = 3

    # Dedup cache
    dedup_ttl_sec: float = 600.0
    dedup_max_entries: int = 1000
    dedup_sweep_interval_sec: float = 300.0

    # Share of unparseable frames that get logged
    protocol_error_log_rate: float = 0.01


@dataclass
class Connection:
    """One connect attempt. Superseded instances are dropped, never reused."""
    id: int
    created_at: float
    transport: Optional[StreamTransport] = None
    opened_at: Optional[float] = None


@dataclass
class SubscriptionState:
    """Logical subscription, tracked apart from the transport."""
    symbol: str
    pending: bool = False
    subscribed: bool = False
    last_attempt_at: Optional[float] = None
    attempts: int = 0

    def reset(self) -> None:
        self.pending = False
        self.subscribed = False


class _EventKind(Enum):
    OPENED = auto()
    MESSAGE = auto()
    ERROR = auto()
    CLOSED = auto()


@dataclass
class _ConnEvent:
    kind: _EventKind
    conn_id: int
    transport: Optional[StreamTransport] = None
    raw: Union[str, bytes, None] = None
    error: Optional[BaseException] = None


class ConnectionManager:
    """
    Keeps at most one live stream connection and one subscription alive.

    Usage:
        manager = ConnectionManager(
            symbol="SOL_USDC_PERP",
            on_message=feed.handle_stream_message,
            on_status=feed.handle_connection_status,
        )
        await manager.start()
        ...
        await manager.stop()
    """

    def __init__(
        self,
        symbol: str,
        on_message: Callable[[Dict[str, Any]], None],
        config: Optional[ConnectionConfig] = None,
        protocol: Optional[StreamProtocol] = None,
        transport_factory: Optional[TransportFactory] = None,
        on_status: Optional[Callable[[ConnectionState], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.symbol = symbol
        self.config = config or ConnectionConfig()
        self.protocol = protocol or BackpackStreamProtocol()
        self._factory = transport_factory or self._default_factory
        self._on_message = on_message
        self._on_status = on_status
        self._clock = clock
        self._log_event = log_event or self._default_log

        self.dedup = DedupCache(
            ttl_sec=self.config.dedup_ttl_sec,
            max_entries=self.config.dedup_max_entries,
            clock=clock,
        )
        self.subscription = SubscriptionState(symbol=symbol)

        self._events: "asyncio.Queue[_ConnEvent]" = asyncio.Queue()
        self._state = ConnectionState.CLOSED
        self._current: Optional[Connection] = None
        self._next_id = 0

        # Guards
        self._connect_in_progress = False
        self._pending_connection = False
        self._force_in_progress = False
        self._started = False
        self._stopping = False

        self._reconnect_attempts = 0
        self._failed = False
        self._heartbeat_failures = 0

        self._last_opened_at: Optional[float] = None
        self._last_closed_at: Optional[float] = None
        self._last_message_at: Optional[float] = None
        self._last_ack_at: Optional[float] = None

        self._dispatch_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._open_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self._stats = {
            "connect_attempts": 0,
            "opens": 0,
            "closes": 0,
            "reconnects_scheduled": 0,
            "forced_reconnects": 0,
            "messages": 0,
            "duplicates": 0,
            "stale_events": 0,
            "protocol_errors": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, "symbol": self.symbol, **kwargs}, default=str))

    async def _default_factory(self, url: str) -> StreamTransport:
        return await WebsocketsTransport.connect(url, open_timeout=self.config.connect_timeout_sec)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def is_subscribed(self) -> bool:
        return self.is_connected and self.subscription.subscribed

    @property
    def connection_id(self) -> Optional[int]:
        return self._current.id if self._current else None

    @property
    def connect_in_progress(self) -> bool:
        return self._connect_in_progress

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def last_message_at(self) -> Optional[float]:
        return self._last_message_at

    @property
    def last_ack_at(self) -> Optional[float]:
        return self._last_ack_at

    def status(self) -> Dict[str, Any]:
        """Connection status report."""
        return {
            "state": self._state.name,
            "connection_id": self.connection_id,
            "connected": self.is_connected,
            "subscribed": self.is_subscribed,
            "subscription_pending": self.subscription.pending,
            "connect_in_progress": self._connect_in_progress,
            "reconnect_attempts": self._reconnect_attempts,
            "reconnect_scheduled": self.reconnect_scheduled,
            "failed": self._failed,
            "heartbeat_failures": self._heartbeat_failures,
            "last_opened_at": self._last_opened_at,
            "last_closed_at": self._last_closed_at,
            "last_message_at": self._last_message_at,
            "last_ack_at": self._last_ack_at,
            "dedup": self.dedup.get_stats(),
            **self._stats,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopping = False
        self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name="ws-dispatch")
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="ws-dedup-sweep")
        self.connect()

    async def stop(self) -> None:
        """Close the connection and stop every timer. Safe to call twice."""
        if not self._started:
            return
        self._started = False
        self._stopping = True
        await self.close(reason="stop")
        tasks = [t for t in (self._sweep_task, self._dispatch_task) if t is not None]
        tasks.extend(self._background)
        for task in tasks:
            if task is not asyncio.current_task():
                task.cancel()
        await asyncio.gather(*[t for t in tasks if t is not asyncio.current_task()], return_exceptions=True)
        await self._drain_events()
        self._sweep_task = None
        self._dispatch_task = None
        self._background.clear()
        self._set_state(ConnectionState.CLOSED)
        self._log_event("ws_stopped", stats=self._stats)

    def connect(self) -> bool:
        """
        Start a connect attempt unless one is outstanding.

        Returns True if a new attempt was started.
        """
        if self._stopping or not self._started:
            return False
        if self._failed:
            self._log_event("ws_connect_refused", reason="failed", attempts=self._reconnect_attempts)
            return False
        if self._state is ConnectionState.CLOSING:
            # Coalesce: reconnect once the close has drained
            self._pending_connection = True
            self._log_event("ws_connect_deferred", reason="closing")
            return False
        if self._connect_in_progress:
            return False
        if self._state is ConnectionState.OPEN and self._current is not None:
            if not self.subscription.subscribed and not self.subscription.pending:
                self._spawn(self.subscribe())
            return False

        if self.reconnect_scheduled and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        self._next_id += 1
        conn = Connection(id=self._next_id, created_at=self._clock())
        self._current = conn
        self._connect_in_progress = True
        self._stats["connect_attempts"] += 1
        self._set_state(ConnectionState.CONNECTING)
        self._log_event("ws_connecting", conn_id=conn.id, url=self.config.url, attempt=self._reconnect_attempts)
        self._open_task = asyncio.create_task(self._open(conn), name=f"ws-open-{conn.id}")
        return True

    async def close(self, reason: str = "requested") -> None:
        """Close the current connection on purpose. No reconnect is scheduled."""
        if self._state is ConnectionState.CLOSING:
            return
        conn = self._current
        self._cancel_reconnect()
        self._stop_connection_tasks()
        self._connect_in_progress = False
        self.subscription.reset()

        if conn is None:
            if self._state is not ConnectionState.FAILED:
                self._set_state(ConnectionState.CLOSED)
            return

        self._set_state(ConnectionState.CLOSING)
        # Retire the id: anything still queued for it is now stale
        self._current = None
        if conn.transport is not None:
            await self._close_transport(conn.transport)
        self._last_closed_at = self._clock()
        self._stats["closes"] += 1
        self._set_state(ConnectionState.CLOSED)
        self._log_event("ws_closed_by_request", conn_id=conn.id, reason=reason)

        if self._pending_connection and not self._stopping:
            self._pending_connection = False
            self.connect()

    async def force_reconnect(self, reason: str) -> None:
        """Close, clear timers, wait, reconnect. Used for half-open sockets and stale data."""
        if self._stopping or self._force_in_progress:
            return
        self._force_in_progress = True
        try:
            self._stats["forced_reconnects"] += 1
            self._log_event("ws_force_reconnect", reason=reason, conn_id=self.connection_id)
            await self.close(reason=reason)
            await asyncio.sleep(self.config.force_reconnect_delay_sec)
            if not self._stopping:
                self.connect()
        finally:
            self._force_in_progress = False

    def reset(self) -> None:
        """Clear the failed flag and attempt counter so connect() may run again."""
        self._cancel_reconnect()
        self._failed = False
        self._reconnect_attempts = 0
        self._pending_connection = False
        if self._state is ConnectionState.FAILED:
            self._set_state(ConnectionState.CLOSED)
        self._log_event("ws_reset")

    async def subscribe(self) -> bool:
        """(Re)issue the subscription on the current connection."""
        conn = self._current
        if self._state is not ConnectionState.OPEN or conn is None or conn.transport is None:
            self._log_event("ws_subscribe_skipped", state=self._state.name)
            return False
        message = self.protocol.subscribe_message(self.symbol)
        self.subscription.pending = True
        self.subscription.last_attempt_at = self._clock()
        self.subscription.attempts += 1
        try:
            await conn.transport.send(json.dumps(message))
        except Exception as exc:
            self.subscription.pending = False
            self._log_event("ws_subscribe_failed", conn_id=conn.id, err=str(exc))
            return False
        self._log_event("ws_subscribe_sent", conn_id=conn.id, request=message)
        return True

    # ------------------------------------------------------------------
    # Transport-side tasks (producers)
    # ------------------------------------------------------------------

    async def _open(self, conn: Connection) -> None:
        try:
            transport = await asyncio.wait_for(
                self._factory(self.config.url), timeout=self.config.connect_timeout_sec
            )
        except asyncio.TimeoutError as exc:
            err = TransportError(f"connect timed out after {self.config.connect_timeout_sec}s")
            err.__cause__ = exc
            self._events.put_nowait(_ConnEvent(_EventKind.ERROR, conn.id, error=err))
            self._events.put_nowait(_ConnEvent(_EventKind.CLOSED, conn.id, error=err))
            return
        except Exception as exc:
            self._events.put_nowait(_ConnEvent(_EventKind.ERROR, conn.id, error=exc))
            self._events.put_nowait(_ConnEvent(_EventKind.CLOSED, conn.id, error=exc))
            return
        self._events.put_nowait(_ConnEvent(_EventKind.OPENED, conn.id, transport=transport))

    async def _read_loop(self, conn_id: int, transport: StreamTransport) -> None:
        try:
            while True:
                raw = await transport.recv()
                self._events.put_nowait(_ConnEvent(_EventKind.MESSAGE, conn_id, raw=raw))
        except TransportError as exc:
            self._events.put_nowait(_ConnEvent(_EventKind.CLOSED, conn_id, error=exc))
        except Exception as exc:
            self._events.put_nowait(_ConnEvent(_EventKind.ERROR, conn_id, error=exc))
            self._events.put_nowait(_ConnEvent(_EventKind.CLOSED, conn_id, error=exc))

    async def _heartbeat_loop(self, conn_id: int) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_sec)
            conn = self._current
            if conn is None or conn.id != conn_id or self._state is not ConnectionState.OPEN:
                return
            acked = await self._ping(conn)
            if self._current is not conn:
                return
            if acked:
                self._heartbeat_failures = 0
                self._last_ack_at = self._clock()
                self._log_event("ws_pong", conn_id=conn_id)
                continue
            self._heartbeat_failures += 1
            since_ack = self._clock() - self._last_ack_at if self._last_ack_at is not None else None
            self._log_event(
                "ws_heartbeat_missed",
                conn_id=conn_id,
                failures=self._heartbeat_failures,
                max_failures=self.config.max_heartbeat_failures,
                since_ack_sec=since_ack,
            )
            if self._heartbeat_failures >= self.config.max_heartbeat_failures:
                # Own task: close() cancels this heartbeat
                self._spawn(self.force_reconnect("heartbeat_timeout"))
                return

    async def _ping(self, conn: Connection) -> bool:
        if conn.transport is None:
            return False
        try:
            await asyncio.wait_for(self._ping_roundtrip(conn.transport), timeout=self.config.heartbeat_timeout_sec)
        except Exception as exc:
            self._log_event("ws_ping_failed", conn_id=conn.id, err=str(exc) or type(exc).__name__)
            return False
        return True

    @staticmethod
    async def _ping_roundtrip(transport: StreamTransport) -> None:
        waiter = await transport.ping()
        await waiter

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.dedup_sweep_interval_sec)
            self.dedup.prune()

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._stopping:
            return
        self.connect()

    # ------------------------------------------------------------------
    # Dispatcher (consumer)
    # ------------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except Exception as exc:
                self._log_event("connection_dispatch_error", kind=event.kind.name, conn_id=event.conn_id, err=str(exc))

    async def _handle_event(self, event: _ConnEvent) -> None:
        conn = self._current
        if conn is None or event.conn_id != conn.id:
            self._stats["stale_events"] += 1
            self._log_event(
                "ws_stale_event_ignored",
                kind=event.kind.name,
                conn_id=event.conn_id,
                current_id=conn.id if conn else None,
            )
            if event.kind is _EventKind.OPENED and event.transport is not None:
                await self._close_transport(event.transport)
            return

        if event.kind is _EventKind.OPENED:
            await self._handle_open(conn, event.transport)
        elif event.kind is _EventKind.MESSAGE:
            self._handle_message(conn, event.raw)
        elif event.kind is _EventKind.ERROR:
            # Reconnect decisions belong to the close that follows
            err = event.error
            self._log_event("ws_error", conn_id=conn.id, err=str(err) or type(err).__name__, err_type=type(err).__name__)
        elif event.kind is _EventKind.CLOSED:
            self._handle_close(conn, event.error)

    async def _handle_open(self, conn: Connection, transport: Optional[StreamTransport]) -> None:
        now = self._clock()
        conn.transport = transport
        conn.opened_at = now
        self._open_task = None
        self._connect_in_progress = False
        self._pending_connection = False
        self._reconnect_attempts = 0
        self._heartbeat_failures = 0
        self._last_opened_at = now
        self._last_ack_at = now
        self._stats["opens"] += 1
        self.subscription.reset()
        self._set_state(ConnectionState.OPEN)
        self._log_event("ws_open", conn_id=conn.id, url=self.config.url)
        self._reader_task = asyncio.create_task(self._read_loop(conn.id, transport), name=f"ws-read-{conn.id}")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(conn.id), name=f"ws-heartbeat-{conn.id}")
        await self.subscribe()

    def _handle_message(self, conn: Connection, raw: Union[str, bytes, None]) -> None:
        self._last_message_at = self._clock()
        self._stats["messages"] += 1
        try:
            message = self._decode(raw)
        except ProtocolError as exc:
            self._stats["protocol_errors"] += 1
            if should_sample(self.config.protocol_error_log_rate):
                self._log_event("ws_payload_unparsed", conn_id=conn.id, err=str(exc))
            return

        error = self.protocol.error_of(message)
        if error:
            if self.subscription.pending:
                self.subscription.pending = False
            self._log_event("ws_server_error", conn_id=conn.id, error=error)
            return

        if self.protocol.is_subscription_ack(message):
            self.subscription.pending = False
            self.subscription.subscribed = True
            self._log_event("ws_subscribed", conn_id=conn.id, stream=self.symbol)
            return

        identity = self.protocol.event_identity(message)
        if identity is not None and not self.dedup.check_and_add(identity):
            self._stats["duplicates"] += 1
            self._log_event("ws_duplicate_dropped", key=identity)
            return

        if not self.subscription.subscribed:
            # Data flowing is as good as an ack
            self.subscription.pending = False
            self.subscription.subscribed = True
        self._log_event("ws_message", conn_id=conn.id)
        self._on_message(message)

    def _handle_close(self, conn: Connection, error: Optional[BaseException]) -> None:
        was_open = conn.opened_at is not None
        self._stop_connection_tasks()
        self._connect_in_progress = False
        self._current = None
        self._last_closed_at = self._clock()
        self._stats["closes"] += 1
        self.subscription.reset()
        self._set_state(ConnectionState.CLOSED)
        self._log_event(
            "ws_closed",
            conn_id=conn.id,
            was_open=was_open,
            reason=(str(error) or type(error).__name__) if error else None,
        )
        if self._stopping:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_scheduled:
            return
        if self._reconnect_attempts >= self.config.max_reconnect_attempts:
            self._failed = True
            self._set_state(ConnectionState.FAILED)
            self._log_event("ws_reconnect_exhausted", attempts=self._reconnect_attempts)
            return
        delay = min(
            self.config.reconnect_cap_sec,
            self.config.reconnect_base_sec * (1.5 ** self._reconnect_attempts),
        )
        self._reconnect_attempts += 1
        self._stats["reconnects_scheduled"] += 1
        self._set_state(ConnectionState.RECONNECT_WAIT)
        self._log_event(
            "ws_reconnect_scheduled",
            attempt=self._reconnect_attempts,
            max_attempts=self.config.max_reconnect_attempts,
            delay_sec=delay,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="ws-reconnect")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _decode(raw: Union[str, bytes, None]) -> Dict[str, Any]:
        if raw is None:
            raise ProtocolError("empty frame")
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolError("frame is not utf-8") from exc
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"frame is not JSON: {raw[:80]!r}") from exc
        if not isinstance(message, dict):
            raise ProtocolError(f"frame is not an object: {raw[:80]!r}")
        return message

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state is self._state:
            return
        old = self._state
        self._state = new_state
        self._log_event("ws_state", from_state=old.name, to_state=new_state.name)
        if self._on_status is not None:
            self._on_status(new_state)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _stop_connection_tasks(self) -> None:
        current = asyncio.current_task()
        for name in ("_open_task", "_reader_task", "_heartbeat_task"):
            task = getattr(self, name)
            setattr(self, name, None)
            if task is not None and not task.done() and task is not current:
                task.cancel()

    async def _close_transport(self, transport: StreamTransport) -> None:
        try:
            await asyncio.wait_for(transport.close(), timeout=self.config.close_timeout_sec)
        except Exception as exc:
            self._log_event("ws_close_error", err=str(exc) or type(exc).__name__)

    async def _drain_events(self) -> None:
        """Close transports from OPENED events the dispatcher never reached."""
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return
            if event.kind is _EventKind.OPENED and event.transport is not None:
                self._stats["stale_events"] += 1
                self._log_event("ws_queued_transport_closed", conn_id=event.conn_id)
                await self._close_transport(event.transport)
