"""
Structured logging setup for ladderbot.

Every component logs one JSON object per line (``{"event": ..., **fields}``).
The console shows those lines through Rich; the log file stores them as flat
JSON records with timestamp and level merged in, written from a background
thread so disk I/O never stalls the event loop.
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import random
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

from rich.logging import RichHandler


def parse_event(message: str) -> Optional[Dict[str, Any]]:
    """Return the event dict carried by a JSON log line, or None for plain text."""
    if not message.startswith("{"):
        return None
    try:
        data = json.loads(message)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """
    One JSON record per line.

    Event lines are merged into the record so ``event``/``symbol`` are
    top-level keys; anything else is stored under ``msg``.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload: Dict[str, Any] = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        message = record.getMessage()
        event = parse_event(message)
        if event is not None:
            payload.update(event)
        else:
            payload["msg"] = message
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Hands records to a daemon writer thread.

    A full queue drops the record and counts it; the total is reported on
    close.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._closed = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._drain, daemon=True, name="ladderbot-log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _drain(self) -> None:
        while not (self._closed and self._queue.empty()):
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._target.handle(record)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped:
            sys.stderr.write(f"[ladderbot] {self._dropped} log records dropped (queue full)\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first (event, symbol) pair through, then mutes repeats for
    ``cooldown_sec``. Only the listed events are throttled.
    """

    DEFAULT_EVENTS: Set[str] = {
        "ws_stale_detected", "retry_attempt", "risk_gate_blocked", "price_stale",
        "rest_price_backoff",
    }

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Iterable[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._events = set(throttled_events) if throttled_events is not None else set(self.DEFAULT_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        data = parse_event(record.getMessage())
        if data is None or data.get("event") not in self._events:
            return True

        now = time.monotonic()
        key = f"{data['event']}:{data.get('symbol', '')}"
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def should_sample(rate: float) -> bool:
    """True for roughly ``rate`` of calls (0.0-1.0)."""
    if rate <= 0.0:
        return False
    if rate >= 1.0:
        return True
    return random.random() < rate


def build_logger(
    name: str = "ladderbot",
    level: int = logging.INFO,
    file_path: Optional[str] = "ladderbot.log",
    async_file: bool = True,
    throttle_cooldown_sec: float = 30.0,
    max_queue_size: int = 10000,
) -> logging.Logger:
    """
    Configure the process logger once; later calls only adjust the level.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON log file; None or "" disables file output. Missing
            parent directories are created.
        async_file: Write the file from a background thread
        throttle_cooldown_sec: ThrottledFilter window on the console; 0 disables

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    console = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle_cooldown_sec > 0:
        console.addFilter(ThrottledFilter(cooldown_sec=throttle_cooldown_sec))
    logger.addHandler(console)

    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler: logging.Handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setFormatter(JsonFormatter())
        if async_file:
            file_handler = AsyncQueueHandler(file_handler, max_queue_size=max_queue_size)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data: Any) -> None:
    """
    Log a structured event line.

    Usage:
        log_event(log, "order_placed", side="Bid", price="98.5")
    """
    logger.log(level, json.dumps({"event": event, **data}, default=str))
