"""
Bounded retry with exponential backoff for remote calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ladderbot.infra.errors import AuthError, InsufficientFundsError

log = logging.getLogger("ladderbot")

T = TypeVar("T")

NON_RETRYABLE: Tuple[Type[BaseException], ...] = (AuthError, InsufficientFundsError)


class RetryExecutor:
    """
    Runs an async operation up to ``max_attempts`` times.

    Delay before retry ``n`` (0-based) is ``base_delay * 2**n``. There is no
    wait after the final attempt; its error propagates to the caller.
    Errors in ``non_retryable`` propagate immediately.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        non_retryable: Tuple[Type[BaseException], ...] = NON_RETRYABLE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.non_retryable = non_retryable
        self._sleep = sleep
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, **kwargs}, default=str))

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        label: str = "",
    ) -> T:
        attempts = max_attempts or self.max_attempts
        attempt = 0
        while True:
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except self.non_retryable:
                raise
            except Exception as exc:
                if attempt >= attempts - 1:
                    raise
                delay = self.delay_for(attempt)
                self._log_event(
                    "retry_attempt",
                    where=label,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay=delay,
                    err=str(exc),
                    err_type=type(exc).__name__,
                )
                await self._sleep(delay)
                attempt += 1
