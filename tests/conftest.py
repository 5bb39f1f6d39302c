"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import ladderbot without installing.
"""

import asyncio
import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    """Collects (event, data) pairs from a log_event callback."""
    recorded = []

    def log_event(event, **data):
        recorded.append((event, data))

    log_event.recorded = recorded
    log_event.names = lambda: [e for e, _ in recorded]
    return log_event


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
