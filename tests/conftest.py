"""Shared test fixtures for cache_serde.

Provides a controllable clock, a counting async producer, isolated
configuration environments, and cleanup of the global output and logging
state touched by the CLI.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import pytest

from cache_serde.freshness import utcnow
from cache_serde.output import reset_output
from cache_serde.store import FileStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock for :class:`~cache_serde.freshness.FreshnessPolicy`."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class CountingProducer:
    """Async zero-argument producer that records how many times it ran.

    Returns the given results in order (repeating the last one), or raises
    *error* on every call.
    """

    def __init__(self, *results: Any, error: Optional[BaseException] = None) -> None:
        self.results = results or (None,)
        self.error = error
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.results[min(self.calls, len(self.results)) - 1]


# ---------------------------------------------------------------------------
# Global state reset
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_global_state() -> None:
    """Reset the global OutputManager and the cache_serde logger after every test.

    The CLI installs an OutputManager and a RichHandler bound to the
    streams CliRunner redirects; once the test finishes those streams are
    closed.
    """
    yield
    reset_output()
    logger = logging.getLogger("cache_serde")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_producer() -> type[CountingProducer]:
    """Factory for :class:`CountingProducer` instances."""
    return CountingProducer


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def file_store(cache_root: Path) -> FileStore:
    return FileStore(cache_root)


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Clear CACHE_SERDE_* variables and run the test from tmp_path.

    Returns:
        The tmp_path root, which is also the working directory.
    """
    for var in [
        "CACHE_SERDE_ROOT",
        "CACHE_SERDE_INTERVAL",
        "CACHE_SERDE_BACKEND",
        "CACHE_SERDE_DISABLED",
    ]:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
