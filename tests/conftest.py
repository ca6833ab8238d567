"""Pytest configuration and fixtures for Bulwark tests."""

import pytest

from bulwark.config import Settings


class FakeClock:
    """Manually advanced time source returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep replacement that records delays instead of waiting."""

    def __init__(self, clock: FakeClock = None):
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


@pytest.fixture
def clock():
    """Fake clock starting at a fixed epoch time."""
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    """Sleep recorder that also advances the fake clock."""
    return SleepRecorder(clock)


@pytest.fixture(autouse=True)
def use_test_environment(monkeypatch):
    """Keep tests independent of a developer's environment and .env file."""
    for key in ("BULWARK_CACHE_DUMP_PATH", "BULWARK_LOG_LEVEL", "BULWARK_ABUSE_DETECTION_ENABLED"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def test_settings():
    """Settings with fast timers for runtime and API tests."""
    return Settings(
        _env_file=None,
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter_enabled=False,
        health_retries=0,
        health_timeout=1.0,
        health_retry_delay=0.0,
    )
