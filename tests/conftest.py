"""Pytest configuration and fixtures."""

import random
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from convergence.backoff import RetryExecutor  # noqa: E402
from provider_mock import MockProvider  # noqa: E402


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(sleeper: RecordingSleep) -> RetryExecutor:
    """Retry executor that never really sleeps, with seeded jitter."""
    return RetryExecutor(sleep=sleeper, rng=random.Random(42))


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()
