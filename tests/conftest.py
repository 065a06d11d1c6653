import pytest

from yearbook_distribution.coordinator import LedgerCoordinator
from yearbook_distribution.errors import StoreUnavailable
from yearbook_distribution.retry import RetryConfig
from yearbook_distribution.store import InMemoryLedgerStore


class Recorder:
    """Event sink that keeps everything it was handed."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def coordinator(store, recorder):
    fast = RetryConfig(max_retries=3, base_delay=0.0, max_delay=0.0, jitter=False, retryable_exceptions=(StoreUnavailable,))
    return LedgerCoordinator(store, emit=recorder, retry=fast)
