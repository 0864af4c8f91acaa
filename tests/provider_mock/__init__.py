"""In-memory provider for engine tests.

Key Features:
- In-memory resource state keyed by generated identifiers ("subnet-1")
- Ordered call log for ordering and no-call assertions
- Fault injection: transient failures, fatal failures, malformed records
- Sync adapters (worker threads) and coroutine adapters

Usage:
    from provider_mock import MockProvider

    provider = MockProvider()
    provider.state.inject_transient("subnet", "create", count=2)
    result = await ConvergenceRunner().run(tasks, provider)
    assert provider.state.call_count("subnet", "create") == 3
"""

from .adapters import AsyncMockAdapter, MockAdapter, MockProvider
from .state import MockCall, MockProviderState, MockResource

__all__ = [
    "AsyncMockAdapter",
    "MockAdapter",
    "MockCall",
    "MockProvider",
    "MockProviderState",
    "MockResource",
]
