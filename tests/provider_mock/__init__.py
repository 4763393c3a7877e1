"""Provider mock for integration testing.

This package provides an in-memory provider that records every call the
engine makes, so tests can assert ordering, concurrency and exactly which
resources were touched, without any remote infrastructure.

Key Features:
- In-memory remote state keyed by "<type>.<name>"
- Call log with action, attributes and timeout of every call
- Fault injection: permanent or retryable errors, per action, N times
- Delay injection for timeout and concurrency scenarios
- In-flight tracking (maximum concurrent calls observed)

Usage:
    from provider_mock import MockProvider

    provider = MockProvider()
    provider.fail("google_container_cluster.primary", retryable=True, times=1)
    provider.delay("google_compute_network.vpc", 0.05)

    result = await Reconciler(provider, config).apply(plan, store)

    assert provider.order() == ["google_compute_network.vpc", ...]
"""

from .declarations import declaration, document, write_declarations
from .provider import MockProvider, ProviderCall

__all__ = [
    "MockProvider",
    "ProviderCall",
    "declaration",
    "document",
    "write_declarations",
]
