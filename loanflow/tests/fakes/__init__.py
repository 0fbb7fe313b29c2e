"""Fake/mock implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeLoanStorePort: In-memory loan persistence with transactions
- FakeNotificationPort: Captured funding notifications for assertion
- FakeLoanLifecyclePort: Captured lifecycle requests for request-layer tests
"""

from .lifecycle import FakeLoanLifecyclePort
from .notification import FakeNotificationPort
from .store import FakeLoanStorePort

__all__ = [
    "FakeLoanLifecyclePort",
    "FakeLoanStorePort",
    "FakeNotificationPort",
]
