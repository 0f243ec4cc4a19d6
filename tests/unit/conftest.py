"""Shared fixtures for broker unit tests."""

import pytest

from rendezvous.identity import IdentityRegistry
from rendezvous.lifecycle import LifecycleManager
from rendezvous.matchmaker import Matchmaker
from rendezvous.metrics import MetricsCollector
from rendezvous.slot import InMemoryWaitingSlot
from tests.helpers.notifier import RecordingNotifier

BROKER_ID = "broker-1"


@pytest.fixture
def slot() -> InMemoryWaitingSlot:
    return InMemoryWaitingSlot()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Fresh collector so counts do not leak between tests."""
    return MetricsCollector()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lifecycle(
    slot: InMemoryWaitingSlot, notifier: RecordingNotifier, metrics: MetricsCollector
) -> LifecycleManager:
    """Lifecycle manager over an in-memory slot."""
    return LifecycleManager(
        Matchmaker(slot),
        IdentityRegistry(broker_id=BROKER_ID),
        notifier=notifier,
        metrics=metrics,
    )
