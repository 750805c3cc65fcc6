"""
Shared fixtures for Dispatch Engine tests.

Everything runs in memory with a mock clock and timers that fire
only when a test fires them.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

import pytest

from dispatch_engine.candidates import InMemoryCandidateSource, ExecutorProfile
from dispatch_engine.clock import MockClock
from dispatch_engine.collaborators import FixedPricing, InMemoryExecutorDirectory
from dispatch_engine.config import DispatchEngineConfig
from dispatch_engine.events import EventBus, EventJournal
from dispatch_engine.lifecycle import LifecycleCoordinator
from dispatch_engine.notifier import InMemoryNotifier
from dispatch_engine.search import SearchOrchestrator
from dispatch_engine.store import InMemoryOrderStore
from dispatch_engine.timers import ManualTimerService
from dispatch_engine.types import Location


START = datetime(2026, 3, 2, 10, 0, 0, tzinfo=timezone.utc)
PICKUP = Location(lat=55.7500, lng=37.6100, address="Tverskaya 1")

# ~111 km per degree of latitude
KM_LAT = 1.0 / 111.195


def executor_at(executor_id: str, km_north: float, **kwargs) -> ExecutorProfile:
    """Executor `km_north` kilometres north of the pickup point."""
    return ExecutorProfile(
        executor_id=executor_id,
        location=Location(lat=PICKUP.lat + km_north * KM_LAT, lng=PICKUP.lng),
        **kwargs,
    )


def order_payload(**overrides: Any) -> Dict[str, Any]:
    payload = {
        "service_type": "tire_change",
        "location": PICKUP.to_dict(),
        "description": "Flat tire on the highway",
    }
    payload.update(overrides)
    return payload


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def config():
    config = DispatchEngineConfig.for_testing()
    config.offers.offer_ttl_seconds = 0.05
    return config


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def timers(clock):
    return ManualTimerService(clock)


@pytest.fixture
def journal():
    return EventJournal()


@pytest.fixture
def bus(journal):
    bus = EventBus()
    bus.subscribe(journal)
    return bus


@pytest.fixture
def source():
    return InMemoryCandidateSource()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def pricing():
    return FixedPricing(Decimal("2000"))


@pytest.fixture
def executors():
    return InMemoryExecutorDirectory()


@pytest.fixture
def coordinator(store, timers, config, clock, bus, pricing, executors, source):
    return LifecycleCoordinator(
        store=store,
        timers=timers,
        config=config,
        clock=clock,
        events=bus,
        pricing=pricing,
        executors=executors,
        candidates=source,
    )


@pytest.fixture
def orchestrator(store, coordinator, source, notifier, config, clock, bus):
    return SearchOrchestrator(
        store=store,
        coordinator=coordinator,
        candidates=source,
        notifier=notifier,
        config=config,
        clock=clock,
        events=bus,
    )
