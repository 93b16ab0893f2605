import random
from datetime import datetime

import pytest
import pytz

from clock import FrozenClock
from document_store import DocumentStore
from extensions import build_engine, build_session_factory, init_db
from identifiers import IdentifierRegistry
from lifecycle import LifecycleCoordinator
from migration import MigrationEngine
from notifications import RecordingNotifier

NOW = datetime(2025, 3, 14, 9, 30, tzinfo=pytz.utc)
FUTURE_DEPARTURE = "2025-04-01T10:00:00Z"
CLIENT = "PA-SMIT-ABCD"
OPERATOR = "OP-JETS-7K2P"
OTHER_OPERATOR = "OP-SKYW-Q9X1"


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = build_session_factory(engine)
    yield factory
    factory.remove()


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def ids(clock):
    return IdentifierRegistry(clock, rng=random.Random(1234))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def coordinator(store, ids, clock, notifier):
    return LifecycleCoordinator(store, ids, clock, notifier)


@pytest.fixture
def migrations(store, clock):
    return MigrationEngine(store, clock, batch_size=2, cooldown_seconds=1.0, workers=1)


@pytest.fixture
def quote_request(coordinator):
    return coordinator.submit_quote_request(
        CLIENT,
        {"departureAirport": "FAJS", "arrivalAirport": "FACT", "departureDate": FUTURE_DEPARTURE},
        passenger_count=2,
    )


@pytest.fixture
def offer(coordinator, quote_request):
    return coordinator.submit_offer(quote_request["id"], OPERATOR, 25000)


@pytest.fixture
def booking(coordinator, offer):
    return coordinator.accept_offer(offer["id"])
