"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Centralized test configuration with component markers
WHY: Enable test organization, filtering, and shared test utilities
HOW: Define pytest markers, in-memory database, store/hub/service fixtures
"""

import os

# Keep tests off the on-disk database and log file
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FILE", "./data/logs/test.log")

import pytest

from salmart.core.database import Base, create_db_engine, init_db, make_session_factory
from salmart.services.chat_service import ChatService
from salmart.services.message_store import MessageStore
from salmart.services.room_hub import RoomHub


def pytest_configure(config):
    """Register custom markers for test areas."""
    config.addinivalue_line(
        "markers", "store: Message store tests (persistence, ordering, status transitions)"
    )
    config.addinivalue_line(
        "markers", "bargain: Bargain state machine tests (fold, roles, transitions)"
    )
    config.addinivalue_line(
        "markers", "realtime: Room hub, delivery tracking, SSE and WebSocket tests"
    )
    config.addinivalue_line(
        "markers", "client: Client cache and HTTP client tests"
    )
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time to run"
    )


@pytest.fixture
def session_factory():
    """
    Fresh in-memory database per test.

    WHAT: Setup and teardown test database
    WHY: Ensure test isolation
    HOW: Same engine factory as the app; in-memory URLs share one connection
    """
    engine = create_db_engine("sqlite://")
    init_db(engine)
    factory = make_session_factory(engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    """Message store bound to the test database."""
    return MessageStore(session_factory)


@pytest.fixture
def hub():
    """Empty room hub."""
    return RoomHub()


@pytest.fixture
def service(store, hub):
    """Chat service over the test store and hub."""
    return ChatService(store=store, hub=hub)
