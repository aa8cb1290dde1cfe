# tests/conftest.py
"""Global test configuration and fixtures."""
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from api_server.db.models import Base
from automation.events import InMemoryEventBus, set_event_bus


@pytest.fixture
def db():
    """Fresh in-memory SQLite database behind get_session()."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    with patch("api_server.db.engine._engine", engine):
        yield engine

    engine.dispose()


@pytest.fixture(autouse=True)
def event_bus():
    """Every test publishes into its own in-memory bus."""
    bus = InMemoryEventBus()
    set_event_bus(bus)
    yield bus
    set_event_bus(None)


@pytest.fixture
def no_inline_execution():
    """Leave triggered runs PENDING instead of executing them in the trigger call."""
    with patch("automation.conf.EXECUTE_ON_TRIGGER", False):
        yield
