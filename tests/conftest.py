"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any telecom import, so the
cached settings pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("MESSAGE_STORE_URL", "sqlite://")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from telecom.config import get_settings  # noqa: E402
get_settings.cache_clear()

from telecom.conversations import ConversationAssembler  # noqa: E402
from telecom.message_store import MessageStore  # noqa: E402
from telecom.status import DeliveryTracker  # noqa: E402


ALICE = "15551230001"
BOB = "15551230002"
CAROL = "15551230003"


@pytest.fixture
def store():
    """Fresh in-memory message store."""
    with MessageStore("sqlite://") as message_store:
        yield message_store


@pytest.fixture
def assembler(store):
    return ConversationAssembler(store, timeout=5.0)


@pytest.fixture
def tracker(store):
    return DeliveryTracker(store)


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh contacts DB and message store for each test."""
    from telecom.main import app
    from telecom.storage import Base, engine

    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def headers_for(cell_digits: str, display_name: str = None) -> dict:
    """Request headers identifying the calling account."""
    headers = {"X-Cell-Digits": cell_digits}
    if display_name is not None:
        headers["X-Display-Name"] = display_name
    return headers
