import copy

import pytest
from fastapi.testclient import TestClient
from loguru import logger

from services.order_service.app.config import AppConfig
from services.order_service.app.errors import EventPublishError
from services.order_service.app.main import create_app
from services.order_service.app.publisher import OrderEventPublisher, build_order_created_event
from services.order_service.app.store import SqlOrderStore

VALID_ORDER = {
    "products": [{"productId": "P1", "quantity": 2, "price": 10.00}],
    "totalAmount": 20.00,
    "customerInfo": {"customerId": "C1", "email": "a@b.com"},
}


class RecordingPublisher(OrderEventPublisher):
    """Keeps published events in memory; can be told to fail."""

    def __init__(self):
        self.events = []
        self.fail = False

    def publish_order_created(self, order):
        if self.fail:
            raise EventPublishError("broker unreachable")
        event = build_order_created_event(order)
        self.events.append(event)
        return event

    def _send(self, key, body):
        pass


@pytest.fixture
def order_payload():
    return copy.deepcopy(VALID_ORDER)


@pytest.fixture
def store(tmp_path):
    s = SqlOrderStore.from_url(f"sqlite:///{tmp_path / 'orders.db'}", timeout=5.0)
    s.create_schema()
    yield s
    s.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def client(store, publisher):
    app = create_app(AppConfig(database_url="sqlite://"), store=store, publisher=publisher)
    return TestClient(app)


@pytest.fixture
def log_messages():
    messages = []
    handler_id = logger.add(lambda msg: messages.append(msg.record), level="DEBUG")
    yield messages
    logger.remove(handler_id)
