import json
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3
import pika
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate as jsonschema_validate
from pika.exceptions import AMQPError

from .config import AppConfig
from .domain import Order
from .errors import EventPublishError
from .logging import get_logger

EXCHANGE = "orders.events"
TOPIC = "order-created"
EVENT_TYPE = "ORDER_CREATED"

log = get_logger(__name__)

_SCHEMA_CACHE = None


def _repo_root() -> Path:
    # publisher.py -> app -> order_service -> services -> repo root
    return Path(__file__).resolve().parents[3]


def _load_schema() -> dict:
    global _SCHEMA_CACHE
    if _SCHEMA_CACHE is None:
        schema_path = _repo_root() / "events" / "order-created.schema.json"
        _SCHEMA_CACHE = json.loads(schema_path.read_text(encoding="utf-8"))
    return _SCHEMA_CACHE


def build_order_created_event(order: Order) -> dict:
    event = {
        "orderId": order.order_id,
        "customerId": order.customer_info.customer_id,
        "products": [item.to_dict() for item in order.products],
        "totalAmount": order.total_amount,
        "status": order.status.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "eventType": EVENT_TYPE,
    }
    jsonschema_validate(instance=event, schema=_load_schema())
    return event


class OrderEventPublisher(ABC):
    """Sends OrderCreated events to the broker.

    Each event is attempted once. Failures surface as EventPublishError and
    are never retried here.
    """

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    def publish_order_created(self, order: Order) -> dict:
        try:
            event = build_order_created_event(order)
        except SchemaValidationError as e:
            raise EventPublishError(f"OrderCreated event failed its schema: {e.message}") from e
        self._send(order.order_id, json.dumps(event).encode("utf-8"))
        log.info("Order created event published for order: {}", order.order_id)
        return event

    @abstractmethod
    def _send(self, key: str, body: bytes) -> None:
        """Deliver one serialized event keyed by its order id."""


def _connect_rabbitmq(params: pika.URLParameters, attempts: int = 10) -> pika.BlockingConnection:
    last = None
    for attempt in range(attempts):
        if attempt:
            time.sleep(0.5)
        try:
            return pika.BlockingConnection(params)
        except AMQPError as e:
            last = e

    raise EventPublishError(f"Unable to connect to RabbitMQ at {params.host}:{params.port}: {last!r}")


class RabbitMqPublisher(OrderEventPublisher):
    """Publishes to a durable topic exchange over one long-lived connection.

    pika's BlockingConnection is not thread-safe, so publishes coming from
    concurrent requests are serialized on a lock.
    """

    def __init__(self, url: str, exchange: str = EXCHANGE, topic: str = TOPIC, timeout: float = 5.0):
        self.params = pika.URLParameters(url)
        self.params.socket_timeout = timeout
        self.params.blocked_connection_timeout = timeout
        self.exchange = exchange
        self.topic = topic
        self._lock = threading.Lock()
        self._conn: Optional[pika.BlockingConnection] = None
        self._channel = None

    def connect(self) -> None:
        with self._lock:
            self._open()
        log.info("RabbitMQ publisher connected to {}:{}", self.params.host, self.params.port)

    def _open(self, attempts: int = 10) -> None:
        self._conn = _connect_rabbitmq(self.params, attempts=attempts)
        self._channel = self._conn.channel()
        self._channel.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)

    def _send(self, key: str, body: bytes) -> None:
        with self._lock:
            try:
                if self._conn is None or self._conn.is_closed:
                    # Single attempt on the request path.
                    self._open(attempts=1)
                self._channel.basic_publish(
                    exchange=self.exchange,
                    routing_key=self.topic,
                    body=body,
                    properties=pika.BasicProperties(
                        content_type="application/json",
                        delivery_mode=pika.DeliveryMode.Persistent,
                        message_id=key,
                        headers={"key": key},
                    ),
                )
            except AMQPError as e:
                raise EventPublishError(f"Failed to publish to RabbitMQ: {e!r}") from e

    def close(self) -> None:
        with self._lock:
            if self._conn is not None and self._conn.is_open:
                try:
                    self._conn.close()
                except AMQPError as e:
                    log.warning("Error closing RabbitMQ connection: {!r}", e)
            self._conn = None
            self._channel = None


class SnsPublisher(OrderEventPublisher):
    """Publishes to an SNS topic. FIFO topics are grouped by order id."""

    def __init__(self, topic_arn: str, region: Optional[str] = None, timeout: float = 5.0, client=None):
        self.topic_arn = topic_arn
        self.region = region
        self.timeout = timeout
        self.client = client

    def connect(self) -> None:
        if self.client is None:
            self.client = boto3.client(
                "sns",
                region_name=self.region,
                config=BotoConfig(
                    connect_timeout=self.timeout,
                    read_timeout=self.timeout,
                    retries={"max_attempts": 1},
                ),
            )
        log.info("SNS publisher ready for {}", self.topic_arn)

    def _send(self, key: str, body: bytes) -> None:
        kwargs = {
            "TopicArn": self.topic_arn,
            "Message": body.decode("utf-8"),
            "MessageAttributes": {"key": {"DataType": "String", "StringValue": key}},
        }
        if self.topic_arn.endswith(".fifo"):
            kwargs["MessageGroupId"] = key
            kwargs["MessageDeduplicationId"] = key
        try:
            if self.client is None:
                self.connect()
            self.client.publish(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise EventPublishError(f"Failed to publish to SNS: {e!r}") from e


def build_publisher(config: AppConfig) -> OrderEventPublisher:
    backend = config.message_backend.lower()

    if backend == "sns":
        if not config.order_events_topic_arn:
            raise ValueError("ORDER_EVENTS_TOPIC_ARN is required when MESSAGE_BACKEND=sns")
        return SnsPublisher(
            config.order_events_topic_arn,
            region=config.aws_region,
            timeout=config.publish_timeout_seconds,
        )

    if backend == "rabbitmq":
        return RabbitMqPublisher(
            config.rabbitmq_url,
            exchange=config.order_events_exchange,
            topic=config.order_events_topic,
            timeout=config.publish_timeout_seconds,
        )

    raise ValueError(f"Unknown MESSAGE_BACKEND: {config.message_backend!r}")
