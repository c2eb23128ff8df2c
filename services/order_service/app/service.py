from typing import Any, Callable, List, Optional

from .domain import Order, OrderStatus, generate_order_id, validate_order
from .errors import DuplicateOrderIdError, OrderIdConflictError
from .logging import get_logger
from .publisher import OrderEventPublisher
from .store import OrderStore

log = get_logger(__name__)

PublishFailureHook = Callable[[Order, Exception], None]


class OrderService:
    """Order intake and lifecycle.

    Creation runs validate -> generate id -> insert -> publish. A taken id is
    regenerated and the insert retried up to ``id_retries`` times. Once the
    order is stored the request succeeds even if the event cannot be
    published; the failure is logged and handed to ``on_publish_failure``.
    """

    def __init__(
        self,
        store: OrderStore,
        publisher: OrderEventPublisher,
        id_retries: int = 3,
        id_generator: Callable[[], str] = generate_order_id,
        on_publish_failure: Optional[PublishFailureHook] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.id_retries = max(1, id_retries)
        self.id_generator = id_generator
        self.on_publish_failure = on_publish_failure

    def create_order(self, payload: Any) -> Order:
        request = validate_order(payload)

        order = None
        for attempt in range(1, self.id_retries + 1):
            candidate = Order.new(self.id_generator(), request)
            try:
                order = self.store.insert(candidate)
                break
            except DuplicateOrderIdError:
                log.warning(
                    "Order id collision on {} (attempt {}/{})", candidate.order_id, attempt, self.id_retries
                )
        if order is None:
            raise OrderIdConflictError("Order ID conflict, please try again")

        log.info("Order created successfully: {}", order.order_id)
        self._publish(order)
        return order

    def _publish(self, order: Order) -> None:
        # The order is already stored; no publisher error may fail the request.
        try:
            self.publisher.publish_order_created(order)
        except Exception as e:
            log.exception("Error publishing order created event for order {}", order.order_id)
            if self.on_publish_failure is not None:
                try:
                    self.on_publish_failure(order, e)
                except Exception:
                    log.exception("Publish failure hook raised for order {}", order.order_id)

    def get_order(self, order_id: str) -> Order:
        return self.store.find_by_id(order_id)

    def list_orders(self) -> List[Order]:
        return self.store.list_all()

    def update_status(self, order_id: str, status: Any) -> Order:
        new_status = OrderStatus.parse(status)
        order = self.store.update_status(order_id, new_status)
        log.info("Order {} status set to {}", order_id, new_status.value)
        return order
