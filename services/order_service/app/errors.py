class OrderServiceError(Exception):
    """Base class for failures that map onto an HTTP error response."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OrderValidationError(OrderServiceError, ValueError):
    status_code = 400
    code = "invalid_order"


class TotalMismatchError(OrderValidationError):
    code = "total_mismatch"


class InvalidStatusError(OrderServiceError, ValueError):
    status_code = 400
    code = "invalid_status"


class OrderNotFoundError(OrderServiceError, LookupError):
    status_code = 404
    code = "not_found"

    def __init__(self, order_id: str):
        super().__init__("Order not found")
        self.order_id = order_id


class DuplicateOrderIdError(OrderServiceError):
    """Raised by the store when an order id is already taken."""

    status_code = 409
    code = "duplicate_order_id"

    def __init__(self, order_id: str):
        super().__init__(f"Order id {order_id} already exists")
        self.order_id = order_id


class OrderIdConflictError(OrderServiceError):
    status_code = 409
    code = "order_id_conflict"


class DownstreamFailure(OrderServiceError):
    status_code = 500
    code = "downstream_failure"


class StoreUnavailableError(DownstreamFailure):
    pass


class EventPublishError(DownstreamFailure):
    pass
