import math
import secrets
import string
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from numbers import Real
from typing import Any, Optional, Tuple

from .errors import InvalidStatusError, OrderValidationError, TotalMismatchError

TOTAL_TOLERANCE = 0.01
ORDER_ID_PREFIX = "ORD"
_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_TOKEN_LENGTH = 6


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise InvalidStatusError(f"Invalid status. Valid statuses are: {valid}") from None


@dataclass(frozen=True)
class LineItem:
    product_id: str
    quantity: int
    price: float

    def to_dict(self) -> dict:
        return {"productId": self.product_id, "quantity": self.quantity, "price": self.price}


@dataclass(frozen=True)
class CustomerInfo:
    customer_id: str
    email: str

    def to_dict(self) -> dict:
        return {"customerId": self.customer_id, "email": self.email}


@dataclass(frozen=True)
class OrderRequest:
    """A candidate order that passed validation but has no identity yet."""

    products: Tuple[LineItem, ...]
    total_amount: float
    customer_info: CustomerInfo


@dataclass(frozen=True)
class Order:
    order_id: str
    products: Tuple[LineItem, ...]
    total_amount: float
    customer_info: CustomerInfo
    status: OrderStatus = OrderStatus.PENDING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def new(cls, order_id: str, request: OrderRequest) -> "Order":
        return cls(
            order_id=order_id,
            products=request.products,
            total_amount=request.total_amount,
            customer_info=request.customer_info,
        )

    def with_status(self, status: OrderStatus, when: datetime) -> "Order":
        return replace(self, status=status, updated_at=when)

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "products": [item.to_dict() for item in self.products],
            "totalAmount": self.total_amount,
            "status": self.status.value,
            "customerInfo": self.customer_info.to_dict(),
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_number(value: Any) -> bool:
    if not isinstance(value, Real) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # Integers too large for a float are not valid amounts.
        return False


def _is_non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _line_item(raw: Any) -> Optional[LineItem]:
    if not isinstance(raw, dict):
        return None
    product_id = raw.get("productId")
    quantity = raw.get("quantity")
    price = raw.get("price")
    if not _is_non_empty_str(product_id):
        return None
    if not _is_number(quantity) or quantity <= 0 or quantity != int(quantity):
        return None
    if not _is_number(price) or price < 0:
        return None
    return LineItem(product_id=product_id, quantity=int(quantity), price=price)


def calculate_total(products) -> float:
    return sum(item.price * item.quantity for item in products)


def validate_order(payload: Any) -> OrderRequest:
    """Check a raw create-order payload and return the validated request.

    Checks run in a fixed order and stop at the first failure: the product
    list, the declared total, the customer fields, each line item, and finally
    the declared total against the line items. A mismatched total raises
    TotalMismatchError, every other failure raises OrderValidationError.
    """
    invalid = OrderValidationError(
        "Invalid order data. Please provide valid products, total amount, and customer information"
    )
    if not isinstance(payload, dict):
        raise invalid

    raw_products = payload.get("products")
    if not isinstance(raw_products, list) or len(raw_products) < 1:
        raise invalid

    total_amount = payload.get("totalAmount")
    if not _is_number(total_amount) or total_amount <= 0:
        raise invalid

    raw_customer = payload.get("customerInfo")
    if not isinstance(raw_customer, dict):
        raise invalid
    customer_id = raw_customer.get("customerId")
    email = raw_customer.get("email")
    if not (_is_non_empty_str(customer_id) and _is_non_empty_str(email)):
        raise invalid

    products = []
    for raw in raw_products:
        item = _line_item(raw)
        if item is None:
            raise invalid
        products.append(item)

    if abs(calculate_total(products) - total_amount) > TOTAL_TOLERANCE:
        raise TotalMismatchError("Total amount does not match the sum of product prices")

    return OrderRequest(
        products=tuple(products),
        total_amount=total_amount,
        customer_info=CustomerInfo(customer_id=customer_id, email=email),
    )


def generate_order_id() -> str:
    timestamp = str(int(time.time() * 1000))
    token = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_TOKEN_LENGTH))
    return f"{ORDER_ID_PREFIX}-{timestamp}-{token}".upper()
