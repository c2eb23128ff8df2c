"""Order persistence.

``OrderStore`` is the interface the service talks to; ``SqlOrderStore`` backs
it with SQLAlchemy so any supported database can hold the orders. The
``order_id`` column carries a unique constraint, which is the authoritative
guard against duplicate identifiers.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import JSON, DateTime, Float, Integer, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .domain import CustomerInfo, LineItem, Order, OrderStatus, utcnow
from .errors import DuplicateOrderIdError, OrderNotFoundError, StoreUnavailableError
from .logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class OrderRecord(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    products: Mapped[list] = mapped_column(JSON, nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderStatus.PENDING.value)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_order(self) -> Order:
        return Order(
            order_id=self.order_id,
            products=tuple(
                LineItem(product_id=p["productId"], quantity=p["quantity"], price=p["price"])
                for p in self.products
            ),
            total_amount=self.total_amount,
            customer_info=CustomerInfo(customer_id=self.customer_id, email=self.customer_email),
            status=OrderStatus(self.status),
            created_at=_as_utc(self.created_at),
            updated_at=_as_utc(self.updated_at),
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStore(ABC):
    @abstractmethod
    def insert(self, order: Order) -> Order:
        """Persist a new order, raising DuplicateOrderIdError if its id is taken."""

    @abstractmethod
    def find_by_id(self, order_id: str) -> Order:
        """Return the order or raise OrderNotFoundError."""

    @abstractmethod
    def update_status(self, order_id: str, status) -> Order:
        """Replace status and updatedAt, returning the updated order."""

    @abstractmethod
    def list_all(self) -> List[Order]:
        """All orders, newest first."""

    def create_schema(self) -> None:
        pass

    def close(self) -> None:
        pass


class SqlOrderStore(OrderStore):
    def __init__(self, engine: Engine, timeout: Optional[float] = None):
        self.engine = engine
        self.timeout = timeout
        self._sessions = sessionmaker(engine, expire_on_commit=False)
        self._executor = ThreadPoolExecutor(thread_name_prefix="order-store") if timeout else None

    @classmethod
    def from_url(cls, url: str, timeout: Optional[float] = None) -> "SqlOrderStore":
        kwargs = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        elif timeout:
            kwargs["pool_timeout"] = timeout
        return cls(create_engine(url, **kwargs), timeout=timeout)

    def create_schema(self) -> None:
        self._call(lambda: Base.metadata.create_all(self.engine))

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        self.engine.dispose()

    def _call(self, fn: Callable[[], T]) -> T:
        """Run a database call, bounded by the store timeout when one is set."""
        try:
            if self._executor is None:
                return fn()
            future = self._executor.submit(fn)
            try:
                return future.result(timeout=self.timeout)
            except FutureTimeout:
                future.cancel()
                raise StoreUnavailableError(f"Order store did not respond within {self.timeout}s") from None
        except SQLAlchemyError as e:
            log.error("Order store error: {!r}", e)
            raise StoreUnavailableError("Order store unavailable") from e

    def insert(self, order: Order) -> Order:
        def _insert() -> Order:
            now = utcnow()
            record = OrderRecord(
                order_id=order.order_id,
                products=[item.to_dict() for item in order.products],
                total_amount=order.total_amount,
                status=order.status.value,
                customer_id=order.customer_info.customer_id,
                customer_email=order.customer_info.email,
                created_at=now,
                updated_at=now,
            )
            with self._sessions() as session:
                session.add(record)
                try:
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    if self._order_id_taken(order.order_id):
                        raise DuplicateOrderIdError(order.order_id) from e
                    raise
                return record.to_order()

        return self._call(_insert)

    def _order_id_taken(self, order_id: str) -> bool:
        with self._sessions() as session:
            stmt = select(OrderRecord.id).where(OrderRecord.order_id == order_id)
            return session.execute(stmt).first() is not None

    def find_by_id(self, order_id: str) -> Order:
        def _find() -> Order:
            with self._sessions() as session:
                record = session.execute(
                    select(OrderRecord).where(OrderRecord.order_id == order_id)
                ).scalar_one_or_none()
                if record is None:
                    raise OrderNotFoundError(order_id)
                return record.to_order()

        return self._call(_find)

    def update_status(self, order_id: str, status) -> Order:
        status = OrderStatus.parse(status)

        def _update() -> Order:
            with self._sessions() as session:
                record = session.execute(
                    select(OrderRecord).where(OrderRecord.order_id == order_id)
                ).scalar_one_or_none()
                if record is None:
                    raise OrderNotFoundError(order_id)
                record.status = status.value
                record.updated_at = utcnow()
                session.commit()
                return record.to_order()

        return self._call(_update)

    def list_all(self) -> List[Order]:
        def _list() -> List[Order]:
            with self._sessions() as session:
                stmt = select(OrderRecord).order_by(OrderRecord.created_at.desc(), OrderRecord.id.desc())
                return [record.to_order() for record in session.execute(stmt).scalars()]

        return self._call(_list)
