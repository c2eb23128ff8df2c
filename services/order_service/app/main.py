from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import AppConfig, get_config
from .errors import EventPublishError, InvalidStatusError, OrderServiceError
from .logging import configure_logging, get_logger
from .publisher import OrderEventPublisher, build_publisher
from .service import OrderService
from .store import OrderStore, SqlOrderStore

log = get_logger(__name__)


class UpdateStatusRequest(BaseModel):
    status: Any = None


def _error(status_code: int, message: str, code: Optional[str] = None) -> JSONResponse:
    body = {"success": False, "error": message}
    if code:
        body["code"] = code
    return JSONResponse(status_code=status_code, content=body)


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[OrderStore] = None,
    publisher: Optional[OrderEventPublisher] = None,
) -> FastAPI:
    """Build the order service app.

    Clients passed in are used as-is and left open; anything missing is built
    from ``config`` when the app starts and closed when it stops.
    """
    config = config or get_config()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        if getattr(app.state, "order_service", None) is None:
            order_store = store
            if order_store is None:
                order_store = SqlOrderStore.from_url(config.database_url, timeout=config.store_timeout_seconds)
                order_store.create_schema()
                owned.append(order_store)
            event_publisher = publisher
            if event_publisher is None:
                event_publisher = build_publisher(config)
                owned.append(event_publisher)
                try:
                    event_publisher.connect()
                except EventPublishError:
                    # Serve anyway; publishes reconnect on demand and fail non-fatally.
                    log.exception("Error connecting event publisher, starting without broker")
            app.state.order_service = OrderService(
                order_store, event_publisher, id_retries=config.order_id_retries
            )
        log.info("{} started", config.service_name)
        yield
        log.info("Shutting down gracefully...")
        for client in owned:
            client.close()

    app = FastAPI(title=config.service_name, lifespan=lifespan)
    app.state.config = config
    app.state.order_service = None
    if store is not None and publisher is not None:
        app.state.order_service = OrderService(store, publisher, id_retries=config.order_id_retries)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrderServiceError)
    async def order_service_error(request: Request, exc: OrderServiceError):
        if exc.status_code >= 500:
            log.error("{} {} failed: {}", request.method, request.url.path, exc.message)
            return _error(exc.status_code, "Internal server error", exc.code)
        return _error(exc.status_code, exc.message, exc.code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return _error(400, "Malformed request body", "invalid_request")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, "Endpoint not found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        log.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
        return _error(500, "Internal server error")

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": config.service_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/orders")
    def list_orders(service: OrderService = Depends(get_order_service)):
        orders = service.list_orders()
        return {"success": True, "count": len(orders), "data": [o.to_dict() for o in orders]}

    @app.get("/orders/{order_id}")
    def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
        return {"success": True, "data": service.get_order(order_id).to_dict()}

    @app.post("/orders", status_code=201)
    def post_orders(payload: Any = Body(None), service: OrderService = Depends(get_order_service)):
        order = service.create_order(payload)
        return {
            "success": True,
            "message": "Order created successfully",
            "orderId": order.order_id,
            "status": order.status.value,
            "totalAmount": order.total_amount,
            "createdAt": order.created_at.isoformat(),
        }

    @app.patch("/orders/{order_id}/status")
    def patch_order_status(
        order_id: str,
        req: Optional[UpdateStatusRequest] = None,
        service: OrderService = Depends(get_order_service),
    ):
        if req is None or req.status is None:
            raise InvalidStatusError("Status is required")
        order = service.update_status(order_id, req.status)
        return {"success": True, "message": "Order status updated successfully", "data": order.to_dict()}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_config().port)
