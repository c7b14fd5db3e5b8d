"""
FastAPI Application Entry Point

Thin HTTP surface over the order lifecycle and dispatch engine.
Authentication and transport concerns are handled in front of it.

Endpoints:
    - POST /api/orders: Place an order
    - GET  /api/orders/{id}: Order details
    - POST /api/orders/{id}/status: Move an order along its lifecycle
    - POST /api/orders/{id}/dispatch: Retry courier selection
    - POST /api/orders/{id}/assign: Manual courier assignment (admin)
    - POST /api/orders/{id}/tip: Courier tip settlement
    - POST /api/payments: Record a payment attempt
    - POST /api/payments/{txn}/charge: Charge through the gateway
    - POST /api/payments/{id}/refund: Refund a captured payment
    - POST /webhook/payments: Gateway callback
    - PUT  /api/delivery-personnel/{id}/location|availability
    - GET  /api/config, PUT /api/admin/config/{key}
    - GET  /api/reference/statuses
    - GET  /health: System health check
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Iterable

import redis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from restaurant_engine.core.config import get_settings, setup_logging
from restaurant_engine.core.exceptions import OrderEngineError
from restaurant_engine.database import get_engine, get_session_factory, init_db
from restaurant_engine.models import Order, OrderItem
from restaurant_engine.presentation import order_status_info, reference_tables
from restaurant_engine.schemas import (
    AssignDeliveryRequest,
    AvailabilityUpdateRequest,
    ConfigUpdateRequest,
    CreateOrderRequest,
    DeliveryPersonResponse,
    DispatchResponse,
    ErrorResponse,
    HealthResponse,
    LocationUpdateRequest,
    OrderItemResponse,
    OrderResponse,
    PaymentResponse,
    PaymentWebhookRequest,
    RecordPaymentRequest,
    RefundRequest,
    StatusInfo,
    TipResponse,
    TipSettlementRequest,
    UpdateStatusRequest,
)
from restaurant_engine.services import EngineServices, build_services
from restaurant_engine.services.notifications import get_notification_service

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    engine = get_engine()
    await init_db(engine)

    services = build_services(get_session_factory(), settings)
    await services.config.initialize()
    app.state.services = services
    logger.info(f"Payment Gateway: {services.gateway.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"Missing production config: {missing}")

    logger.info("Application ready")

    yield  # Application runs

    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description="Order lifecycle and delivery-dispatch engine for a restaurant delivery platform.",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> EngineServices:
    """Services wired in the lifespan; tests override this dependency."""
    return request.app.state.services


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def order_response(order: Order, items: Iterable[OrderItem] = ()) -> OrderResponse:
    response = OrderResponse.model_validate(order)
    response.status_info = StatusInfo(**order_status_info(order.status))
    response.estimated_minutes_remaining = order.estimated_time_remaining()
    response.items = [OrderItemResponse.model_validate(item) for item in items]
    return response


# =============================================================================
# HEALTH & REFERENCE ENDPOINTS
# =============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(services: EngineServices = Depends(get_services)) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis
    redis_status = "healthy"
    try:
        client = redis.Redis.from_url(
            settings.redis_url, socket_timeout=2, socket_connect_timeout=2
        )
        await asyncio.to_thread(client.ping)
        client.close()
    except redis.RedisError as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_status = "healthy" if await services.gateway.health_check() else "unhealthy"
    notification_status = (
        "healthy" if await get_notification_service().health_check() else "unhealthy"
    )

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        timestamp=datetime.now(),
    )


@app.get("/api/reference/statuses", tags=["Reference"])
async def status_reference() -> dict[str, Any]:
    """Labels, icons, colors and progress for every status value."""
    return reference_tables()


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    order_data: CreateOrderRequest,
    services: EngineServices = Depends(get_services),
) -> OrderResponse:
    logger.info(f"Creating order for user {order_data.user_id} ({len(order_data.items)} lines)")
    order = await services.orders.create_order(order_data)
    _, items = await services.orders.get_order(order.id)
    return order_response(order, items)


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    services: EngineServices = Depends(get_services),
) -> OrderResponse:
    order, items = await services.orders.get_order(order_id)
    return order_response(order, items)


@app.post(
    "/api/orders/{order_id}/status",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Update Order Status",
)
async def update_order_status(
    order_id: int,
    body: UpdateStatusRequest,
    services: EngineServices = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.update_status(
        order_id,
        body.status,
        delivery_person_id=body.delivery_person_id,
        reason=body.reason,
    )
    return order_response(order)


@app.post(
    "/api/orders/{order_id}/dispatch",
    response_model=DispatchResponse,
    responses=ERROR_RESPONSES,
    tags=["Dispatch"],
)
async def dispatch_order(
    order_id: int,
    services: EngineServices = Depends(get_services),
) -> DispatchResponse:
    person = await services.orders.dispatch(order_id)
    if person is None:
        return DispatchResponse(
            order_id=order_id,
            assigned=False,
            message="No delivery person available right now; the order stays ready for pickup",
        )
    return DispatchResponse(
        order_id=order_id,
        assigned=True,
        delivery_person_id=person.id,
        message=f"Assigned to delivery person #{person.id}",
    )


@app.post(
    "/api/orders/{order_id}/assign",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Dispatch"],
    summary="Manual Courier Assignment (admin)",
)
async def assign_order(
    order_id: int,
    body: AssignDeliveryRequest,
    services: EngineServices = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.assign_delivery_person(order_id, body.delivery_person_id)
    return order_response(order)


@app.post(
    "/api/orders/{order_id}/tip",
    response_model=TipResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def settle_tip(
    order_id: int,
    body: TipSettlementRequest,
    services: EngineServices = Depends(get_services),
) -> TipResponse:
    tip = await services.orders.settle_tip(order_id, body.success, body.upi_transaction_id)
    return TipResponse.model_validate(tip)


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/payments",
    response_model=PaymentResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
)
async def record_payment(
    body: RecordPaymentRequest,
    services: EngineServices = Depends(get_services),
) -> PaymentResponse:
    payment = await services.payments.record_attempt(
        body.order_id, body.method, body.amount, body.transaction_id
    )
    return PaymentResponse.model_validate(payment)


@app.post(
    "/api/payments/{transaction_id}/charge",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
)
async def charge_payment(
    transaction_id: str,
    services: EngineServices = Depends(get_services),
) -> PaymentResponse:
    payment = await services.payments.charge(transaction_id)
    return PaymentResponse.model_validate(payment)


@app.post(
    "/api/payments/{payment_id}/refund",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
)
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    services: EngineServices = Depends(get_services),
) -> PaymentResponse:
    payment = await services.payments.refund(payment_id, body.amount)
    return PaymentResponse.model_validate(payment)


@app.post(
    "/webhook/payments",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    tags=["Payments"],
    summary="Payment Gateway Callback",
)
async def payment_webhook(
    body: PaymentWebhookRequest,
    services: EngineServices = Depends(get_services),
) -> PaymentResponse:
    logger.info(f"Payment webhook: {body.transaction_id} -> {body.status}")
    payment = await services.payments.confirm(
        body.transaction_id,
        body.status,
        body.gateway_transaction_id,
        body.gateway_response,
    )
    return PaymentResponse.model_validate(payment)


# =============================================================================
# DELIVERY PERSONNEL ENDPOINTS
# =============================================================================

@app.put(
    "/api/delivery-personnel/{personnel_id}/location",
    response_model=DeliveryPersonResponse,
    responses=ERROR_RESPONSES,
    tags=["Delivery Personnel"],
)
async def update_location(
    personnel_id: int,
    body: LocationUpdateRequest,
    services: EngineServices = Depends(get_services),
) -> DeliveryPersonResponse:
    person = await services.dispatch.update_location(personnel_id, body.latitude, body.longitude)
    return DeliveryPersonResponse.model_validate(person)


@app.put(
    "/api/delivery-personnel/{personnel_id}/availability",
    response_model=DeliveryPersonResponse,
    responses=ERROR_RESPONSES,
    tags=["Delivery Personnel"],
)
async def update_availability(
    personnel_id: int,
    body: AvailabilityUpdateRequest,
    services: EngineServices = Depends(get_services),
) -> DeliveryPersonResponse:
    person = await services.dispatch.set_availability(personnel_id, body.status)
    return DeliveryPersonResponse.model_validate(person)


# =============================================================================
# CONFIGURATION ENDPOINTS
# =============================================================================

@app.get("/api/config", tags=["Configuration"])
async def public_config(services: EngineServices = Depends(get_services)) -> dict[str, str]:
    """Public operational settings (name, fees, hours...)."""
    return services.config.public_values()


@app.put(
    "/api/admin/config/{key}",
    responses=ERROR_RESPONSES,
    tags=["Configuration"],
    summary="Update Configuration (admin)",
)
async def update_config(
    key: str,
    body: ConfigUpdateRequest,
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    snapshot = await services.config.set(key, body.value, is_public=body.is_public)
    return {"success": True, "key": key, "value": snapshot.get(key)}


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderEngineError)
async def engine_exception_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    """Render engine errors with their category's status code."""
    if exc.http_status >= 500:
        logger.warning(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed requests are validation errors like any other."""
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "VALIDATION_ERROR",
            "detail": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            ),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "restaurant_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
