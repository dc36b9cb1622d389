"""
MotoWorld Payments Server
=========================
FastAPI surface for the storefront's payment core:
- Stripe webhook receiver
- Client payment confirmation and checkout setup
- Admin retry, dead-letter inspection and fulfillment edits
- Inventory availability checks

pip install fastapi uvicorn pydantic structlog
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import configure_logging, settings
from database import Database
from payments.checkout import CheckoutService, CreateOrderRequest
from payments.errors import (
    Forbidden,
    NotFound,
    ProcessorUnavailable,
    ReconciliationError,
    SignatureInvalid,
    TransientStorageError,
    Unauthorized,
    ValidationError,
)
from payments.gateway import IPaymentGateway, StripePaymentGateway
from payments.reconciliation import ReconciliationEngine
from schemas.orders import FulfillmentEdit, OrderStatus, utcnow
from schemas.payments import ReconcileOutcome, ReconcileResult
from services.identity import AdminPolicy, IIdentityVerifier, Identity, JwtIdentityVerifier
from services.notifications import (
    INotificationSink,
    InMemoryNotificationSink,
    SendGridNotificationSink,
)
from storage.audit_log import IAuditLog, InMemoryAuditLog, PostgresAuditLog
from storage.dead_letters import IDeadLetterLedger, InMemoryDeadLetterLedger, PostgresDeadLetterLedger
from storage.inventory import (
    IInventoryRepository,
    InMemoryInventoryRepository,
    InventoryAdjuster,
    PostgresInventoryRepository,
    StockRequest,
)
from storage.order_store import InMemoryOrderStore, IOrderStore, PostgresOrderStore

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


# =============================================================================
# SERVICE WIRING
# =============================================================================

class Services:
    """Everything the routes need, wired once per app"""

    def __init__(
        self,
        orders: IOrderStore,
        inventory_repo: IInventoryRepository,
        dead_letters: IDeadLetterLedger,
        audit_log: IAuditLog,
        gateway: IPaymentGateway,
        notifications: INotificationSink,
        identity: IIdentityVerifier,
        admin_policy: AdminPolicy,
        uses_database: bool = False,
        **engine_options,
    ):
        self.orders = orders
        self.inventory = InventoryAdjuster(inventory_repo)
        self.dead_letters = dead_letters
        self.audit_log = audit_log
        self.gateway = gateway
        self.notifications = notifications
        self.identity = identity
        self.admin_policy = admin_policy
        self.uses_database = uses_database

        self.engine = ReconciliationEngine(
            orders=orders,
            inventory=self.inventory,
            gateway=gateway,
            dead_letters=dead_letters,
            notifications=notifications,
            audit_log=audit_log,
            admin_policy=admin_policy,
            **engine_options,
        )
        self.checkout = CheckoutService(
            orders=orders,
            inventory=self.inventory,
            gateway=gateway,
            notifications=notifications,
            audit_log=audit_log,
            admin_policy=admin_policy,
        )


def build_services() -> Services:
    """Wire services from settings"""
    if settings.use_postgres:
        stores = dict(
            orders=PostgresOrderStore(),
            inventory_repo=PostgresInventoryRepository(),
            dead_letters=PostgresDeadLetterLedger(),
            audit_log=PostgresAuditLog(),
        )
    else:
        stores = dict(
            orders=InMemoryOrderStore(),
            inventory_repo=InMemoryInventoryRepository(),
            dead_letters=InMemoryDeadLetterLedger(),
            audit_log=InMemoryAuditLog(),
        )

    notifications = SendGridNotificationSink() if settings.SENDGRID_API_KEY else InMemoryNotificationSink()

    return Services(
        gateway=StripePaymentGateway(),
        notifications=notifications,
        identity=JwtIdentityVerifier(),
        admin_policy=AdminPolicy(),
        uses_database=settings.use_postgres,
        **stores,
    )


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class UpdatePaymentStatusRequest(_CamelModel):
    payment_intent_id: str = Field(alias="paymentIntentId", min_length=1)
    order_id: str = Field(alias="orderId", min_length=1)


class OrderRequest(_CamelModel):
    order_id: str = Field(alias="orderId", min_length=1)


class CheckoutSessionRequest(_CamelModel):
    order_id: str = Field(alias="orderId", min_length=1)
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    storage_backend: str


# Customer-facing messages keyed off the reconciliation outcome
CLIENT_MESSAGES = {
    ReconcileOutcome.COMPLETED: (True, "completed", "Payment completed successfully"),
    ReconcileOutcome.ALREADY_COMPLETED: (True, "completed", "Payment completed successfully"),
    ReconcileOutcome.PENDING_ACTION: (False, "processing", "Payment requires additional action"),
    ReconcileOutcome.NOT_COMPLETED: (False, "failed", "Payment failed. Please try again"),
    ReconcileOutcome.DEAD_LETTERED: (False, "processing", "Your payment is being processed"),
}


def client_response(result: ReconcileResult) -> JSONResponse:
    success, status, message = CLIENT_MESSAGES[result.outcome]
    code = 503 if result.outcome == ReconcileOutcome.DEAD_LETTERED else 200
    return JSONResponse(
        status_code=code,
        content={"success": success, "status": status, "message": message, "orderId": result.order_id},
    )


def parse_products(products: str) -> list[StockRequest]:
    """Parse "id:qty,id:qty" into stock requests"""
    requests = []
    for part in products.split(","):
        part = part.strip()
        if not part:
            continue
        product_id, _, quantity = part.partition(":")
        try:
            requests.append(StockRequest(product_id=product_id.strip(), quantity=int(quantity or 1)))
        except ValueError as e:
            raise ValidationError(f"Invalid product entry: {part}") from e
    if not requests:
        raise ValidationError("No products given")
    return requests


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_identity(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Identity:
    return await services.identity.verify(authorization)


async def admin_identity(
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
) -> Identity:
    return services.admin_policy.require_admin(identity)


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint"""
    uptime = (utcnow() - request.app.state.started_at).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=uptime,
        storage_backend=settings.STORAGE_BACKEND,
    )


@router.post("/api/webhook")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    """Stripe webhook receiver; non-2xx responses make Stripe redeliver"""
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        return await asyncio.shield(services.engine.handle_webhook(payload, signature))
    except ReconciliationError:
        raise
    except Exception as e:
        logger.exception("webhook_processing_failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Error processing webhook"})


@router.post("/api/update-payment-status")
async def update_payment_status(
    body: UpdatePaymentStatusRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    """Client confirmation after the browser payment step"""
    result = await asyncio.shield(
        services.engine.confirm_from_client(identity, body.order_id, body.payment_intent_id)
    )
    return client_response(result)


@router.post("/api/retry-payment-update")
async def retry_payment_update(
    body: OrderRequest,
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    """Admin re-check of an order's checkout session"""
    result = await asyncio.shield(services.engine.admin_retry(identity, body.order_id))
    code = 503 if result.outcome == ReconcileOutcome.DEAD_LETTERED else 200
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@router.get("/api/admin/dead-letters")
async def list_dead_letters(
    order_id: Optional[str] = Query(default=None, alias="orderId"),
    processed: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    records = await services.dead_letters.list_records(order_id=order_id, processed=processed, limit=limit)
    return {"records": [r.model_dump(mode="json") for r in records], "count": len(records)}


@router.get("/api/admin/dead-letters/stats")
async def dead_letter_stats(
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    stats = await services.dead_letters.stats()
    return stats.model_dump()


@router.post("/api/admin/dead-letters/{order_id}/resolve")
async def resolve_dead_letters(
    order_id: str,
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    result = await asyncio.shield(services.engine.resolve_dead_letters(identity, order_id))
    code = 503 if result.outcome == ReconcileOutcome.DEAD_LETTERED else 200
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@router.get("/api/admin/orders")
async def list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    orders = await services.orders.list_orders(status=status, limit=limit)
    return {"orders": [o.model_dump(mode="json") for o in orders], "count": len(orders)}


@router.patch("/api/admin/orders/{order_id}")
async def edit_order(
    order_id: str,
    edit: FulfillmentEdit,
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    order = await services.orders.apply_fulfillment_edit(order_id, edit)
    logger.info("order_fulfillment_edited",
                order_id=order_id,
                admin_uid=identity.uid,
                fields=sorted(edit.changes()))
    return order.model_dump(mode="json")


@router.get("/api/check-inventory")
async def check_inventory(
    product_id: Optional[str] = Query(default=None, alias="productId"),
    quantity: int = Query(default=1, ge=1),
    products: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
):
    if products:
        results = await services.inventory.check_availability(parse_products(products))
        return {
            "allAvailable": all(r.available for r in results),
            "results": [r.model_dump() for r in results],
        }
    if not product_id:
        raise ValidationError("productId or products is required")

    [result] = await services.inventory.check_availability([StockRequest(product_id=product_id, quantity=quantity)])
    return {
        "available": result.available,
        "availableQuantity": result.available_quantity,
        "message": result.message,
    }


@router.post("/api/create-order")
async def create_order(
    body: CreateOrderRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    order = await services.checkout.create_order(identity, body)
    return {
        "success": True,
        "orderId": order.order_id,
        "orderNumber": order.order_number,
        "totalAmount": str(order.total_amount),
    }


@router.post("/api/create-payment-intent")
async def create_payment_intent(
    body: OrderRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    result = await services.checkout.create_payment_intent(identity, body.order_id)
    return {
        "clientSecret": result.client_secret,
        "orderNumber": result.order_number,
        "amount": str(result.amount),
        "currency": result.currency,
    }


@router.post("/api/create-checkout-session")
async def create_checkout_session(
    body: CheckoutSessionRequest,
    identity: Identity = Depends(current_identity),
    services: Services = Depends(get_services),
):
    session = await services.checkout.create_checkout_session(identity, body.order_id, body.return_url)
    return {"sessionId": session.session_id, "url": session.url}


@router.get("/api/get-payment-status")
async def get_payment_status(
    session_id: str = Query(alias="sessionId", min_length=1),
    services: Services = Depends(get_services),
):
    session = await services.checkout.get_payment_status(session_id)
    return {
        "status": session.payment_status,
        "amountTotal": str(session.amount_total),
        "currency": session.currency,
        "customerEmail": session.customer_email,
        "created": session.created.isoformat() if session.created else None,
    }


@router.post("/api/send-payment-reminder")
async def send_payment_reminder(
    body: OrderRequest,
    identity: Identity = Depends(admin_identity),
    services: Services = Depends(get_services),
):
    order = await services.checkout.send_payment_reminder(identity, body.order_id)
    return {"success": True, "orderId": order.order_id, "reminderSentAt": order.reminder_sent_at.isoformat()}


# =============================================================================
# ERROR MAPPING
# =============================================================================

ERROR_STATUS: list[tuple[type[ReconciliationError], int]] = [
    (NotFound, 404),
    (Unauthorized, 401),
    (Forbidden, 403),
    (SignatureInvalid, 400),
    (ValidationError, 400),
    (ProcessorUnavailable, 502),
    (TransientStorageError, 503),
]


async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if isinstance(exc, SignatureInvalid):
        message = "Webhook Error"
    elif isinstance(exc, ProcessorUnavailable):
        message = "Payment provider unavailable, please try again"
    elif isinstance(exc, TransientStorageError):
        message = "Service temporarily unavailable, please try again"
    else:
        message = exc.message

    log = logger.bind(path=request.url.path, status_code=status_code, error_type=type(exc).__name__)
    if status_code >= 500:
        log.error("request_failed", error=str(exc))
    else:
        log.info("request_rejected", error=str(exc))

    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "message": message})


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(services: Services = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        configure_logging()
        logger.info("server_starting", version=VERSION, env=settings.ENV)
        if app.state.services.uses_database:
            await Database.initialize()

        yield

        logger.info("server_shutting_down")
        if app.state.services.uses_database:
            await Database.close()

    app = FastAPI(
        title="MotoWorld Payments",
        description="Payment reconciliation backend for the MotoWorld storefront",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services or build_services()
    app.state.started_at = utcnow()

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(ReconciliationError, reconciliation_error_handler)
    app.include_router(router)
    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

def main():
    uvicorn.run(
        "api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level="info",
    )


if __name__ == "__main__":
    main()
