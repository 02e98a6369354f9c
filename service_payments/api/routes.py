"""
API routes for service requests, payment links, gateway callbacks and monitoring.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import HTMLResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.core.exceptions import PaymentServiceError
from service_payments.core.initiator import PaymentInitiator
from service_payments.core.link_issuer import PaymentLinkIssuer
from service_payments.core.orders import OrderDraft, OrderService
from service_payments.core.reconciler import CallbackReconciler
from service_payments.database.connection import get_db
from service_payments.monitoring.health import HealthCheck

from .dependencies import (
    get_health_check,
    get_initiator,
    get_issuer,
    get_order_service,
    get_reconciler,
    require_admin,
)
from .responses import envelope, redirect_page
from .schemas import (
    HealthCheckResponse,
    InitiatePaymentRequest,
    InvalidateLinkRequest,
    PaymentLinkRequest,
    ServiceRequestCreate,
)

logger = structlog.get_logger(__name__)

# Create routers
service_request_router = APIRouter(prefix="/api/service-requests", tags=["service-requests"])
admin_router = APIRouter(
    prefix="/api/admin/payments", tags=["admin"], dependencies=[Depends(require_admin)]
)
payment_router = APIRouter(prefix="/api/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])


# ============================================================================
# SERVICE REQUESTS
# ============================================================================

@service_request_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Submit a service request",
    description="Create a service request with payment status Pending",
)
async def create_service_request(
    body: ServiceRequestCreate,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    draft = OrderDraft(
        user_name=body.user_name,
        user_email=body.user_email,
        user_phone=body.user_phone,
        service_name=body.service_name,
        category_name=body.category_name,
        request_type=body.request_type.value,
        requested_date=body.requested_date,
        address=body.address,
        message=body.message,
        total_price=body.total_price,
        payment_method=body.payment_method.value,
    )
    content = await orders.create_order(db, draft)
    return envelope(content, "Service request created")


@service_request_router.get(
    "/{service_request_id}",
    summary="Get a service request",
)
async def get_service_request(
    service_request_id: str,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    return envelope(await orders.get_order(db, service_request_id))


# ============================================================================
# ADMIN: PAYMENT LINKS
# ============================================================================

@admin_router.post(
    "/generate-link",
    summary="Generate a payment link",
    description="Issue a tokenised payment link for an online-payment order and email it",
)
async def generate_payment_link(
    body: PaymentLinkRequest,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    content = await issuer.generate_link(
        db, body.order_id, body.expiry_hours, body.admin_id or admin
    )
    return envelope(content, "Payment link generated")


@admin_router.post(
    "/regenerate-link",
    summary="Regenerate a payment link",
    description="Issue a fresh link; the previous link is flagged expired",
)
async def regenerate_payment_link(
    body: PaymentLinkRequest,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    content = await issuer.regenerate_link(
        db, body.order_id, body.expiry_hours, body.admin_id or admin
    )
    return envelope(content, "Payment link regenerated")


@admin_router.post(
    "/invalidate-link",
    summary="Invalidate a payment link",
)
async def invalidate_payment_link(
    body: InvalidateLinkRequest,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
) -> Dict[str, Any]:
    content = await issuer.invalidate_link(db, body.order_id, body.milestone_id)
    return envelope(content, "Payment link invalidated")


@admin_router.get(
    "/link-status/{service_request_id}",
    summary="Payment link status",
)
async def payment_link_status(
    service_request_id: str,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
) -> Dict[str, Any]:
    return envelope(await issuer.link_status(db, service_request_id))


# ============================================================================
# PAYMENTS
# ============================================================================

@payment_router.get(
    "/link/{token}",
    summary="Payment link details",
    description="Order summary for the payment page; expiry is checked live",
)
async def payment_link_details(
    token: str,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
) -> Dict[str, Any]:
    return envelope(await issuer.link_details(db, token))


@payment_router.post(
    "/link/{token}/initiate",
    summary="Initiate payment from a link",
)
async def initiate_link_payment(
    token: str,
    db: AsyncSession = Depends(get_db),
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    content = await initiator.initiate_by_token(db, token, milestone_link=False)
    return envelope(content, "Payment initiated")


@payment_router.post(
    "/initiate",
    summary="Initiate payment",
    description="Start a gateway payment for an order, or one of its milestones",
)
async def initiate_payment(
    body: InitiatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    content = await initiator.initiate(db, body.service_request_id, body.milestone_id)
    return envelope(content, "Payment initiated")


@payment_router.api_route(
    "/callback",
    methods=["POST", "GET"],
    response_class=HTMLResponse,
    summary="Gateway callback",
    description="Decrypts the gateway response, updates the ledger and redirects the browser",
)
async def payment_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> HTMLResponse:
    form: Dict[str, str] = {}
    if request.method == "POST":
        form = {key: value for key, value in (await request.form()).items() if isinstance(value, str)}
    query = dict(request.query_params)

    try:
        enc_response, _ = reconciler.extract_payload(form, query)
        outcome = await reconciler.reconcile(db, enc_response)
    except PaymentServiceError as e:
        logger.warning("callback_rejected", error_code=e.error_code, description=e.description)
        await db.rollback()
        return redirect_page(reconciler.error_redirect_url(e.error_code), status_code=e.http_status)
    except Exception as e:
        logger.error("callback_processing_error", error=str(e), error_type=type(e).__name__)
        await db.rollback()
        return redirect_page(
            reconciler.error_redirect_url("INTERNAL_SERVER_ERROR"),
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return redirect_page(reconciler.redirect_url(outcome))


@payment_router.get(
    "/cancel",
    response_class=HTMLResponse,
    summary="Gateway cancel",
    description="Marks the order (or milestone) cancelled and redirects the browser",
)
async def payment_cancel(
    orderId: Optional[str] = None,
    milestoneId: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> HTMLResponse:
    url = await reconciler.cancel(db, orderId, milestoneId)
    return redirect_page(url)


@payment_router.get(
    "/status/{service_request_id}",
    summary="Payment status",
)
async def payment_status(
    service_request_id: str,
    db: AsyncSession = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
) -> Dict[str, Any]:
    return envelope(await orders.payment_status(db, service_request_id))


# ============================================================================
# MONITORING
# ============================================================================

@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe: 503 while any dependency is down."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
