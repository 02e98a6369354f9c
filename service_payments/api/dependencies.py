"""
FastAPI dependencies: admin authentication and service instances.

Services are built once per process from ``Settings``. Tests replace them
through ``app.dependency_overrides``.
"""
import secrets
from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, Request

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import PaymentServiceError
from service_payments.core.initiator import PaymentInitiator
from service_payments.core.ledger import OrderLedger
from service_payments.core.link_issuer import PaymentLinkIssuer
from service_payments.core.milestones import MilestoneService
from service_payments.core.orders import OrderService
from service_payments.core.reconciler import CallbackReconciler
from service_payments.integrations.ccavenue_client import CCAvenueClient
from service_payments.integrations.email_client import EmailClient
from service_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


class AuthenticationError(PaymentServiceError):
    """Missing or wrong admin API key."""

    error_code = "UNAUTHORIZED"
    http_status = 401


def require_admin(request: Request, settings: Settings = Depends(get_settings)) -> str:
    """
    Check the admin API key header.

    Returns:
        str: Identifier recorded as ``generated_by`` on issued links

    Raises:
        AuthenticationError: 401 when the header is missing, 403 when it is wrong
    """
    provided: Optional[str] = request.headers.get(settings.api_key_header)
    if not provided:
        raise AuthenticationError(f"Missing {settings.api_key_header} header")

    expected = settings.admin_api_key.get_secret_value()
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        logger.warning("admin_auth_rejected", path=request.url.path)
        raise AuthenticationError("Invalid API key", error_code="FORBIDDEN", http_status=403)
    return "admin"


@lru_cache()
def _ledger() -> OrderLedger:
    return OrderLedger(get_settings())


@lru_cache()
def _gateway() -> CCAvenueClient:
    return CCAvenueClient(get_settings())


@lru_cache()
def get_issuer() -> PaymentLinkIssuer:
    settings = get_settings()
    return PaymentLinkIssuer(settings, EmailClient(settings), _ledger())


@lru_cache()
def get_initiator() -> PaymentInitiator:
    return PaymentInitiator(get_settings(), _gateway(), _ledger(), get_issuer())


@lru_cache()
def get_reconciler() -> CallbackReconciler:
    return CallbackReconciler(get_settings(), _gateway(), _ledger())


@lru_cache()
def get_milestone_service() -> MilestoneService:
    return MilestoneService(get_settings(), _ledger())


@lru_cache()
def get_order_service() -> OrderService:
    return OrderService(get_settings(), _ledger())


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()
