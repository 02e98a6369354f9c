"""
Payment initiation.

Turns an eligible order (or milestone) into the encrypted form that the
browser posts to the CCAvenue hosted page, and records the outgoing payment
as Pending so the callback can be reconciled.
"""
import uuid
from typing import Any, Dict, Optional, Union
from urllib.parse import urlencode

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import (
    InvalidPaymentMethodError,
    MilestoneNotFoundError,
    PaymentLinkNotFoundError,
    PaymentServiceError,
)
from service_payments.core.link_issuer import PaymentLinkIssuer
from service_payments.core.ledger import OrderLedger, load_order, parse_uuid
from service_payments.database.models import (
    Milestone,
    PaymentLink,
    PaymentMethod,
    PaymentType,
    ServiceRequest,
)
from service_payments.integrations.ccavenue_client import CCAvenueClient, GatewayRequest
from service_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FULL_PAYMENT_MARKER = "full"
MILESTONE_SUFFIX = "-M"


def gateway_order_id(order: ServiceRequest, milestone: Optional[Milestone] = None) -> str:
    """``<order id>`` for full payments, ``<order id>-M<sequence>`` for milestones."""
    if milestone is None:
        return str(order.id)
    return f"{order.id}{MILESTONE_SUFFIX}{milestone.sequence}"


class PaymentInitiator:
    """Starts gateway payments for orders and milestones."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[CCAvenueClient] = None,
        ledger: Optional[OrderLedger] = None,
        issuer: Optional[PaymentLinkIssuer] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or CCAvenueClient(self.settings)
        self.ledger = ledger or OrderLedger(self.settings)
        self.issuer = issuer or PaymentLinkIssuer(self.settings, ledger=self.ledger)

    def _gateway_request(
        self, order: ServiceRequest, milestone: Optional[Milestone]
    ) -> GatewayRequest:
        cancel_query = {"orderId": str(order.id)}
        if milestone is not None:
            cancel_query["milestoneId"] = str(milestone.id)

        return GatewayRequest(
            order_id=gateway_order_id(order, milestone),
            amount=milestone.amount if milestone else order.total_price,
            redirect_url=f"{self.settings.backend_url}/api/payments/callback",
            cancel_url=f"{self.settings.backend_url}/api/payments/cancel?{urlencode(cancel_query)}",
            currency=order.currency,
            customer_name=order.user_name,
            customer_email=order.user_email,
            customer_phone=order.user_phone,
            billing_address=order.address or "",
            billing_country=self.settings.billing_country,
            merchant_params={
                "merchant_param1": str(order.id),
                "merchant_param2": str(milestone.id) if milestone else FULL_PAYMENT_MARKER,
                "merchant_param3": str(milestone.sequence) if milestone else "0",
            },
        )

    async def _start(
        self,
        db: AsyncSession,
        order: ServiceRequest,
        milestone: Optional[Milestone],
        link: Optional[PaymentLink] = None,
    ) -> Dict[str, Any]:
        target = "milestone" if milestone else "order"
        try:
            self.ledger.can_initiate(order, milestone, link).raise_if_denied()

            request = self._gateway_request(order, milestone)
            form = self.gateway.build_payment_form(request)
            await self.ledger.mark_pending(
                db, order, milestone, request.amount, request.order_id, order.currency, link
            )
            await db.commit()
        except PaymentServiceError as e:
            metrics.record_initiation(target, "rejected")
            logger.info(
                "payment_initiation_rejected",
                service_request_id=str(order.id),
                milestone_id=str(milestone.id) if milestone else None,
                reason=e.error_code,
            )
            raise

        metrics.record_initiation(target, "accepted", order.currency, float(request.amount))
        logger.info(
            "payment_initiated",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id) if milestone else None,
            gateway_order_id=request.order_id,
        )

        return {
            "paymentUrl": self.gateway.payment_url,
            "encRequest": form["encRequest"],
            "access_code": form["access_code"],
            "paymentFormData": form,
            "orderId": request.order_id,
            "serviceRequestId": str(order.id),
            "amount": float(request.amount),
            "currency": order.currency,
            "milestoneId": str(milestone.id) if milestone else None,
            "milestoneName": milestone.name if milestone else None,
            "milestoneOrder": milestone.sequence if milestone else None,
        }

    async def initiate(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        milestone_id: Union[str, uuid.UUID, None] = None,
    ) -> Dict[str, Any]:
        """
        Initiate a payment directly by order id.

        A milestone id is only honoured for milestone orders; otherwise the
        full order amount is charged.

        Raises:
            InvalidPaymentMethodError: If the order is not paid online
            MilestoneNotFoundError: If the milestone does not belong to the order
            ConcurrentUpdateError: If another initiation or callback won the race
        """
        order = await load_order(db, order_id)
        if order.payment_method != PaymentMethod.ONLINE_PAYMENT.value:
            raise InvalidPaymentMethodError()

        milestone = None
        if milestone_id and order.payment_type == PaymentType.MILESTONE.value:
            milestone = order.milestone(
                parse_uuid(milestone_id, "milestone", "INVALID_MILESTONE_ID")
            )
            if milestone is None:
                raise MilestoneNotFoundError()

        return await self._start(db, order, milestone)

    async def initiate_by_token(
        self, db: AsyncSession, token: str, milestone_link: Optional[bool] = None
    ) -> Dict[str, Any]:
        """
        Initiate a payment through a payment link.

        Args:
            db: Database session
            token: Payment link token
            milestone_link: True/False to accept only milestone/order links,
                None to accept both

        Raises:
            LinkExpiredError: If the link expired (checked live)
            PaymentLinkNotFoundError: If the token is unknown or the wrong kind
        """
        resolved = await self.issuer.resolve_token(db, token)
        if milestone_link is not None and milestone_link != (resolved.milestone is not None):
            raise PaymentLinkNotFoundError()
        return await self._start(db, resolved.order, resolved.milestone, resolved.link)
