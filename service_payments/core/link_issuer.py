"""
Payment link issuer.

Mints shareable payment URLs for a service request or one of its milestones:
1. Validate the target (exists, online payment, positive amount, not paid)
2. Soft-invalidate the previous link of the same target
3. Generate a 256-bit token and persist the new link
4. Commit
5. Send the link by email (best effort, never rolls back the link)
"""
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import (
    InvalidAmountError,
    InvalidPaymentMethodError,
    LinkAlreadyUsedError,
    LinkExpiredError,
    MilestoneNotFoundError,
    NoPaymentLinkError,
    PaymentLinkNotFoundError,
    PaymentValidationError,
    TokenGenerationFailedError,
)
from service_payments.core.ledger import (
    OrderLedger,
    as_utc,
    is_link_expired,
    load_order,
    parse_uuid,
    record_payment_event,
    utcnow,
)
from service_payments.database.models import (
    Milestone,
    PaymentLink,
    PaymentMethod,
    PaymentStatus,
    ServiceRequest,
)
from service_payments.integrations.email_client import EmailClient
from service_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 32
TOKEN_ATTEMPTS = 2


def new_token() -> str:
    """256-bit token, 64 hex characters."""
    return secrets.token_hex(TOKEN_BYTES)


@dataclass
class ResolvedLink:
    """A payment link looked up by token, with the order (and milestone) it pays."""

    order: ServiceRequest
    milestone: Optional[Milestone]
    link: PaymentLink


class PaymentLinkIssuer:
    """Generates, invalidates and resolves payment links."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        email_client: Optional[EmailClient] = None,
        ledger: Optional[OrderLedger] = None,
    ):
        self.settings = settings or get_settings()
        self.email_client = email_client or EmailClient(self.settings)
        self.ledger = ledger or OrderLedger(self.settings)

    def _expiry_hours(self, expiry_hours: Optional[int], milestone: Optional[Milestone]) -> int:
        if expiry_hours is None:
            if milestone is not None:
                return self.settings.milestone_link_default_expiry_hours
            return self.settings.payment_link_default_expiry_hours

        maximum = self.settings.payment_link_max_expiry_hours
        if isinstance(expiry_hours, bool) or not 1 <= expiry_hours <= maximum:
            raise PaymentValidationError(
                f"Expiry hours must be between 1 and {maximum}",
                error_code="INVALID_EXPIRY_HOURS",
            )
        return expiry_hours

    def _check_preconditions(self, order: ServiceRequest, milestone: Optional[Milestone]) -> None:
        if order.payment_method != PaymentMethod.ONLINE_PAYMENT.value:
            raise InvalidPaymentMethodError()
        if not order.total_price or order.total_price <= 0:
            raise InvalidAmountError()
        self.ledger.can_initiate(order, milestone).raise_if_denied()

    async def _new_token(self, db: AsyncSession) -> str:
        for attempt in range(1, TOKEN_ATTEMPTS + 1):
            token = new_token()
            existing = await db.scalar(select(PaymentLink.id).where(PaymentLink.token == token))
            if existing is None:
                return token
            logger.warning("payment_link_token_collision", attempt=attempt)
        raise TokenGenerationFailedError()

    async def _issue(
        self,
        db: AsyncSession,
        order: ServiceRequest,
        milestone: Optional[Milestone],
        expiry_hours: Optional[int],
        admin_id: Optional[str],
        action: str,
    ) -> Dict[str, Any]:
        hours = self._expiry_hours(expiry_hours, milestone)
        self._check_preconditions(order, milestone)

        previous = milestone.active_link if milestone else order.active_link
        if previous is not None and not previous.is_expired:
            previous.is_expired = True
            metrics.record_link("milestone" if milestone else "order", "invalidated")

        token = await self._new_token(db)
        now = utcnow()
        expires_at = now + timedelta(hours=hours)
        path = "pay-milestone" if milestone else "pay"
        url = f"{self.settings.frontend_url}/{path}/{token}"

        link = PaymentLink(
            token=token,
            url=url,
            service_request_id=order.id,
            milestone_id=milestone.id if milestone else None,
            generated_by=admin_id,
            generated_at=now,
            expires_at=expires_at,
            is_expired=False,
            is_used=False,
        )
        order.payment_links.append(link)
        if milestone is not None:
            milestone.payment_links.append(link)

        record_payment_event(
            db,
            order,
            f"payment_link.{action}",
            {"expires_at": expires_at.isoformat(), "generated_by": admin_id},
            milestone=milestone,
        )

        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.error("payment_link_token_conflict", service_request_id=str(order.id))
            raise TokenGenerationFailedError()
        await db.commit()

        target = "milestone" if milestone else "order"
        metrics.record_link(target, action)
        logger.info(
            "payment_link_generated",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id) if milestone else None,
            action=action,
            expiry_hours=hours,
        )

        amount = milestone.amount if milestone else order.total_price
        email_sent, email_error = await self._notify(order, milestone, link, amount)

        content: Dict[str, Any] = {
            "paymentLink": url,
            "token": token,
            "serviceRequestId": str(order.id),
            "amount": float(amount),
            "currency": order.currency,
            "customerName": order.user_name,
            "customerEmail": order.user_email,
            "expiresAt": expires_at.isoformat(),
            "expiryHours": hours,
            "emailSent": email_sent,
            "emailError": email_error,
        }
        if milestone is not None:
            content["milestoneId"] = str(milestone.id)
            content["milestoneName"] = milestone.name
        return content

    async def _notify(
        self,
        order: ServiceRequest,
        milestone: Optional[Milestone],
        link: PaymentLink,
        amount: Decimal,
    ) -> tuple[bool, Optional[str]]:
        if not order.user_email:
            return False, None
        try:
            await self.email_client.send_payment_link_email(
                order.user_email,
                order.user_name,
                order.service_name,
                amount,
                order.currency,
                link.url,
                link.expires_at,
                milestone_name=milestone.name if milestone else None,
            )
        except Exception as e:
            metrics.record_email("failed")
            logger.warning(
                "payment_link_email_failed",
                service_request_id=str(order.id),
                error=str(e),
            )
            return False, str(e)

        metrics.record_email("sent")
        return True, None

    async def generate_link(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        expiry_hours: Optional[int] = None,
        admin_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Generate an order payment link.

        Any previous order link is flagged expired; rows are never deleted.

        Raises:
            InvalidIdentifierError, OrderNotFoundError, InvalidPaymentMethodError,
            InvalidAmountError, AlreadyPaidError, TokenGenerationFailedError
        """
        order = await load_order(db, order_id)
        return await self._issue(db, order, None, expiry_hours, admin_id, "generated")

    async def regenerate_link(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        expiry_hours: Optional[int] = None,
        admin_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Replace the order payment link with a fresh token."""
        order = await load_order(db, order_id)
        return await self._issue(db, order, None, expiry_hours, admin_id, "regenerated")

    async def generate_milestone_link(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        milestone_id: Union[str, uuid.UUID],
        expiry_hours: Optional[int] = None,
        admin_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Generate a payment link for one milestone.

        Raises:
            PreviousMilestoneUnpaidError: If sequential payment is required and
                an earlier milestone is not paid
        """
        order = await load_order(db, order_id)
        milestone = order.milestone(
            parse_uuid(milestone_id, "milestone", "INVALID_MILESTONE_ID")
        )
        if milestone is None:
            raise MilestoneNotFoundError()
        return await self._issue(db, order, milestone, expiry_hours, admin_id, "generated")

    async def invalidate_link(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        milestone_id: Union[str, uuid.UUID, None] = None,
    ) -> Dict[str, Any]:
        """Flag the current link of an order (or milestone) expired."""
        order = await load_order(db, order_id)
        milestone = None
        if milestone_id is not None:
            milestone = order.milestone(
                parse_uuid(milestone_id, "milestone", "INVALID_MILESTONE_ID")
            )
            if milestone is None:
                raise MilestoneNotFoundError()

        link = milestone.active_link if milestone else order.active_link
        if link is None:
            raise NoPaymentLinkError()

        link.is_expired = True
        record_payment_event(db, order, "payment_link.invalidated", {}, milestone=milestone)
        await db.commit()

        metrics.record_link("milestone" if milestone else "order", "invalidated")
        logger.info(
            "payment_link_invalidated",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id) if milestone else None,
        )
        content = {"serviceRequestId": str(order.id)}
        if milestone is not None:
            content["milestoneId"] = str(milestone.id)
        return content

    async def link_status(
        self, db: AsyncSession, order_id: Union[str, uuid.UUID]
    ) -> Dict[str, Any]:
        """Admin view of the current order link with live expiry."""
        order = await load_order(db, order_id)
        link = order.active_link
        if link is None:
            raise NoPaymentLinkError(http_status=404)

        return {
            "serviceRequestId": str(order.id),
            "paymentLink": link.url,
            "token": link.token,
            "generatedAt": as_utc(link.generated_at).isoformat(),
            "expiresAt": as_utc(link.expires_at).isoformat(),
            "isExpired": is_link_expired(link),
            "isUsed": link.is_used,
            "paymentStatus": order.payment_status,
            "amount": float(order.total_price) if order.total_price is not None else None,
            "currency": order.currency,
            "customerName": order.user_name,
            "customerEmail": order.user_email,
        }

    async def resolve_token(self, db: AsyncSession, token: str) -> ResolvedLink:
        """
        Look up a link by token and check expiry live.

        An expired link is flagged and committed before the error is raised,
        so the stored flag follows the clock.

        Raises:
            PaymentLinkNotFoundError: If no link has this token
            LinkExpiredError: If the link is flagged or past ``expires_at``
        """
        if not token:
            raise PaymentValidationError("Payment token is required", error_code="MISSING_TOKEN")

        link = await db.scalar(select(PaymentLink).where(PaymentLink.token == token))
        if link is None:
            raise PaymentLinkNotFoundError()

        order = await load_order(db, link.service_request_id)
        milestone = order.milestone(link.milestone_id) if link.milestone_id else None

        if is_link_expired(link):
            if not link.is_expired:
                link.is_expired = True
                await db.commit()
            logger.info("payment_link_expired", service_request_id=str(order.id))
            raise LinkExpiredError()

        return ResolvedLink(order, milestone, link)

    def _check_reuse(self, link: PaymentLink) -> None:
        if self.settings.payment_link_single_use and link.is_used:
            raise LinkAlreadyUsedError()

    async def link_details(self, db: AsyncSession, token: str) -> Dict[str, Any]:
        """Order summary shown on the payment page."""
        resolved = await self.resolve_token(db, token)
        if resolved.milestone is not None:
            raise PaymentLinkNotFoundError()
        self._check_reuse(resolved.link)

        order = resolved.order
        return {
            "serviceRequestId": str(order.id),
            "serviceName": order.service_name,
            "categoryName": order.category_name,
            "amount": float(order.total_price) if order.total_price is not None else None,
            "currency": order.currency,
            "customerName": order.user_name,
            "customerEmail": order.user_email,
            "customerPhone": order.user_phone,
            "requestType": order.request_type,
            "requestedDate": as_utc(order.requested_date).isoformat(),
            "expiresAt": as_utc(resolved.link.expires_at).isoformat(),
            "isExpired": False,
            "alreadyPaid": order.payment_status == PaymentStatus.SUCCESS.value,
        }

    async def milestone_link_details(self, db: AsyncSession, token: str) -> Dict[str, Any]:
        """Milestone summary shown on the milestone payment page."""
        resolved = await self.resolve_token(db, token)
        milestone = resolved.milestone
        if milestone is None:
            raise PaymentLinkNotFoundError()
        self._check_reuse(resolved.link)

        order = resolved.order
        already_paid = milestone.payment_status == PaymentStatus.SUCCESS.value
        blocking = self.ledger.blocking_milestone(order, milestone)
        return {
            "canPay": not already_paid and blocking is None,
            "alreadyPaid": already_paid,
            "isExpired": False,
            "blockingMilestone": {
                "name": blocking.name,
                "order": blocking.sequence,
                "amount": float(blocking.amount),
            }
            if blocking
            else None,
            "serviceRequest": {
                "id": str(order.id),
                "serviceName": order.service_name,
                "categoryName": order.category_name,
                "customerName": order.user_name,
                "customerEmail": order.user_email,
                "customerPhone": order.user_phone,
                "totalPrice": float(order.total_price) if order.total_price is not None else None,
                "paymentMethod": order.payment_method,
                "requireSequentialPayment": order.require_sequential_payment,
            },
            "milestone": {
                "id": str(milestone.id),
                "name": milestone.name,
                "description": milestone.description,
                "amount": float(milestone.amount),
                "percentage": float(milestone.percentage) if milestone.percentage is not None else None,
                "order": milestone.sequence,
                "paymentStatus": milestone.payment_status,
                "dueDate": milestone.due_date.isoformat() if milestone.due_date else None,
                "expiresAt": as_utc(resolved.link.expires_at).isoformat(),
            },
        }
