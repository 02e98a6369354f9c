"""
Order/milestone payment ledger.

Authoritative state for whether a service request (or one of its
milestones) has been paid and whether a new payment may start.

Every mutation claims the row first with a compare-and-swap on
``service_requests.version``:

    UPDATE service_requests SET version = :seen + 1
    WHERE id = :id AND version = :seen

A claim that matches no row means another request changed the order after
it was loaded, and the caller gets ``ConcurrentUpdateError`` instead of a
second acknowledged initiation or callback.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import (
    AlreadyPaidError,
    ConcurrentUpdateError,
    InvalidAmountError,
    InvalidIdentifierError,
    LinkAlreadyUsedError,
    LinkExpiredError,
    OrderNotFoundError,
    PaymentServiceError,
    PreviousMilestoneUnpaidError,
)
from service_payments.database.models import (
    CompletionStatus,
    Milestone,
    PaymentEvent,
    PaymentLink,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
    utcnow,
)
from service_payments.integrations.ccavenue_client import GatewayStatus
from service_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

GATEWAY_DATE_FORMAT = "%d/%m/%Y %H:%M:%S"

# Unknown is held as Pending and flagged for manual review.
LEDGER_STATUS: Dict[GatewayStatus, PaymentStatus] = {
    GatewayStatus.SUCCESS: PaymentStatus.SUCCESS,
    GatewayStatus.FAILURE: PaymentStatus.FAILURE,
    GatewayStatus.PENDING: PaymentStatus.PENDING,
    GatewayStatus.UNKNOWN: PaymentStatus.PENDING,
}


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (sqlite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_link_expired(link: PaymentLink, now: Optional[datetime] = None) -> bool:
    """Expiry is computed live; the stored flag only records an earlier decision."""
    now = now or utcnow()
    return link.is_expired or as_utc(link.expires_at) <= now


def parse_uuid(
    value: Union[str, uuid.UUID, None],
    what: str = "service request",
    error_code: str = "INVALID_SERVICE_REQUEST_ID",
) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise InvalidIdentifierError(what, error_code=error_code)


async def load_order(
    db: AsyncSession, order_id: Union[str, uuid.UUID], refresh: bool = False
) -> ServiceRequest:
    """
    Load a service request with its milestones and links.

    Raises:
        InvalidIdentifierError: If ``order_id`` is not a UUID
        OrderNotFoundError: If no such service request exists
    """
    order_uuid = parse_uuid(order_id)
    stmt = select(ServiceRequest).where(ServiceRequest.id == order_uuid)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(order_uuid)
    return order


def record_payment_event(
    db: AsyncSession,
    order: ServiceRequest,
    event_type: str,
    event_data: Dict[str, Any],
    milestone: Optional[Milestone] = None,
    correlation_id: Optional[uuid.UUID] = None,
) -> None:
    """Append an audit row; flushed together with the ledger change."""
    db.add(
        PaymentEvent(
            service_request_id=order.id,
            milestone_id=milestone.id if milestone else None,
            event_type=event_type,
            event_data=event_data,
            correlation_id=correlation_id or uuid.uuid4(),
            created_at=utcnow(),
        )
    )


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class Eligibility:
    """Outcome of ``OrderLedger.can_initiate``."""

    allowed: bool
    reason: Optional[str] = None
    description: Optional[str] = None
    blocking_milestone: Optional[Milestone] = None

    def raise_if_denied(self) -> None:
        """Raise the error matching ``reason``."""
        if self.allowed:
            return
        if self.reason == "PREVIOUS_MILESTONE_UNPAID":
            blocking = self.blocking_milestone
            raise PreviousMilestoneUnpaidError(
                blocking.name if blocking else "",
                content={
                    "blockingMilestone": {
                        "id": str(blocking.id),
                        "name": blocking.name,
                        "order": blocking.sequence,
                        "amount": _money(blocking.amount),
                    }
                }
                if blocking
                else None,
            )
        if self.reason == "LINK_EXPIRED":
            raise LinkExpiredError()
        if self.reason == "LINK_ALREADY_USED":
            raise LinkAlreadyUsedError()
        if self.reason == "INVALID_TOTAL_PRICE":
            raise InvalidAmountError(self.description or "Invalid total price for payment")
        if self.reason in ("PAYMENT_ALREADY_COMPLETED", "MILESTONE_ALREADY_PAID"):
            raise AlreadyPaidError(self.description, error_code=self.reason)
        raise PaymentServiceError(self.description or "Payment not allowed", error_code=self.reason)


@dataclass(frozen=True)
class GatewayResult:
    """Decrypted gateway response, reduced to the fields the ledger records."""

    status: GatewayStatus
    order_status: str
    gateway_order_id: str
    tracking_id: str = ""
    bank_ref_no: str = ""
    failure_message: str = ""
    status_message: str = ""
    amount: str = ""
    currency: str = ""
    trans_date: str = ""
    payment_mode: str = ""

    @classmethod
    def from_response(cls, fields: Dict[str, str], status: GatewayStatus) -> "GatewayResult":
        return cls(
            status=status,
            order_status=fields.get("order_status", ""),
            gateway_order_id=fields.get("order_id", ""),
            tracking_id=fields.get("tracking_id", ""),
            bank_ref_no=fields.get("bank_ref_no", ""),
            failure_message=fields.get("failure_message", ""),
            status_message=fields.get("status_message", ""),
            amount=fields.get("amount", ""),
            currency=fields.get("currency", ""),
            trans_date=fields.get("trans_date", ""),
            payment_mode=fields.get("payment_mode", ""),
        )

    @property
    def ledger_status(self) -> PaymentStatus:
        return LEDGER_STATUS[self.status]

    @property
    def needs_review(self) -> bool:
        return self.status is GatewayStatus.UNKNOWN

    def payment_date(self) -> str:
        try:
            parsed = datetime.strptime(self.trans_date, GATEWAY_DATE_FORMAT)
        except ValueError:
            return utcnow().isoformat()
        return parsed.replace(tzinfo=timezone.utc).isoformat()

    def payment_details(self, fallback_amount: Optional[Decimal], currency: str) -> Dict[str, Any]:
        """Build the ``payment_details`` document written in one update."""
        try:
            amount = float(Decimal(self.amount)) if self.amount else _money(fallback_amount)
        except ArithmeticError:
            amount = _money(fallback_amount)

        details: Dict[str, Any] = {
            "transactionId": self.tracking_id,
            "orderId": self.gateway_order_id,
            "amount": amount,
            "currency": self.currency or currency,
            "paymentDate": self.payment_date(),
            "failureReason": ""
            if self.status is GatewayStatus.SUCCESS
            else (self.failure_message or self.status_message),
            "bankReferenceNumber": self.bank_ref_no,
            "paymentMode": self.payment_mode,
            "statusMessage": self.status_message,
            "gatewayStatus": self.order_status,
        }
        if self.needs_review:
            details["needsReview"] = True
        return details


@dataclass
class ResolveResult:
    """What ``mark_resolved`` did with a gateway result."""

    applied: bool
    duplicate: bool
    payment_status: str
    needs_review: bool = False


class OrderLedger:
    """Reads and changes payment state of service requests and milestones."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def can_initiate(
        self,
        order: ServiceRequest,
        milestone: Optional[Milestone] = None,
        link: Optional[PaymentLink] = None,
        now: Optional[datetime] = None,
    ) -> Eligibility:
        """
        Decide whether a payment may start for an order or one of its milestones.

        Args:
            order: Service request
            milestone: Milestone being paid, or None for a full payment
            link: Payment link used to reach the payment page, if any
            now: Override for the current time

        Returns:
            Eligibility: ``allowed`` plus the reason code when denied
        """
        if milestone is None:
            if order.payment_status == PaymentStatus.SUCCESS.value:
                return Eligibility(
                    False, "PAYMENT_ALREADY_COMPLETED", "Payment already completed for this order"
                )
            if not order.total_price or order.total_price <= 0:
                return Eligibility(False, "INVALID_TOTAL_PRICE", "Invalid total price for payment")
        else:
            if milestone.payment_status == PaymentStatus.SUCCESS.value:
                return Eligibility(False, "MILESTONE_ALREADY_PAID", "Milestone is already paid")
            if not milestone.amount or milestone.amount <= 0:
                return Eligibility(False, "INVALID_TOTAL_PRICE", "Invalid milestone amount")
            blocking = self.blocking_milestone(order, milestone)
            if blocking is not None:
                return Eligibility(
                    False,
                    "PREVIOUS_MILESTONE_UNPAID",
                    f'Previous milestone "{blocking.name}" must be paid first',
                    blocking_milestone=blocking,
                )

        if link is not None:
            if is_link_expired(link, now):
                return Eligibility(False, "LINK_EXPIRED", "Payment link has expired")
            if self.settings.payment_link_single_use and link.is_used:
                return Eligibility(
                    False, "LINK_ALREADY_USED", "This payment link has already been used"
                )

        return Eligibility(True)

    @staticmethod
    def blocking_milestone(order: ServiceRequest, milestone: Milestone) -> Optional[Milestone]:
        """First earlier milestone that is not paid, when payment is sequential."""
        if not order.require_sequential_payment:
            return None
        for previous in order.milestones:
            if (
                previous.sequence < milestone.sequence
                and previous.payment_status != PaymentStatus.SUCCESS.value
            ):
                return previous
        return None

    async def claim(
        self,
        db: AsyncSession,
        order: ServiceRequest,
        operation: str,
        require_unpaid: bool = False,
    ) -> None:
        """
        Compare-and-swap on the order version.

        Raises:
            ConcurrentUpdateError: If the row changed since it was loaded
        """
        seen = order.version
        stmt = (
            update(ServiceRequest)
            .where(ServiceRequest.id == order.id, ServiceRequest.version == seen)
            .values(version=seen + 1)
            .execution_options(synchronize_session=False)
        )
        if require_unpaid:
            stmt = stmt.where(ServiceRequest.payment_status != PaymentStatus.SUCCESS.value)

        result = await db.execute(stmt)
        if result.rowcount != 1:
            metrics.record_concurrent_update(operation)
            logger.warning(
                "concurrent_update_detected",
                service_request_id=str(order.id),
                operation=operation,
                seen_version=seen,
            )
            raise ConcurrentUpdateError()

        set_committed_value(order, "version", seen + 1)

    async def mark_pending(
        self,
        db: AsyncSession,
        order: ServiceRequest,
        milestone: Optional[Milestone],
        amount: Decimal,
        gateway_order_id: str,
        currency: str,
        link: Optional[PaymentLink] = None,
    ) -> None:
        """
        Record an outgoing payment so the callback can be reconciled.

        Raises:
            ConcurrentUpdateError: If another request changed the order first
        """
        await self.claim(db, order, "initiate", require_unpaid=milestone is None)

        target = milestone or order
        target.payment_status = PaymentStatus.PENDING.value
        target.payment_details = {
            "orderId": gateway_order_id,
            "amount": float(amount),
            "currency": currency,
            "initiatedAt": utcnow().isoformat(),
        }
        if link is not None and self.settings.payment_link_single_use:
            link.is_used = True

        record_payment_event(
            db,
            order,
            "payment.initiated",
            {"gateway_order_id": gateway_order_id, "amount": str(amount), "currency": currency},
            milestone=milestone,
        )
        await db.flush()

        logger.info(
            "payment_marked_pending",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id) if milestone else None,
            gateway_order_id=gateway_order_id,
        )

    async def mark_resolved(
        self,
        db: AsyncSession,
        order: ServiceRequest,
        milestone: Optional[Milestone],
        result: GatewayResult,
    ) -> ResolveResult:
        """
        Apply a gateway result to the order or milestone.

        Status and payment details are written in the same flush. Re-applying
        the payload already recorded is a no-op, and nothing replaces a
        recorded Success.

        Raises:
            ConcurrentUpdateError: If another request changed the order first
        """
        target = milestone or order
        new_status = result.ledger_status
        current = target.payment_details or {}

        if target.payment_status == PaymentStatus.SUCCESS.value:
            duplicate = (
                current.get("transactionId") == result.tracking_id
                and current.get("gatewayStatus") == result.order_status
            )
            if not duplicate:
                logger.warning(
                    "late_callback_ignored",
                    service_request_id=str(order.id),
                    milestone_id=str(milestone.id) if milestone else None,
                    gateway_status=result.order_status,
                    tracking_id=result.tracking_id,
                )
            return ResolveResult(False, duplicate, target.payment_status)

        if (
            target.payment_status == new_status.value
            and current.get("transactionId") == result.tracking_id
            and current.get("gatewayStatus") == result.order_status
        ):
            return ResolveResult(False, True, target.payment_status, result.needs_review)

        await self.claim(db, order, "callback")

        fallback_amount = milestone.amount if milestone else order.total_price
        target.payment_status = new_status.value
        target.payment_details = result.payment_details(fallback_amount, order.currency)

        if milestone is not None:
            if (
                new_status is PaymentStatus.SUCCESS
                and milestone.completion_status == CompletionStatus.NOT_STARTED.value
            ):
                milestone.completion_status = CompletionStatus.IN_PROGRESS.value
            all_paid = all(
                m.payment_status == PaymentStatus.SUCCESS.value for m in order.milestones
            )
            order.payment_status = (
                PaymentStatus.SUCCESS.value if all_paid else PaymentStatus.PENDING.value
            )

        if new_status is PaymentStatus.SUCCESS:
            link = milestone.active_link if milestone else order.active_link
            if link is not None:
                link.is_used = True

        if result.needs_review:
            metrics.record_unknown_status()
            logger.warning(
                "gateway_status_unknown",
                service_request_id=str(order.id),
                gateway_status=result.order_status,
                tracking_id=result.tracking_id,
            )

        record_payment_event(
            db,
            order,
            "payment.resolved",
            {
                "payment_status": new_status.value,
                "gateway_status": result.order_status,
                "tracking_id": result.tracking_id,
                "needs_review": result.needs_review,
            },
            milestone=milestone,
        )
        await db.flush()

        logger.info(
            "payment_resolved",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id) if milestone else None,
            payment_status=new_status.value,
            tracking_id=result.tracking_id,
        )
        return ResolveResult(True, False, new_status.value, result.needs_review)

    async def mark_cancelled(
        self, db: AsyncSession, order: ServiceRequest, milestone: Optional[Milestone] = None
    ) -> bool:
        """
        Record that the customer left the gateway page.

        Returns:
            bool: False when the target was already paid and nothing changed
        """
        target = milestone or order
        if target.payment_status == PaymentStatus.SUCCESS.value:
            return False
        if target.payment_status == PaymentStatus.CANCELLED.value:
            return False

        await self.claim(db, order, "cancel")

        details = dict(target.payment_details or {})
        details["failureReason"] = "Payment cancelled by customer"
        details["cancelledAt"] = utcnow().isoformat()
        target.payment_status = PaymentStatus.CANCELLED.value
        target.payment_details = details

        record_payment_event(db, order, "payment.cancelled", {}, milestone=milestone)
        await db.flush()

        logger.info(
            "payment_cancelled",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id) if milestone else None,
        )
        return True

    @staticmethod
    def overall_payment_status(order: ServiceRequest) -> str:
        """Summary status shown to customers and admins."""
        if order.payment_type != PaymentType.MILESTONE.value or not order.milestones:
            return order.payment_status

        total = len(order.milestones)
        paid = sum(1 for m in order.milestones if m.payment_status == PaymentStatus.SUCCESS.value)
        failed = sum(1 for m in order.milestones if m.payment_status == PaymentStatus.FAILURE.value)

        if paid == total:
            return "Fully Paid"
        if paid > 0:
            return f"Partially Paid ({paid}/{total})"
        if failed > 0:
            return "Payment Failed"
        return "Pending"
