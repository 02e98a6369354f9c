"""Milestone (staged payment) management for service requests."""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import (
    AlreadyPaidError,
    InvalidAmountError,
    MilestoneNotFoundError,
    PaymentStateError,
    PaymentValidationError,
)
from service_payments.core.ledger import (
    OrderLedger,
    as_utc,
    load_order,
    parse_uuid,
    record_payment_event,
    utcnow,
)
from service_payments.database.models import (
    CompletionStatus,
    Milestone,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
)

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
PERCENT_PRECISION = Decimal("0.0001")
ROUNDING_TOLERANCE = Decimal("0.01")

EDITABLE_FIELDS = ("name", "description", "due_date", "completion_status", "completed_at", "is_required")


@dataclass
class MilestoneDraft:
    """One milestone as submitted by an admin; amount or percentage of the total."""

    name: str
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None
    order: Optional[int] = None
    description: str = ""
    due_date: Optional[datetime] = None
    is_required: bool = True


def serialize_milestone(milestone: Milestone) -> Dict[str, Any]:
    link = milestone.active_link
    return {
        "id": str(milestone.id),
        "name": milestone.name,
        "description": milestone.description,
        "amount": float(milestone.amount),
        "percentage": float(milestone.percentage) if milestone.percentage is not None else None,
        "order": milestone.sequence,
        "paymentStatus": milestone.payment_status,
        "paymentDetails": milestone.payment_details,
        "completionStatus": milestone.completion_status,
        "dueDate": as_utc(milestone.due_date).isoformat() if milestone.due_date else None,
        "isRequired": milestone.is_required,
        "completedAt": as_utc(milestone.completed_at).isoformat() if milestone.completed_at else None,
        "paymentLink": {
            "url": link.url,
            "expiresAt": as_utc(link.expires_at).isoformat(),
            "isExpired": link.is_expired,
            "isUsed": link.is_used,
        }
        if link
        else None,
    }


def _detach(order: ServiceRequest, milestone: Milestone) -> None:
    """Remove a milestone and its links from the order's collections."""
    for link in list(milestone.payment_links):
        if link in order.payment_links:
            order.payment_links.remove(link)
    order.milestones.remove(milestone)


class MilestoneService:
    """Create, list, update and delete milestones of a service request."""

    def __init__(self, settings: Optional[Settings] = None, ledger: Optional[OrderLedger] = None):
        self.settings = settings or get_settings()
        self.ledger = ledger or OrderLedger(self.settings)

    @staticmethod
    def _price_drafts(total: Decimal, drafts: Sequence[MilestoneDraft]) -> List[Milestone]:
        milestones = []
        sequences = set()
        for index, draft in enumerate(drafts, start=1):
            if draft.percentage is not None and draft.percentage > 0:
                amount = total * Decimal(draft.percentage) / 100
            else:
                amount = draft.amount
            if amount is None or amount <= 0:
                raise PaymentValidationError(
                    f"Milestone {index}: Invalid amount or percentage",
                    error_code="INVALID_MILESTONES",
                )
            amount = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
            percentage = (
                Decimal(draft.percentage)
                if draft.percentage
                else amount / total * 100
            ).quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP)

            sequence = draft.order or index
            if sequence in sequences:
                raise PaymentValidationError(
                    f"Milestone {index}: duplicate order {sequence}",
                    error_code="INVALID_MILESTONES",
                )
            sequences.add(sequence)

            milestones.append(
                Milestone(
                    id=uuid.uuid4(),
                    name=draft.name,
                    description=draft.description or "",
                    amount=amount,
                    percentage=percentage,
                    sequence=sequence,
                    payment_status=PaymentStatus.PENDING.value,
                    completion_status=CompletionStatus.NOT_STARTED.value,
                    due_date=draft.due_date,
                    is_required=draft.is_required,
                    created_at=utcnow(),
                    payment_links=[],
                )
            )
        return sorted(milestones, key=lambda m: m.sequence)

    async def create_milestones(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        drafts: Sequence[MilestoneDraft],
        require_sequential_payment: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Replace the milestones of a service request and switch it to milestone payment.

        Raises:
            PaymentValidationError: INVALID_MILESTONES or MILESTONE_AMOUNT_EXCEEDS_TOTAL
            InvalidAmountError: If the order has no positive total price
            AlreadyPaidError: If an existing milestone is already paid
            PaymentStateError: If a milestone payment is awaiting its callback
        """
        if not drafts:
            raise PaymentValidationError(
                "Milestones array is required and must not be empty",
                error_code="INVALID_MILESTONES",
            )

        order = await load_order(db, order_id)
        if not order.total_price or order.total_price <= 0:
            raise InvalidAmountError("Service request must have a valid total price")
        if any(m.payment_status == PaymentStatus.SUCCESS.value for m in order.milestones):
            raise AlreadyPaidError(
                "Milestones with completed payments cannot be replaced",
                error_code="MILESTONES_LOCKED",
            )
        in_flight = [
            m
            for m in order.milestones
            if m.payment_status == PaymentStatus.PENDING.value
            and (m.payment_details or {}).get("orderId")
        ]
        if in_flight:
            raise PaymentStateError(
                f"Milestone \"{in_flight[0].name}\" has a payment in progress",
                error_code="MILESTONE_PAYMENT_IN_PROGRESS",
            )

        milestones = self._price_drafts(order.total_price, drafts)
        total_amount = sum((m.amount for m in milestones), Decimal("0"))
        if total_amount > order.total_price + ROUNDING_TOLERANCE:
            raise PaymentValidationError(
                f"Total milestone amount ({total_amount:.2f} {order.currency}) exceeds "
                f"total price ({order.total_price} {order.currency})",
                error_code="MILESTONE_AMOUNT_EXCEEDS_TOTAL",
            )

        await self.ledger.claim(db, order, "milestones")

        for existing in list(order.milestones):
            _detach(order, existing)
        for milestone in milestones:
            order.milestones.append(milestone)

        order.payment_type = PaymentType.MILESTONE.value
        order.require_sequential_payment = (
            True if require_sequential_payment is None else require_sequential_payment
        )
        record_payment_event(
            db,
            order,
            "milestones.created",
            {"count": len(milestones), "total_amount": str(total_amount)},
        )
        await db.commit()

        logger.info(
            "milestones_created",
            service_request_id=str(order.id),
            count=len(milestones),
            require_sequential_payment=order.require_sequential_payment,
        )
        return {
            "serviceRequestId": str(order.id),
            "paymentType": order.payment_type,
            "requireSequentialPayment": order.require_sequential_payment,
            "milestones": [serialize_milestone(m) for m in order.milestones],
            "totalMilestoneAmount": f"{total_amount:.2f}",
            "totalPrice": float(order.total_price),
        }

    async def list_milestones(
        self, db: AsyncSession, order_id: Union[str, uuid.UUID]
    ) -> Dict[str, Any]:
        order = await load_order(db, order_id)
        return {
            "serviceRequestId": str(order.id),
            "paymentType": order.payment_type,
            "paymentMethod": order.payment_method,
            "totalPrice": float(order.total_price) if order.total_price is not None else None,
            "requireSequentialPayment": order.require_sequential_payment,
            "milestones": [serialize_milestone(m) for m in order.milestones],
            "overallPaymentStatus": self.ledger.overall_payment_status(order),
        }

    async def _load_milestone(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        milestone_id: Union[str, uuid.UUID],
    ) -> tuple[ServiceRequest, Milestone]:
        order = await load_order(db, order_id)
        milestone = order.milestone(parse_uuid(milestone_id, "milestone", "INVALID_MILESTONE_ID"))
        if milestone is None:
            raise MilestoneNotFoundError()
        return order, milestone

    async def update_milestone(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        milestone_id: Union[str, uuid.UUID],
        changes: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Update descriptive and progress fields of a milestone.

        Payment fields are not editable here. Setting ``completion_status``
        to Completed stamps ``completed_at`` when it is not already set.
        """
        order, milestone = await self._load_milestone(db, order_id, milestone_id)

        for field in EDITABLE_FIELDS:
            if field in changes and changes[field] is not None:
                setattr(milestone, field, changes[field])

        if (
            changes.get("completion_status") == CompletionStatus.COMPLETED.value
            and milestone.completed_at is None
        ):
            milestone.completed_at = utcnow()

        await db.commit()
        logger.info(
            "milestone_updated",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id),
            fields=sorted(k for k in changes if k in EDITABLE_FIELDS),
        )
        return {"serviceRequestId": str(order.id), "milestone": serialize_milestone(milestone)}

    async def delete_milestone(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID],
        milestone_id: Union[str, uuid.UUID],
    ) -> Dict[str, Any]:
        """
        Delete an unpaid milestone together with its payment links.

        Raises:
            AlreadyPaidError: MILESTONE_ALREADY_PAID if the milestone is paid
        """
        order, milestone = await self._load_milestone(db, order_id, milestone_id)
        if milestone.payment_status == PaymentStatus.SUCCESS.value:
            raise AlreadyPaidError(
                "Cannot delete a paid milestone", error_code="MILESTONE_ALREADY_PAID"
            )

        await self.ledger.claim(db, order, "milestones")
        _detach(order, milestone)
        record_payment_event(
            db, order, "milestone.deleted", {"milestone_id": str(milestone.id)}
        )
        await db.commit()

        logger.info(
            "milestone_deleted",
            service_request_id=str(order.id),
            milestone_id=str(milestone.id),
        )
        return {"serviceRequestId": str(order.id), "deletedMilestoneId": str(milestone.id)}
