"""Service request submission and lookup."""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import InvalidAmountError
from service_payments.core.ledger import (
    OrderLedger,
    as_utc,
    load_order,
    record_payment_event,
    utcnow,
)
from service_payments.database.models import (
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
)

logger = structlog.get_logger(__name__)


@dataclass
class OrderDraft:
    """Customer submission of a service request."""

    user_name: str
    user_email: str
    user_phone: str
    service_name: str
    category_name: str
    request_type: str
    requested_date: datetime
    address: Optional[str] = None
    message: Optional[str] = None
    total_price: Optional[Decimal] = None
    payment_method: str = PaymentMethod.CASH_ON_DELIVERY.value


def serialize_order(order: ServiceRequest, ledger: OrderLedger) -> Dict[str, Any]:
    return {
        "id": str(order.id),
        "userName": order.user_name,
        "userEmail": order.user_email,
        "userPhone": order.user_phone,
        "serviceName": order.service_name,
        "categoryName": order.category_name,
        "requestType": order.request_type,
        "requestedDate": as_utc(order.requested_date).isoformat(),
        "address": order.address,
        "message": order.message,
        "status": order.status,
        "totalPrice": float(order.total_price) if order.total_price is not None else None,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "paymentStatus": order.payment_status,
        "paymentType": order.payment_type,
        "paymentDetails": order.payment_details,
        "overallPaymentStatus": ledger.overall_payment_status(order),
        "createdAt": as_utc(order.created_at).isoformat(),
    }


class OrderService:
    """Creates and reads service requests."""

    def __init__(self, settings: Optional[Settings] = None, ledger: Optional[OrderLedger] = None):
        self.settings = settings or get_settings()
        self.ledger = ledger or OrderLedger(self.settings)

    async def create_order(self, db: AsyncSession, draft: OrderDraft) -> Dict[str, Any]:
        """
        Persist a new service request with payment status Pending.

        Raises:
            InvalidAmountError: If a total price is given and is not positive
        """
        if draft.total_price is not None and draft.total_price <= 0:
            raise InvalidAmountError("Total price must be positive")

        now = utcnow()
        order = ServiceRequest(
            id=uuid.uuid4(),
            user_name=draft.user_name,
            user_email=draft.user_email,
            user_phone=draft.user_phone,
            service_name=draft.service_name,
            category_name=draft.category_name,
            request_type=draft.request_type,
            requested_date=draft.requested_date,
            address=draft.address,
            message=draft.message,
            total_price=draft.total_price,
            currency=self.settings.payment_currency,
            status="Pending",
            payment_method=draft.payment_method,
            payment_status=PaymentStatus.PENDING.value,
            payment_type=PaymentType.FULL.value,
            require_sequential_payment=True,
            version=0,
            created_at=now,
            updated_at=now,
            milestones=[],
            payment_links=[],
        )
        db.add(order)
        record_payment_event(
            db, order, "service_request.created", {"payment_method": draft.payment_method}
        )
        await db.commit()

        logger.info(
            "service_request_created",
            service_request_id=str(order.id),
            payment_method=order.payment_method,
        )
        return serialize_order(order, self.ledger)

    async def get_order(self, db: AsyncSession, order_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
        order = await load_order(db, order_id)
        return serialize_order(order, self.ledger)

    async def payment_status(
        self, db: AsyncSession, order_id: Union[str, uuid.UUID]
    ) -> Dict[str, Any]:
        """Payment status summary for ``GET /api/payments/status/{id}``."""
        order = await load_order(db, order_id)
        content: Dict[str, Any] = {
            "serviceRequestId": str(order.id),
            "paymentStatus": order.payment_status,
            "paymentMethod": order.payment_method,
            "paymentType": order.payment_type,
            "paymentDetails": order.payment_details,
            "totalPrice": float(order.total_price) if order.total_price is not None else None,
            "currency": order.currency,
            "overallPaymentStatus": self.ledger.overall_payment_status(order),
        }
        if order.payment_type == PaymentType.MILESTONE.value:
            content["milestones"] = [
                {
                    "id": str(m.id),
                    "name": m.name,
                    "order": m.sequence,
                    "amount": float(m.amount),
                    "paymentStatus": m.payment_status,
                    "paymentDetails": m.payment_details,
                }
                for m in order.milestones
            ]
        return content
