"""SQLAlchemy database models for service requests, milestones and payment links."""
import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILURE = "Failure"
    CANCELLED = "Cancelled"


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "Cash On Delivery"
    ONLINE_PAYMENT = "Online Payment"


class PaymentType(str, enum.Enum):
    FULL = "full"
    MILESTONE = "milestone"


class CompletionStatus(str, enum.Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class RequestType(str, enum.Enum):
    QUOTATION = "Quotation"
    ON_TIME = "OnTime"
    SCHEDULED = "Scheduled"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ServiceRequest(Base):
    """
    Service request (order) submitted by a customer.

    Carries the authoritative payment state for full payments and the
    aggregate state for milestone payments. ``version`` is bumped on every
    payment mutation and used as a compare-and-swap guard.
    """

    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category_name: Mapped[str] = mapped_column(String(255), nullable=False)
    request_type: Mapped[str] = mapped_column(String(20), nullable=False)
    requested_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    total_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="AED")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")

    payment_method: Mapped[str] = mapped_column(
        String(30), nullable=False, default=PaymentMethod.CASH_ON_DELIVERY.value
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    payment_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentType.FULL.value
    )
    require_sequential_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payment_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    milestones: Mapped[List["Milestone"]] = relationship(
        back_populates="service_request",
        cascade="all, delete-orphan",
        order_by="Milestone.sequence",
        lazy="selectin",
    )
    payment_links: Mapped[List["PaymentLink"]] = relationship(
        back_populates="service_request",
        cascade="all, delete-orphan",
        order_by="PaymentLink.generated_at",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('Pending', 'Success', 'Failure', 'Cancelled')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "payment_method IN ('Cash On Delivery', 'Online Payment')",
            name="valid_payment_method",
        ),
        CheckConstraint("payment_type IN ('full', 'milestone')", name="valid_payment_type"),
    )

    def milestone(self, milestone_id: uuid.UUID) -> Optional["Milestone"]:
        return next((m for m in self.milestones if m.id == milestone_id), None)

    def milestone_by_sequence(self, sequence: int) -> Optional["Milestone"]:
        return next((m for m in self.milestones if m.sequence == sequence), None)

    @property
    def active_link(self) -> Optional["PaymentLink"]:
        """Most recently generated order-level payment link."""
        links = [link for link in self.payment_links if link.milestone_id is None]
        return links[-1] if links else None

    def __repr__(self) -> str:
        """String representation of ServiceRequest."""
        return (
            f"<ServiceRequest(id={self.id}, total_price={self.total_price}, "
            f"payment_status={self.payment_status})>"
        )


class Milestone(Base):
    """Staged payment within a service request, paid in ``sequence`` order."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    service_request_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 4), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    payment_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    completion_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CompletionStatus.NOT_STARTED.value
    )
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    service_request: Mapped[ServiceRequest] = relationship(back_populates="milestones")
    payment_links: Mapped[List["PaymentLink"]] = relationship(
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="PaymentLink.generated_at",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_milestone_amount"),
        CheckConstraint(
            "completion_status IN ('NotStarted', 'InProgress', 'Completed')",
            name="valid_completion_status",
        ),
        Index("idx_milestones_request_sequence", "service_request_id", "sequence"),
    )

    @property
    def active_link(self) -> Optional["PaymentLink"]:
        return self.payment_links[-1] if self.payment_links else None

    def __repr__(self) -> str:
        """String representation of Milestone."""
        return (
            f"<Milestone(id={self.id}, sequence={self.sequence}, "
            f"amount={self.amount}, payment_status={self.payment_status})>"
        )


class PaymentLink(Base):
    """
    Shareable payment link for an order or one of its milestones.

    Rows are never deleted: regenerating a link flags the previous row as
    expired and inserts a new one.
    """

    __tablename__ = "payment_links"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    url: Mapped[str] = mapped_column(String(512), nullable=False)
    service_request_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    milestone_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("milestones.id", ondelete="CASCADE"), nullable=True, index=True
    )
    generated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_expired: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    service_request: Mapped[ServiceRequest] = relationship(back_populates="payment_links")
    milestone: Mapped[Optional[Milestone]] = relationship(back_populates="payment_links")

    def __repr__(self) -> str:
        """String representation of PaymentLink."""
        return (
            f"<PaymentLink(id={self.id}, service_request_id={self.service_request_id}, "
            f"milestone_id={self.milestone_id}, expires_at={self.expires_at})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores link, initiation and callback events for a service request.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    service_request_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    milestone_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("idx_payment_events_service_request_id", "service_request_id"),
        Index("idx_payment_events_correlation_id", "correlation_id"),
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, service_request_id={self.service_request_id}, "
            f"type={self.event_type})>"
        )
