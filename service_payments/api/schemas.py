"""
Pydantic schemas for API request bodies.

Bodies accept the camelCase field names the web app sends.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from service_payments.database.models import CompletionStatus, PaymentMethod, RequestType


class CamelModel(BaseModel):
    """Accepts both the camelCase alias and the python field name."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class ServiceRequestCreate(CamelModel):
    """Request schema for submitting a service request."""

    user_name: str = Field(..., alias="userName", min_length=1, description="Customer name")
    user_email: str = Field(..., alias="userEmail", min_length=3, description="Customer email")
    user_phone: str = Field(..., alias="userPhone", min_length=1, description="Customer phone")
    service_name: str = Field(..., alias="serviceName", min_length=1, description="Service")
    category_name: str = Field(..., alias="categoryName", min_length=1, description="Category")
    request_type: RequestType = Field(..., alias="requestType", description="Quotation, OnTime or Scheduled")
    requested_date: datetime = Field(..., alias="requestedDate", description="Requested service date")
    address: Optional[str] = Field(default=None, description="Service address")
    message: Optional[str] = Field(default=None, description="Customer message")
    total_price: Optional[Decimal] = Field(
        default=None, alias="totalPrice", description="Quoted total price"
    )
    payment_method: PaymentMethod = Field(
        default=PaymentMethod.CASH_ON_DELIVERY,
        alias="paymentMethod",
        description="Cash On Delivery or Online Payment",
    )

    @field_validator("user_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Minimal sanity check; delivery failures surface as emailError."""
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v.lower()

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "examples": [
                {
                    "userName": "Aisha Khan",
                    "userEmail": "aisha@example.com",
                    "userPhone": "+971500000000",
                    "serviceName": "AC Maintenance",
                    "categoryName": "Home Services",
                    "requestType": "Scheduled",
                    "requestedDate": "2026-11-02T09:00:00Z",
                    "totalPrice": 5000,
                    "paymentMethod": "Online Payment",
                }
            ]
        },
    )


class PaymentLinkRequest(CamelModel):
    """Request schema for generating or regenerating an order payment link."""

    order_id: str = Field(
        ...,
        validation_alias=AliasChoices("orderId", "serviceRequestId", "order_id"),
        description="Service request ID",
    )
    expiry_hours: Optional[int] = Field(
        default=None, alias="expiryHours", description="Link lifetime in hours"
    )
    admin_id: Optional[str] = Field(default=None, alias="adminId", description="Issuing admin")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [{"orderId": "6f1c3f8e-7f5b-4ad2-9b8e-2a4a1c0f9b11", "expiryHours": 48}]
        },
    )


class InvalidateLinkRequest(CamelModel):
    """Request schema for invalidating the active payment link."""

    order_id: str = Field(
        ...,
        validation_alias=AliasChoices("orderId", "serviceRequestId", "order_id"),
        description="Service request ID",
    )
    milestone_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("milestoneId", "milestone_id"),
        description="Milestone ID (order link if omitted)",
    )


class MilestoneLinkRequest(CamelModel):
    """Request schema for generating a milestone payment link."""

    expiry_hours: Optional[int] = Field(
        default=None, alias="expiryHours", description="Link lifetime in hours"
    )
    admin_id: Optional[str] = Field(default=None, alias="adminId", description="Issuing admin")


class InitiatePaymentRequest(CamelModel):
    """Request schema for direct payment initiation."""

    service_request_id: str = Field(
        ...,
        validation_alias=AliasChoices("serviceRequestId", "orderId", "service_request_id"),
        description="Service request ID",
    )
    milestone_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("milestoneId", "milestone_id"),
        description="Milestone to pay (milestone orders only)",
    )


class MilestoneIn(CamelModel):
    """One milestone in a create request; give either amount or percentage."""

    name: str = Field(..., min_length=1, description="Milestone name")
    amount: Optional[Decimal] = Field(default=None, description="Fixed amount")
    percentage: Optional[Decimal] = Field(default=None, description="Percentage of the total price")
    order: Optional[int] = Field(default=None, ge=1, description="Payment sequence (1-based)")
    description: str = Field(default="", description="What the milestone covers")
    due_date: Optional[datetime] = Field(default=None, alias="dueDate", description="Due date")
    is_required: bool = Field(default=True, alias="isRequired", description="Required milestone")


class MilestonesCreate(CamelModel):
    """Request schema for replacing the milestones of a service request."""

    milestones: List[MilestoneIn] = Field(default_factory=list, description="Milestones")
    require_sequential_payment: Optional[bool] = Field(
        default=None,
        alias="requireSequentialPayment",
        description="Milestones must be paid in order (default true)",
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "milestones": [
                        {"name": "Deposit", "percentage": 30},
                        {"name": "Completion", "percentage": 70},
                    ],
                    "requireSequentialPayment": True,
                }
            ]
        },
    )


class MilestoneUpdate(CamelModel):
    """Request schema for updating descriptive and progress fields of a milestone."""

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    completion_status: Optional[CompletionStatus] = Field(default=None, alias="completionStatus")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    is_required: Optional[bool] = Field(default=None, alias="isRequired")

    def changes(self) -> Dict[str, Any]:
        """Fields the client actually sent, enum values unwrapped."""
        values = self.model_dump(exclude_unset=True)
        if isinstance(values.get("completion_status"), CompletionStatus):
            values["completion_status"] = values["completion_status"].value
        return values


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
