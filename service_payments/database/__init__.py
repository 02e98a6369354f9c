"""Database package for service payments."""
from .connection import get_db, init_db
from .models import (
    Base,
    CompletionStatus,
    Milestone,
    PaymentEvent,
    PaymentLink,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    ServiceRequest,
)

__all__ = [
    "Base",
    "CompletionStatus",
    "Milestone",
    "PaymentEvent",
    "PaymentLink",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentType",
    "ServiceRequest",
    "get_db",
    "init_db",
]
