"""
Exception classes for the payment-link and gateway flow.

Every exception carries:
- Error code (machine-readable, returned as ``exception`` in API responses)
- Description (safe to show to users)
- HTTP status code
- Optional content (extra data for the client)
"""
from typing import Any, Dict, Optional


class PaymentServiceError(Exception):
    """Base exception for all payment service errors."""

    error_code: str = "PAYMENT_ERROR"
    http_status: int = 400

    def __init__(
        self,
        description: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        content: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(description)
        self.description = description
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.content = content

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the uniform response envelope."""
        return {
            "success": False,
            "exception": self.error_code,
            "description": self.description,
            "content": self.content,
        }


# ============================================================================
# VALIDATION ERRORS (400)
# ============================================================================

class PaymentValidationError(PaymentServiceError):
    """Malformed or missing input."""

    error_code = "VALIDATION_ERROR"
    http_status = 400


class InvalidIdentifierError(PaymentValidationError):
    def __init__(self, what: str = "service request", error_code: str = "INVALID_SERVICE_REQUEST_ID"):
        super().__init__(f"Invalid {what} ID", error_code=error_code)


class InvalidAmountError(PaymentValidationError):
    """Target amount is missing or not positive."""

    error_code = "INVALID_TOTAL_PRICE"

    def __init__(self, description: str = "Invalid total price for payment"):
        super().__init__(description)


class InvalidPaymentMethodError(PaymentValidationError):
    error_code = "INVALID_PAYMENT_METHOD"

    def __init__(self) -> None:
        super().__init__("Service request does not have online payment method")


class OrderIdNotFoundError(PaymentValidationError):
    """Gateway response carried no usable order identifier."""

    error_code = "ORDER_ID_NOT_FOUND"

    def __init__(self) -> None:
        super().__init__("Order ID or Service Request ID not found in payment response")


class MissingPaymentResponseError(PaymentValidationError):
    error_code = "MISSING_PAYMENT_RESPONSE"

    def __init__(self) -> None:
        super().__init__("Missing payment response")


# ============================================================================
# NOT FOUND ERRORS (404)
# ============================================================================

class ResourceNotFoundError(PaymentServiceError):
    error_code = "RESOURCE_NOT_FOUND"
    http_status = 404


class OrderNotFoundError(ResourceNotFoundError):
    error_code = "SERVICE_REQUEST_NOT_FOUND"

    def __init__(self, order_id: Any = None):
        super().__init__("Service request not found")
        self.order_id = order_id


class MilestoneNotFoundError(ResourceNotFoundError):
    error_code = "MILESTONE_NOT_FOUND"

    def __init__(self) -> None:
        super().__init__("Milestone not found")


class PaymentLinkNotFoundError(ResourceNotFoundError):
    error_code = "INVALID_PAYMENT_LINK"

    def __init__(self) -> None:
        super().__init__("Invalid payment link")


# ============================================================================
# STATE CONFLICT ERRORS (400 / 409)
# ============================================================================

class PaymentStateError(PaymentServiceError):
    """The order or milestone is not in a state that allows the operation."""

    error_code = "INVALID_PAYMENT_STATE"
    http_status = 400


class AlreadyPaidError(PaymentStateError):
    error_code = "PAYMENT_ALREADY_COMPLETED"

    def __init__(
        self,
        description: str = "Payment already completed for this order",
        error_code: Optional[str] = None,
    ):
        super().__init__(description, error_code=error_code)


class LinkExpiredError(PaymentStateError):
    error_code = "LINK_EXPIRED"

    def __init__(self) -> None:
        super().__init__("Payment link has expired")


class LinkAlreadyUsedError(PaymentStateError):
    error_code = "LINK_ALREADY_USED"

    def __init__(self) -> None:
        super().__init__("This payment link has already been used")


class PreviousMilestoneUnpaidError(PaymentStateError):
    error_code = "PREVIOUS_MILESTONE_UNPAID"

    def __init__(self, milestone_name: str, content: Optional[Dict[str, Any]] = None):
        super().__init__(
            f'Previous milestone "{milestone_name}" must be paid first', content=content
        )


class NoPaymentLinkError(PaymentStateError):
    error_code = "NO_PAYMENT_LINK"

    def __init__(self, http_status: Optional[int] = None):
        super().__init__(
            "No payment link found for this service request", http_status=http_status
        )


class ConcurrentUpdateError(PaymentStateError):
    """Another request changed the order first; compare-and-swap lost."""

    error_code = "CONCURRENT_UPDATE"
    http_status = 409

    def __init__(self) -> None:
        super().__init__("Payment is already being processed for this order, please retry")


# ============================================================================
# GATEWAY / CRYPTO ERRORS
# ============================================================================

class EncryptionError(PaymentServiceError):
    """Outbound request could not be encrypted (configuration/data integrity)."""

    error_code = "ENCRYPTION_FAILED"
    http_status = 500


class DecryptionError(PaymentServiceError):
    """Inbound gateway payload could not be decrypted (malformed external input)."""

    error_code = "DECRYPTION_ERROR"
    http_status = 400


class TokenGenerationFailedError(PaymentServiceError):
    error_code = "TOKEN_GENERATION_FAILED"
    http_status = 500

    def __init__(self) -> None:
        super().__init__("Failed to generate unique token, please retry")
