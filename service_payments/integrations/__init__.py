"""External service integrations."""
from .ccavenue_client import CCAvenueClient, CCAvenueCodec, GatewayRequest, GatewayStatus
from .email_client import EmailClient, EmailError

__all__ = [
    "CCAvenueClient",
    "CCAvenueCodec",
    "EmailClient",
    "EmailError",
    "GatewayRequest",
    "GatewayStatus",
]
