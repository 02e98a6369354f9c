"""
CCAvenue gateway client.

Implements:
- AES-128-CBC codec for ``encRequest`` / ``encResponse`` payloads
- Merchant parameter encoding for the hosted payment page
- Response parsing and status vocabulary mapping
"""
import binascii
import hashlib
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional
from urllib.parse import parse_qsl, quote, urlencode

import structlog
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from service_payments.config import Settings
from service_payments.core.exceptions import DecryptionError, EncryptionError

logger = structlog.get_logger(__name__)

_HEX_KEY = re.compile(r"^[0-9A-Fa-f]{32}$")

# Gateway contract: IVs are fixed per key scheme, never random.
_ZERO_IV = bytes(16)
_KIT_IV = bytes(range(16))

BLOCK_SIZE_BITS = algorithms.AES.block_size


class GatewayStatus(str, Enum):
    """Ledger-facing outcome of a gateway ``order_status``."""

    SUCCESS = "Success"
    FAILURE = "Failure"
    PENDING = "Pending"
    UNKNOWN = "Unknown"


# Exhaustive vocabulary; anything else is UNKNOWN.
STATUS_TABLE: Dict[str, GatewayStatus] = {
    "Success": GatewayStatus.SUCCESS,
    "Failure": GatewayStatus.FAILURE,
    "Aborted": GatewayStatus.FAILURE,
    "Invalid": GatewayStatus.FAILURE,
    "Pending": GatewayStatus.PENDING,
}


class CCAvenueCodec:
    """
    Symmetric codec for CCAvenue merchant parameter strings.

    Key schemes:
    - ``hex``: the working key is 32 hex characters decoded to 16 raw bytes,
      zero IV.
    - ``md5``: the key is the MD5 digest of the working key, IV ``00..0f``
      (CCAvenue integration kit).
    """

    def __init__(self, working_key: str, key_derivation: str = "hex"):
        self._key_material = working_key.strip() if working_key else ""
        self.key_derivation = key_derivation

    def _key_and_iv(self) -> tuple[bytes, bytes]:
        if self.key_derivation == "md5":
            if not self._key_material:
                raise ValueError("Working key is empty")
            return hashlib.md5(self._key_material.encode("utf-8")).digest(), _KIT_IV

        if self.key_derivation != "hex":
            raise ValueError(f"Unsupported key derivation: {self.key_derivation}")

        key_hex = re.sub(r"\s+", "", self._key_material)
        if not _HEX_KEY.match(key_hex):
            raise ValueError(
                f"Invalid working key format. Expected 32 hex characters, got {len(key_hex)} chars"
            )
        return bytes.fromhex(key_hex), _ZERO_IV

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a parameter string.

        Args:
            plaintext: ``key=value&key=value`` string

        Returns:
            str: Lowercase hex ciphertext

        Raises:
            EncryptionError: If the key is malformed or encryption fails
        """
        try:
            key, iv = self._key_and_iv()
            padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
            return (encryptor.update(padded) + encryptor.finalize()).hex()
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Encryption error: {e}")

    def decrypt(self, ciphertext_hex: str) -> str:
        """
        Decrypt a hex ciphertext produced by the gateway.

        Args:
            ciphertext_hex: Hex encoded ciphertext

        Returns:
            str: Decrypted parameter string

        Raises:
            DecryptionError: On bad key, non-hex input, wrong block length,
                invalid padding or non UTF-8 plaintext
        """
        try:
            key, iv = self._key_and_iv()
            data = binascii.unhexlify(ciphertext_hex.strip())
            if not data or len(data) % 16:
                raise ValueError("Ciphertext length is not a multiple of the block size")
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, TypeError, binascii.Error, UnicodeDecodeError) as e:
            raise DecryptionError(f"Decryption error: {e}")


@dataclass
class GatewayRequest:
    """Data needed to open the hosted payment page for one order/milestone."""

    order_id: str
    amount: Decimal
    redirect_url: str
    cancel_url: str
    currency: str = "AED"
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    billing_address: str = ""
    billing_city: str = ""
    billing_state: str = ""
    billing_zip: str = ""
    billing_country: str = "AE"
    merchant_params: Dict[str, str] = field(default_factory=dict)


class CCAvenueClient:
    """Builds encrypted gateway requests and reads encrypted gateway responses."""

    def __init__(self, settings: Settings, codec: Optional[CCAvenueCodec] = None):
        self.merchant_id = settings.ccavenue_merchant_id
        self.access_code = settings.ccavenue_access_code
        self.payment_url = settings.ccavenue_payment_url
        self.codec = codec or CCAvenueCodec(
            settings.ccavenue_working_key.get_secret_value(),
            settings.ccavenue_key_derivation,
        )

    def merchant_parameters(self, request: GatewayRequest) -> Dict[str, str]:
        if not request.order_id or not request.amount or not request.redirect_url or not request.cancel_url:
            raise EncryptionError("Missing required payment parameters")

        params = {
            "merchant_id": self.merchant_id,
            "order_id": request.order_id,
            "amount": f"{Decimal(request.amount):.2f}",
            "currency": request.currency,
            "redirect_url": request.redirect_url,
            "cancel_url": request.cancel_url,
            "language": "EN",
            "billing_name": request.customer_name,
            "billing_address": request.billing_address,
            "billing_city": request.billing_city,
            "billing_state": request.billing_state,
            "billing_zip": request.billing_zip,
            "billing_country": request.billing_country,
            "billing_tel": request.customer_phone,
            "billing_email": request.customer_email,
            "delivery_name": request.customer_name,
            "delivery_address": request.billing_address,
            "delivery_city": request.billing_city,
            "delivery_state": request.billing_state,
            "delivery_zip": request.billing_zip,
            "delivery_country": request.billing_country,
            "delivery_tel": request.customer_phone,
        }
        for i in range(1, 6):
            key = f"merchant_param{i}"
            params[key] = request.merchant_params.get(key, "")
        params["promo_code"] = ""
        params["customer_identifier"] = request.customer_email
        return params

    def build_payment_form(self, request: GatewayRequest) -> Dict[str, str]:
        """
        Generate the form fields posted to the hosted payment page.

        Returns:
            Dict[str, str]: ``encRequest`` and ``access_code``

        Raises:
            EncryptionError: If parameters are missing or encryption fails
        """
        params = self.merchant_parameters(request)
        plaintext = urlencode(params, quote_via=quote)
        enc_request = self.codec.encrypt(plaintext)
        if not enc_request:
            raise EncryptionError("Failed to generate encrypted payment data")

        logger.info(
            "ccavenue_payment_form_built",
            order_id=request.order_id,
            enc_request_length=len(enc_request),
        )
        return {"encRequest": enc_request, "access_code": self.access_code}

    def parse_response(self, enc_response: str) -> Dict[str, str]:
        """
        Decrypt and parse an ``encResponse`` blob.

        Raises:
            DecryptionError: If the blob cannot be decrypted
        """
        decrypted = self.codec.decrypt(enc_response)
        return dict(parse_qsl(decrypted, keep_blank_values=True))

    @staticmethod
    def map_status(order_status: Optional[str]) -> GatewayStatus:
        """Map the gateway ``order_status`` to a ledger outcome."""
        return STATUS_TABLE.get((order_status or "").strip(), GatewayStatus.UNKNOWN)
