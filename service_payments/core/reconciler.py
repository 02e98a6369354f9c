"""
CCAvenue callback reconciliation.

Implements:
- Payload extraction (canonical ``encResponse`` body field, legacy variants logged)
- Decryption and order/milestone identification
- Redis fast-path deduplication of retried callbacks (fails open)
- A single ledger update per callback, retried when a concurrent update wins
- Redirect targets for the customer's browser
"""
import time
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.config import Settings, get_settings
from service_payments.core.exceptions import (
    ConcurrentUpdateError,
    MilestoneNotFoundError,
    MissingPaymentResponseError,
    OrderIdNotFoundError,
    PaymentValidationError,
)
from service_payments.core.initiator import FULL_PAYMENT_MARKER, MILESTONE_SUFFIX
from service_payments.core.ledger import GatewayResult, OrderLedger, load_order, parse_uuid
from service_payments.database.models import Milestone, PaymentStatus, ServiceRequest
from service_payments.integrations.ccavenue_client import CCAvenueClient, GatewayStatus
from service_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CANONICAL_FIELD = "encResponse"
LEGACY_FIELDS = ("encResp",)
CLAIM_ATTEMPTS = 3


@dataclass
class CallbackOutcome:
    """Result of reconciling one gateway callback."""

    service_request_id: uuid.UUID
    gateway_order_id: str
    gateway_status: GatewayStatus
    payment_status: str
    applied: bool
    duplicate: bool
    needs_review: bool = False
    milestone_id: Optional[uuid.UUID] = None
    milestone_name: Optional[str] = None
    reason: str = ""


@dataclass
class CallbackReference:
    """Where a callback points: order, and optionally a milestone by id or sequence."""

    order_id: uuid.UUID
    is_milestone: bool
    milestone_id: Optional[uuid.UUID] = None
    sequence: Optional[int] = None


def _to_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: str) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def identify(fields: Mapping[str, str]) -> CallbackReference:
    """
    Read the order and milestone a gateway response belongs to.

    ``merchant_param1..3`` carry order id, milestone id (or ``full``) and
    sequence. When they are missing the ``<order id>-M<sequence>`` gateway
    order id is parsed instead.

    Raises:
        OrderIdNotFoundError: If no order id can be recovered
    """
    gateway_order_id = (fields.get("order_id") or "").strip()
    if not gateway_order_id:
        raise OrderIdNotFoundError()

    base, suffix, suffix_sequence = gateway_order_id.rpartition(MILESTONE_SUFFIX)
    if not suffix:
        base, suffix_sequence = gateway_order_id, ""

    order_id = _to_uuid(fields.get("merchant_param1", "")) or _to_uuid(base)
    if order_id is None:
        raise OrderIdNotFoundError()

    marker = (fields.get("merchant_param2") or "").strip()
    is_milestone = bool(marker and marker != FULL_PAYMENT_MARKER) or bool(suffix)
    if not is_milestone:
        return CallbackReference(order_id, False)

    return CallbackReference(
        order_id,
        True,
        milestone_id=_to_uuid(marker),
        sequence=_to_int(fields.get("merchant_param3", "")) or _to_int(suffix_sequence),
    )


class CallbackReconciler:
    """Applies encrypted gateway callbacks to the ledger."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[CCAvenueClient] = None,
        ledger: Optional[OrderLedger] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or CCAvenueClient(self.settings)
        self.ledger = ledger or OrderLedger(self.settings)
        self.redis_client = redis_client

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def dedup_key(result: GatewayResult) -> Optional[str]:
        if not result.tracking_id:
            return None
        return f"ccavenue:callback:{result.tracking_id}:{result.order_status}"

    async def is_callback_processed(self, key: str) -> bool:
        """
        Check the dedup cache.

        Returns False when Redis is unavailable so the callback is still
        applied; the ledger itself is idempotent.
        """
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return False
            return bool(await redis.exists(key))
        except Exception as e:
            logger.warning("callback_dedup_check_error", error=str(e), key=key)
            return False

    async def mark_callback_processed(self, key: str) -> None:
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            await redis.setex(key, self.settings.callback_dedup_ttl_seconds, "1")
        except Exception as e:
            logger.warning("callback_mark_processed_error", error=str(e), key=key)

    @staticmethod
    def extract_payload(
        form: Mapping[str, str], query: Mapping[str, str]
    ) -> Tuple[str, str]:
        """
        Pick the encrypted response out of a callback request.

        The contract is ``encResponse`` in the POST body. ``encResp`` and
        query-string delivery are still accepted, and logged as deviations.

        Returns:
            Tuple[str, str]: (encrypted blob, field name)

        Raises:
            MissingPaymentResponseError: If no variant is present
        """
        for source, values in (("body", form), ("query", query)):
            for field in (CANONICAL_FIELD,) + LEGACY_FIELDS:
                value = values.get(field)
                if not value:
                    continue
                if source != "body" or field != CANONICAL_FIELD:
                    metrics.record_contract_deviation(field, source)
                    logger.warning("callback_contract_deviation", field=field, source=source)
                return value, field

        logger.error(
            "callback_payload_missing",
            body_keys=sorted(form.keys()),
            query_keys=sorted(query.keys()),
        )
        raise MissingPaymentResponseError()

    @staticmethod
    def _find_milestone(order: ServiceRequest, ref: CallbackReference) -> Optional[Milestone]:
        if not ref.is_milestone:
            return None
        # A named milestone id is authoritative; the sequence only stands in
        # when the response carries no id, since milestones can be replaced.
        if ref.milestone_id is not None:
            milestone = order.milestone(ref.milestone_id)
        elif ref.sequence is not None:
            milestone = order.milestone_by_sequence(ref.sequence)
        else:
            milestone = None
        if milestone is None:
            logger.error(
                "callback_milestone_not_found",
                service_request_id=str(order.id),
                milestone_id=str(ref.milestone_id) if ref.milestone_id else None,
                sequence=ref.sequence,
            )
            raise MilestoneNotFoundError()
        return milestone

    def _outcome(
        self,
        order: ServiceRequest,
        milestone: Optional[Milestone],
        result: GatewayResult,
        applied: bool,
        duplicate: bool,
    ) -> CallbackOutcome:
        target = milestone or order
        return CallbackOutcome(
            service_request_id=order.id,
            gateway_order_id=result.gateway_order_id,
            gateway_status=result.status,
            payment_status=target.payment_status,
            applied=applied,
            duplicate=duplicate,
            needs_review=result.needs_review,
            milestone_id=milestone.id if milestone else None,
            milestone_name=milestone.name if milestone else None,
            reason=result.failure_message or result.status_message,
        )

    async def reconcile(self, db: AsyncSession, enc_response: str) -> CallbackOutcome:
        """
        Decrypt a callback and apply it to the ledger.

        Raises:
            DecryptionError: If the payload cannot be decrypted (400)
            OrderIdNotFoundError: If the response carries no order id (400)
            OrderNotFoundError: If the order does not exist (404)
            ConcurrentUpdateError: If every claim attempt lost a race (409)
        """
        started = time.monotonic()
        fields = self.gateway.parse_response(enc_response)
        ref = identify(fields)
        status = self.gateway.map_status(fields.get("order_status"))
        result = GatewayResult.from_response(fields, status)

        logger.info(
            "callback_received",
            service_request_id=str(ref.order_id),
            gateway_order_id=result.gateway_order_id,
            gateway_status=result.order_status,
            tracking_id=result.tracking_id,
        )

        key = self.dedup_key(result)
        if key and await self.is_callback_processed(key):
            metrics.record_dedup_hit()
            order = await load_order(db, ref.order_id)
            milestone = self._find_milestone(order, ref)
            metrics.record_callback(status.value, "duplicate", time.monotonic() - started)
            logger.info("callback_already_processed", service_request_id=str(order.id))
            return self._outcome(order, milestone, result, applied=False, duplicate=True)

        for attempt in range(1, CLAIM_ATTEMPTS + 1):
            order = await load_order(db, ref.order_id, refresh=attempt > 1)
            milestone = self._find_milestone(order, ref)
            try:
                resolution = await self.ledger.mark_resolved(db, order, milestone, result)
                await db.commit()
                break
            except ConcurrentUpdateError:
                await db.rollback()
                if attempt == CLAIM_ATTEMPTS:
                    metrics.record_callback(status.value, "conflict", time.monotonic() - started)
                    raise
                logger.info(
                    "callback_claim_retry",
                    service_request_id=str(ref.order_id),
                    attempt=attempt,
                )

        if key:
            await self.mark_callback_processed(key)

        outcome_label = (
            "applied" if resolution.applied else "duplicate" if resolution.duplicate else "ignored"
        )
        metrics.record_callback(status.value, outcome_label, time.monotonic() - started)
        return self._outcome(
            order, milestone, result, applied=resolution.applied, duplicate=resolution.duplicate
        )

    def redirect_url(self, outcome: CallbackOutcome) -> str:
        """
        Frontend page for the customer after a callback.

        Based on the recorded status, so a late or duplicate callback never
        hides a payment that already succeeded.
        """
        params = {
            "orderId": outcome.gateway_order_id,
            "serviceRequestId": str(outcome.service_request_id),
        }
        if outcome.milestone_id is not None:
            params["milestoneId"] = str(outcome.milestone_id)

        if outcome.payment_status == PaymentStatus.SUCCESS.value:
            page = "success"
            if outcome.milestone_name:
                params["milestoneName"] = outcome.milestone_name
        elif outcome.payment_status == PaymentStatus.PENDING.value:
            page = "pending"
            if outcome.needs_review:
                params["review"] = "1"
        else:
            page = "failure"
            params["reason"] = outcome.reason or "Payment failed"

        return f"{self.settings.frontend_url}/payment/{page}?{urlencode(params)}"

    def error_redirect_url(self, reason: str, order_id: Optional[str] = None) -> str:
        """Failure page for callbacks that could not be applied."""
        params = {"reason": reason}
        if order_id:
            params["orderId"] = order_id
        return f"{self.settings.frontend_url}/payment/failure?{urlencode(params)}"

    async def cancel(
        self,
        db: AsyncSession,
        order_id: Union[str, uuid.UUID, None],
        milestone_id: Union[str, uuid.UUID, None] = None,
    ) -> str:
        """
        Handle the gateway cancel URL.

        Returns:
            str: Frontend cancellation page

        Raises:
            PaymentValidationError: If the order id is missing
            InvalidIdentifierError, OrderNotFoundError, MilestoneNotFoundError
        """
        if not order_id:
            raise PaymentValidationError("Order ID is required", error_code="MISSING_ORDER_ID")

        order = await load_order(db, order_id)
        milestone = None
        if milestone_id:
            milestone = order.milestone(
                parse_uuid(milestone_id, "milestone", "INVALID_MILESTONE_ID")
            )
            if milestone is None:
                raise MilestoneNotFoundError()

        await self.ledger.mark_cancelled(db, order, milestone)
        await db.commit()

        params = {"orderId": str(order.id)}
        if milestone is not None:
            params["milestoneId"] = str(milestone.id)
        return f"{self.settings.frontend_url}/payment/cancelled?{urlencode(params)}"
