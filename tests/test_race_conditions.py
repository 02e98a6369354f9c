"""
Race condition tests for concurrent initiations and callbacks.

Each session gets its own connection to a file database so that writes from
one are invisible to the identity map of the other.
"""
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from service_payments.core.exceptions import ConcurrentUpdateError
from service_payments.core.ledger import OrderLedger, load_order
from service_payments.core.orders import OrderDraft, OrderService
from service_payments.core.reconciler import CallbackReconciler
from service_payments.database.models import Base, PaymentStatus, ServiceRequest


@pytest_asyncio.fixture
async def shared_sessions(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def shared_order(
    shared_sessions: async_sessionmaker[AsyncSession],
    order_service: OrderService,
    order_draft: Callable[..., OrderDraft],
) -> Dict[str, Any]:
    async with shared_sessions() as session:
        return await order_service.create_order(session, order_draft())


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_second_initiation_loses(
        self,
        shared_sessions: async_sessionmaker[AsyncSession],
        ledger: OrderLedger,
        shared_order: Dict[str, Any],
    ) -> None:
        """
        Two requests load the same order and both try to start a payment.

        Only the first commit wins; the other sees a version conflict.
        """
        async with shared_sessions() as first, shared_sessions() as second:
            order_a = await load_order(first, shared_order["id"])
            order_b = await load_order(second, shared_order["id"])
            assert order_a.version == order_b.version

            await ledger.mark_pending(first, order_a, None, Decimal("5000"), shared_order["id"], "AED")
            await first.commit()

            with pytest.raises(ConcurrentUpdateError):
                await ledger.mark_pending(
                    second, order_b, None, Decimal("5000"), shared_order["id"], "AED"
                )
            await second.rollback()

        async with shared_sessions() as check:
            order = await load_order(check, shared_order["id"])
            assert order.version == order_a.version

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_initiation_after_concurrent_success_is_refused(
        self,
        shared_sessions: async_sessionmaker[AsyncSession],
        ledger: OrderLedger,
        reconciler: CallbackReconciler,
        shared_order: Dict[str, Any],
        gateway_response: Callable[..., str],
    ) -> None:
        """A callback that lands between load and initiation must not be overwritten."""
        async with shared_sessions() as initiating:
            stale = await load_order(initiating, shared_order["id"])

            async with shared_sessions() as callback:
                outcome = await reconciler.reconcile(callback, gateway_response(shared_order["id"]))
            assert outcome.applied is True

            with pytest.raises(ConcurrentUpdateError):
                await ledger.mark_pending(
                    initiating, stale, None, Decimal("5000"), shared_order["id"], "AED"
                )
            await initiating.rollback()

        async with shared_sessions() as check:
            order = await load_order(check, shared_order["id"])
            assert order.payment_status == PaymentStatus.SUCCESS.value
            assert order.payment_details["transactionId"] == "310009876543"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_callback_retries_after_conflict(
        self,
        shared_sessions: async_sessionmaker[AsyncSession],
        reconciler: CallbackReconciler,
        shared_order: Dict[str, Any],
        gateway_response: Callable[..., str],
    ) -> None:
        """A callback holding a stale row reloads it and applies on the next attempt."""
        async with shared_sessions() as session:
            await load_order(session, shared_order["id"])

            async with shared_sessions() as other:
                await other.execute(
                    update(ServiceRequest)
                    .where(ServiceRequest.id == uuid.UUID(shared_order["id"]))
                    .values(version=ServiceRequest.version + 1)
                    .execution_options(synchronize_session=False)
                )
                await other.commit()

            outcome = await reconciler.reconcile(session, gateway_response(shared_order["id"]))

        assert outcome.applied is True
        assert outcome.payment_status == PaymentStatus.SUCCESS.value


    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_interleaved_duplicate_callbacks_apply_once(
        self,
        shared_sessions: async_sessionmaker[AsyncSession],
        reconciler: CallbackReconciler,
        shared_order: Dict[str, Any],
        gateway_response: Callable[..., str],
    ) -> None:
        """
        The gateway delivers the same Success twice; both requests read the
        order before either writes.

        Exactly one delivery changes the order; the other ends as a duplicate.
        """
        blob = gateway_response(shared_order["id"])

        async with shared_sessions() as first, shared_sessions() as second:
            await load_order(first, shared_order["id"])
            await load_order(second, shared_order["id"])

            outcomes = [
                await reconciler.reconcile(first, blob),
                await reconciler.reconcile(second, blob),
            ]

        assert [o.applied for o in outcomes] == [True, False]
        assert outcomes[1].duplicate is True
        assert all(o.payment_status == PaymentStatus.SUCCESS.value for o in outcomes)

        async with shared_sessions() as check:
            order = await load_order(check, shared_order["id"])
            assert order.payment_status == PaymentStatus.SUCCESS.value
