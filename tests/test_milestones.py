"""
Unit tests for milestone management.
"""
from decimal import Decimal
from typing import Any, Dict

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.core.exceptions import (
    AlreadyPaidError,
    MilestoneNotFoundError,
    PaymentStateError,
    PaymentValidationError,
)
from service_payments.core.initiator import PaymentInitiator
from service_payments.core.ledger import load_order
from service_payments.core.link_issuer import PaymentLinkIssuer
from service_payments.core.milestones import MilestoneDraft, MilestoneService
from service_payments.database.models import CompletionStatus, PaymentStatus, PaymentType


class TestCreateMilestones:
    """Test suite for MilestoneService.create_milestones."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_switches_order_to_milestone_payment(
        self, test_db: AsyncSession, milestone_order: Dict[str, Any]
    ) -> None:
        assert milestone_order["paymentType"] == PaymentType.MILESTONE.value
        assert milestone_order["requireSequentialPayment"] is True
        assert [m["order"] for m in milestone_order["milestones"]] == [1, 2]

        order = await load_order(test_db, milestone_order["serviceRequestId"])
        assert order.payment_type == PaymentType.MILESTONE.value
        assert all(m.payment_status == PaymentStatus.PENDING.value for m in order.milestones)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fixed_amounts(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        online_order: Dict[str, Any],
    ) -> None:
        content = await milestone_service.create_milestones(
            test_db,
            online_order["id"],
            [
                MilestoneDraft(name="Inspection", amount=Decimal("1000"), order=2),
                MilestoneDraft(name="Parts", amount=Decimal("2500"), order=1),
            ],
            require_sequential_payment=False,
        )

        assert [m["name"] for m in content["milestones"]] == ["Parts", "Inspection"]
        assert content["milestones"][0]["percentage"] == 50.0
        assert content["requireSequentialPayment"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_total_cannot_exceed_price(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        online_order: Dict[str, Any],
    ) -> None:
        with pytest.raises(PaymentValidationError) as exc_info:
            await milestone_service.create_milestones(
                test_db,
                online_order["id"],
                [
                    MilestoneDraft(name="A", percentage=Decimal("60")),
                    MilestoneDraft(name="B", percentage=Decimal("50")),
                ],
            )
        assert exc_info.value.error_code == "MILESTONE_AMOUNT_EXCEEDS_TOTAL"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "drafts",
        [
            [],
            [MilestoneDraft(name="No amount")],
            [MilestoneDraft(name="A", amount=Decimal("1"), order=1), MilestoneDraft(name="B", amount=Decimal("1"), order=1)],
        ],
    )
    async def test_invalid_drafts(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        online_order: Dict[str, Any],
        drafts: list,
    ) -> None:
        with pytest.raises(PaymentValidationError) as exc_info:
            await milestone_service.create_milestones(test_db, online_order["id"], drafts)
        assert exc_info.value.error_code == "INVALID_MILESTONES"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replacing_after_payment_is_locked(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        milestone_order: Dict[str, Any],
    ) -> None:
        order = await load_order(test_db, milestone_order["serviceRequestId"])
        order.milestones[0].payment_status = PaymentStatus.SUCCESS.value
        await test_db.commit()

        with pytest.raises(AlreadyPaidError) as exc_info:
            await milestone_service.create_milestones(
                test_db, str(order.id), [MilestoneDraft(name="All", percentage=Decimal("100"))]
            )
        assert exc_info.value.error_code == "MILESTONES_LOCKED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replacing_during_gateway_payment_is_refused(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        initiator: PaymentInitiator,
        milestone_order: Dict[str, Any],
    ) -> None:
        order_id = milestone_order["serviceRequestId"]
        await initiator.initiate(test_db, order_id, milestone_order["milestones"][0]["id"])

        with pytest.raises(PaymentStateError) as exc_info:
            await milestone_service.create_milestones(
                test_db, order_id, [MilestoneDraft(name="All", percentage=Decimal("100"))]
            )
        assert exc_info.value.error_code == "MILESTONE_PAYMENT_IN_PROGRESS"

        listing = await milestone_service.list_milestones(test_db, order_id)
        assert [m["name"] for m in listing["milestones"]] == ["Deposit", "Completion"]


class TestUpdateAndDelete:
    """Test suite for milestone updates and deletion."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completing_stamps_completed_at(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        milestone_order: Dict[str, Any],
    ) -> None:
        deposit = milestone_order["milestones"][0]

        content = await milestone_service.update_milestone(
            test_db,
            milestone_order["serviceRequestId"],
            deposit["id"],
            {"completion_status": CompletionStatus.COMPLETED.value, "description": "Paid up front"},
        )

        milestone = content["milestone"]
        assert milestone["completionStatus"] == "Completed"
        assert milestone["completedAt"] is not None
        assert milestone["description"] == "Paid up front"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_fields_are_not_editable(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        milestone_order: Dict[str, Any],
    ) -> None:
        deposit = milestone_order["milestones"][0]

        content = await milestone_service.update_milestone(
            test_db,
            milestone_order["serviceRequestId"],
            deposit["id"],
            {"payment_status": PaymentStatus.SUCCESS.value, "amount": Decimal("1")},
        )

        assert content["milestone"]["paymentStatus"] == PaymentStatus.PENDING.value
        assert content["milestone"]["amount"] == 1500.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_unpaid_milestone_with_link(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        issuer: PaymentLinkIssuer,
        milestone_order: Dict[str, Any],
    ) -> None:
        order_id = milestone_order["serviceRequestId"]
        deposit = milestone_order["milestones"][0]
        await issuer.generate_milestone_link(test_db, order_id, deposit["id"])

        content = await milestone_service.delete_milestone(test_db, order_id, deposit["id"])

        assert content["deletedMilestoneId"] == deposit["id"]
        listing = await milestone_service.list_milestones(test_db, order_id)
        assert [m["name"] for m in listing["milestones"]] == ["Completion"]
        order = await load_order(test_db, order_id, refresh=True)
        assert order.payment_links == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_paid_milestone_refused(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        milestone_order: Dict[str, Any],
    ) -> None:
        order = await load_order(test_db, milestone_order["serviceRequestId"])
        order.milestones[0].payment_status = PaymentStatus.SUCCESS.value
        await test_db.commit()

        with pytest.raises(AlreadyPaidError) as exc_info:
            await milestone_service.delete_milestone(
                test_db, str(order.id), str(order.milestones[0].id)
            )
        assert exc_info.value.error_code == "MILESTONE_ALREADY_PAID"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_milestone(
        self,
        test_db: AsyncSession,
        milestone_service: MilestoneService,
        milestone_order: Dict[str, Any],
    ) -> None:
        with pytest.raises(MilestoneNotFoundError):
            await milestone_service.delete_milestone(
                test_db,
                milestone_order["serviceRequestId"],
                "00000000-0000-0000-0000-000000000000",
            )
