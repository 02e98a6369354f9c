"""
API routes for milestone management and milestone payment links.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from service_payments.core.initiator import PaymentInitiator
from service_payments.core.link_issuer import PaymentLinkIssuer
from service_payments.core.milestones import MilestoneDraft, MilestoneService
from service_payments.database.connection import get_db

from .dependencies import get_initiator, get_issuer, get_milestone_service, require_admin
from .responses import envelope
from .schemas import MilestoneLinkRequest, MilestonesCreate, MilestoneUpdate

milestone_admin_router = APIRouter(
    prefix="/api/service-requests/{service_request_id}/milestones",
    tags=["milestones"],
    dependencies=[Depends(require_admin)],
)
milestone_public_router = APIRouter(prefix="/api/milestones", tags=["milestones"])


@milestone_admin_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create milestones",
    description="Replace the milestones of a service request and switch it to milestone payment",
)
async def create_milestones(
    service_request_id: str,
    body: MilestonesCreate,
    db: AsyncSession = Depends(get_db),
    service: MilestoneService = Depends(get_milestone_service),
) -> Dict[str, Any]:
    drafts = [
        MilestoneDraft(
            name=item.name,
            amount=item.amount,
            percentage=item.percentage,
            order=item.order,
            description=item.description,
            due_date=item.due_date,
            is_required=item.is_required,
        )
        for item in body.milestones
    ]
    content = await service.create_milestones(
        db, service_request_id, drafts, body.require_sequential_payment
    )
    return envelope(content, "Milestones created")


@milestone_admin_router.get("", summary="List milestones")
async def list_milestones(
    service_request_id: str,
    db: AsyncSession = Depends(get_db),
    service: MilestoneService = Depends(get_milestone_service),
) -> Dict[str, Any]:
    return envelope(await service.list_milestones(db, service_request_id))


@milestone_admin_router.put("/{milestone_id}", summary="Update a milestone")
async def update_milestone(
    service_request_id: str,
    milestone_id: str,
    body: MilestoneUpdate,
    db: AsyncSession = Depends(get_db),
    service: MilestoneService = Depends(get_milestone_service),
) -> Dict[str, Any]:
    content = await service.update_milestone(db, service_request_id, milestone_id, body.changes())
    return envelope(content, "Milestone updated")


@milestone_admin_router.delete("/{milestone_id}", summary="Delete a milestone")
async def delete_milestone(
    service_request_id: str,
    milestone_id: str,
    db: AsyncSession = Depends(get_db),
    service: MilestoneService = Depends(get_milestone_service),
) -> Dict[str, Any]:
    content = await service.delete_milestone(db, service_request_id, milestone_id)
    return envelope(content, "Milestone deleted")


@milestone_admin_router.post(
    "/{milestone_id}/payment-link",
    summary="Generate a milestone payment link",
    description="Issue a payment link for one milestone; earlier milestones must be paid first",
)
async def generate_milestone_link(
    service_request_id: str,
    milestone_id: str,
    body: Optional[MilestoneLinkRequest] = None,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    body = body or MilestoneLinkRequest()
    content = await issuer.generate_milestone_link(
        db, service_request_id, milestone_id, body.expiry_hours, body.admin_id or admin
    )
    return envelope(content, "Milestone payment link generated")


@milestone_public_router.get(
    "/payment-link/{token}",
    summary="Milestone payment link details",
)
async def milestone_link_details(
    token: str,
    db: AsyncSession = Depends(get_db),
    issuer: PaymentLinkIssuer = Depends(get_issuer),
) -> Dict[str, Any]:
    return envelope(await issuer.milestone_link_details(db, token))


@milestone_public_router.post(
    "/payment-link/{token}/initiate",
    summary="Initiate a milestone payment",
)
async def initiate_milestone_payment(
    token: str,
    db: AsyncSession = Depends(get_db),
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    content = await initiator.initiate_by_token(db, token, milestone_link=True)
    return envelope(content, "Milestone payment initiated")
