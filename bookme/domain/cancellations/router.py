"""Cancellation router - policy selection, refund preview and cancellation endpoints"""

import logging
import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...exceptions import ValidationFailed
from ...models import User
from ...services.dispatcher import EventDispatcher, get_dispatcher
from ...services.eip712_signer import get_signer
from ..bookings.schemas import serialize_booking
from .schemas import (
    AuthorizeCancellationRequest,
    CancelWithPolicyRequest,
    LegacyCancelRequest,
    RefundBreakdownRequest,
)
from .service import CancellationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Cancellations"])


def get_cancellation_service(
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    signer=Depends(get_signer),
) -> CancellationService:
    """Dependency injection for CancellationService"""
    return CancellationService(db, dispatcher, signer=signer)


def _render(result: dict) -> dict:
    if "booking" in result:
        return {**result, "booking": serialize_booking(result["booking"])}
    return result


# ============================================================================
# POLICY SELECTION
# ============================================================================


@router.get("/{booking_id}/cancellation-policies")
async def get_cancellation_policies(
    booking_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    service: CancellationService = Depends(get_cancellation_service),
):
    """Policies the current user may cancel this booking under"""
    policies = service.get_applicable_cancellation_policies(booking_id, current_user.id)
    return {"policies": policies}


@router.post("/{booking_id}/refund-breakdown")
async def get_refund_breakdown(
    booking_id: uuid.UUID,
    data: RefundBreakdownRequest,
    current_user: User = Depends(get_current_user),
    service: CancellationService = Depends(get_cancellation_service),
):
    """Preview how the booking amount would be split under a policy"""
    if not service.validate_policy_selection(booking_id, current_user.id, data.policy_id):
        raise ValidationFailed("Selected cancellation policy is not applicable to this booking")
    return service.calculate_refund_breakdown(booking_id, data.policy_id)


# ============================================================================
# CANCELLATION
# ============================================================================


@router.post("/{booking_id}/cancel-with-policy")
async def cancel_with_policy(
    booking_id: uuid.UUID,
    data: CancelWithPolicyRequest,
    current_user: User = Depends(get_current_user),
    service: CancellationService = Depends(get_cancellation_service),
):
    """Cancel under an explicitly acknowledged policy"""
    if not data.acknowledge_policy:
        raise ValidationFailed("Must acknowledge cancellation policy")
    result = service.process_cancellation(booking_id, current_user.id, data.policy_id, data.explanation)
    return _render(result)


@router.post("/{booking_id}/authorize-cancellation")
async def authorize_cancellation(
    booking_id: uuid.UUID,
    data: AuthorizeCancellationRequest,
    current_user: User = Depends(get_current_user),
    service: CancellationService = Depends(get_cancellation_service),
):
    """Signed CancellationAuthorization for a booking paid into escrow"""
    policy_id = data.policy_id
    if policy_id is None:
        policies = service.get_applicable_cancellation_policies(booking_id, current_user.id)
        if not policies:
            raise ValidationFailed("Selected cancellation policy is not applicable to this booking")
        policy_id = uuid.UUID(policies[0]["id"])
    return service.authorize_cancellation(booking_id, current_user.id, policy_id, data.explanation)


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: uuid.UUID,
    data: LegacyCancelRequest,
    current_user: User = Depends(get_current_user),
    service: CancellationService = Depends(get_cancellation_service),
):
    """Cancel without picking a policy"""
    result = service.cancel_booking(booking_id, current_user.id, data.cancellation_reason)
    return _render(result)
