"""Booking router - FastAPI endpoints for the booking lifecycle"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user, verify_internal_api_key
from ...database import get_db
from ...models import User
from ...services.blockchain_service import BlockchainService, get_blockchain_service
from ...services.dispatcher import EventDispatcher, get_dispatcher
from ...services.eip712_signer import get_signer
from .schemas import (
    BackendCompletionRequest,
    BookingCreate,
    BookingUpdate,
    CompleteServiceRequest,
    RejectRequest,
    serialize_booking,
)
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def get_booking_service(
    db: Session = Depends(get_db),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    signer=Depends(get_signer),
    blockchain: BlockchainService = Depends(get_blockchain_service),
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, dispatcher, signer=signer, blockchain=blockchain)


def _render(result: dict) -> dict:
    if result.get("booking") is not None:
        return {**result, "booking": serialize_booking(result["booking"])}
    return result


# ============================================================================
# CREATE & READ
# ============================================================================


@router.post("")
async def create_booking(
    data: BookingCreate,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Create a booking and return the signed payment authorization"""
    return _render(service.create_booking(data, current_user.id))


@router.get("/user/{user_id}")
async def list_user_bookings(
    user_id: uuid.UUID,
    role: Optional[str] = Query(None, pattern="^(customer|provider)$"),
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Bookings where the user is customer or provider"""
    bookings = service.list_user_bookings(user_id, current_user.id, role, status, limit, offset)
    return {"bookings": [serialize_booking(b) for b in bookings], "limit": limit, "offset": offset}


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return {"booking": serialize_booking(service.get_booking(booking_id, current_user.id))}


@router.get("/{booking_id}/blockchain-status")
async def get_blockchain_status(
    booking_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """On-chain transaction status and the logged contract events"""
    return await service.blockchain_status(booking_id, current_user.id)


# ============================================================================
# PAYMENT
# ============================================================================


@router.post("/{booking_id}/authorize-payment")
async def authorize_payment(
    booking_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Reissue a payment authorization (the previous one expired or was never issued)"""
    return _render(service.authorize_payment(booking_id, current_user.id))


# ============================================================================
# TRANSITIONS
# ============================================================================


@router.patch("/{booking_id}")
async def update_booking(
    booking_id: uuid.UUID,
    data: BookingUpdate,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Status and notes update, checked against the booking state machine"""
    return _render(await service.update_booking(booking_id, current_user.id, data))


@router.post("/{booking_id}/reject")
async def reject_booking(
    booking_id: uuid.UUID,
    data: RejectRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.reject_booking(booking_id, current_user.id, data.reason)
    return {"status": booking.status, "booking": serialize_booking(booking)}


@router.post("/{booking_id}/complete-service")
async def complete_service(
    booking_id: uuid.UUID,
    data: CompleteServiceRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Customer marks the service complete"""
    return _render(await service.complete_service(booking_id, current_user.id, data.completion_notes))


@router.post("/{booking_id}/complete-service-backend", dependencies=[Depends(verify_internal_api_key)])
async def complete_service_backend(
    booking_id: uuid.UUID,
    data: BackendCompletionRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Backend completion after the service window, subject to the session gate"""
    return _render(await service.complete_service_backend(booking_id, data.reason))
