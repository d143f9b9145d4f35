"""Booking domain schemas - Pydantic models for validation"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator

from ...utils.sanitization import sanitize_string


class BookingCreate(BaseModel):
    """Schema for creating a booking"""

    service_id: Optional[uuid.UUID] = None
    scheduled_at: Optional[datetime] = None
    customer_notes: Optional[str] = None
    timezone: Optional[str] = None
    duration_minutes: Optional[int] = None
    price: Optional[Decimal] = None
    location: Optional[str] = None
    is_online: Optional[bool] = None
    use_points: bool = False

    @field_validator("customer_notes", "location")
    @classmethod
    def sanitize_text(cls, v):
        return sanitize_string(v, max_length=2000)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        if v is not None and (v <= 0 or v > 24 * 60):
            raise ValueError("duration_minutes must be between 1 and 1440")
        return v


class BookingUpdate(BaseModel):
    """Schema for PATCH /api/bookings/{id}"""

    status: Optional[str] = None
    customer_notes: Optional[str] = None
    provider_notes: Optional[str] = None
    location: Optional[str] = None
    meeting_link: Optional[str] = None
    completion_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @field_validator("customer_notes", "provider_notes", "location", "completion_notes", "cancellation_reason")
    @classmethod
    def sanitize_text(cls, v):
        return sanitize_string(v, max_length=2000)


class RejectRequest(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def sanitize_reason(cls, v):
        return sanitize_string(v, max_length=1000)


class CompleteServiceRequest(BaseModel):
    completion_notes: Optional[str] = None

    @field_validator("completion_notes")
    @classmethod
    def sanitize_notes(cls, v):
        return sanitize_string(v, max_length=2000)


class BackendCompletionRequest(BaseModel):
    reason: Optional[str] = "Automatic completion after service end"


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: uuid.UUID
    blockchain_booking_id: Optional[str] = None
    service_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    scheduled_at: datetime
    duration_minutes: int
    timezone: Optional[str] = None
    total_price: Decimal
    service_fee: Optional[Decimal] = None
    status: str
    customer_notes: Optional[str] = None
    provider_notes: Optional[str] = None
    location: Optional[str] = None
    is_online: bool = False
    meeting_link: Optional[str] = None
    meeting_platform: Optional[str] = None
    original_amount: Optional[Decimal] = None
    points_used: int = 0
    points_value: Optional[Decimal] = None
    usdc_paid: Optional[Decimal] = None
    blockchain_tx_hash: Optional[str] = None
    completion_tx_hash: Optional[str] = None
    cancellation_tx_hash: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[uuid.UUID] = None
    refund_amount: Optional[Decimal] = None
    provider_earnings: Optional[Decimal] = None
    platform_fee: Optional[Decimal] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    completion_notes: Optional[str] = None
    backend_completed: bool = False
    auto_complete_blocked: bool = False
    auto_complete_blocked_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


def serialize_booking(booking) -> dict:
    """JSON-safe dict for a Booking row"""
    return BookingResponse.model_validate(booking).model_dump(mode="json")
