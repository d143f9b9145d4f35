import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Statuses that hold a time slot
ACTIVE_BOOKING_STATUSES = ("pending", "pending_payment", "paid", "confirmed", "in_progress")
TERMINAL_BOOKING_STATUSES = ("completed", "cancelled", "rejected")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)  # uuid5 of the Privy DID
    privy_did = Column(String(255), unique=True, index=True, nullable=True)
    email = Column(String(255), index=True, nullable=True)
    display_name = Column(String(255), nullable=True)
    timezone = Column(String(64), default="UTC")
    wallet_address = Column(String(42), nullable=True)  # Embedded wallet
    smart_wallet_address = Column(String(42), nullable=True)  # Preferred when present
    referred_by = Column(Uuid, ForeignKey("users.id"), nullable=True)  # Inviter

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    inviter = relationship("User", remote_side=[id])

    @property
    def payout_address(self):
        return self.smart_wallet_address or self.wallet_address


class Service(Base):
    __tablename__ = "services"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    is_visible = Column(Boolean, default=True, nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)
    location = Column(String(500), nullable=True)
    meeting_platform = Column(String(32), nullable=True)  # google_meet, zoom
    # {"monday": {"start": "09:00", "end": "17:00"}, ...}; null means always bookable
    weekly_schedule = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    provider = relationship("User")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # keccak256 correlation key emitted by the escrow contract, 0x-prefixed hex
    blockchain_booking_id = Column(String(66), unique=True, index=True, nullable=True)

    service_id = Column(Uuid, ForeignKey("services.id"), nullable=False, index=True)
    customer_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)

    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    timezone = Column(String(64), default="UTC")
    total_price = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), default=0)
    status = Column(String(32), nullable=False, default="pending", index=True)

    customer_notes = Column(Text, nullable=True)
    provider_notes = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    is_online = Column(Boolean, default=False, nullable=False)
    meeting_link = Column(String(500), nullable=True)
    meeting_id = Column(String(255), nullable=True)
    meeting_platform = Column(String(32), nullable=True)

    # Points usage
    original_amount = Column(Numeric(10, 2), nullable=True)  # Price before points
    points_used = Column(Integer, default=0, nullable=False)
    points_value = Column(Numeric(10, 2), default=0, nullable=False)
    usdc_paid = Column(Numeric(10, 2), nullable=True)  # Amount sent to escrow

    # Chain state, written by the event reconciler
    blockchain_tx_hash = Column(String(66), nullable=True)
    blockchain_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    blockchain_data = Column(JSON, nullable=True)
    completion_tx_hash = Column(String(66), nullable=True)
    cancellation_tx_hash = Column(String(66), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(Uuid, nullable=True)
    cancellation_policy_id = Column(Uuid, ForeignKey("cancellation_policies.id"), nullable=True)
    cancellation_explanation = Column(Text, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    provider_earnings = Column(Numeric(10, 2), nullable=True)
    platform_fee = Column(Numeric(10, 2), nullable=True)

    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    completion_notes = Column(Text, nullable=True)
    backend_completed = Column(Boolean, default=False, nullable=False)
    backend_completion_reason = Column(Text, nullable=True)
    auto_complete_blocked = Column(Boolean, default=False, nullable=False)
    auto_complete_blocked_reason = Column(Text, nullable=True)

    reminder_1h_sent = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    service = relationship("Service")
    customer = relationship("User", foreign_keys=[customer_id])
    provider = relationship("User", foreign_keys=[provider_id])

    @property
    def is_chain_settled(self) -> bool:
        """Whether the escrow contract holds funds for this booking"""
        return bool(self.blockchain_booking_id and self.blockchain_tx_hash)


class SignatureNonce(Base):
    __tablename__ = "signature_nonces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    nonce = Column(String(78), unique=True, nullable=False)  # uint256 as decimal string
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=False, index=True)
    signature_type = Column(String(64), nullable=False)  # booking_authorization, cancellation_authorization
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BlockchainEvent(Base):
    __tablename__ = "blockchain_events"
    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", "event_type", name="uq_blockchain_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=True, index=True)
    event_type = Column(String(64), nullable=False)
    transaction_hash = Column(String(66), nullable=True)
    log_index = Column(Integer, nullable=True)
    event_data = Column(JSON, nullable=True)
    processing_status = Column(String(16), default="PROCESSED", nullable=False)  # PROCESSED, FAILED, LOGGED
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CancellationPolicy(Base):
    __tablename__ = "cancellation_policies"
    __table_args__ = (
        CheckConstraint(
            "customer_refund_percentage + provider_earnings_percentage + platform_fee_percentage = 100",
            name="ck_policy_percentages_sum",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    reason_key = Column(String(64), unique=True, nullable=False)
    reason_title = Column(String(255), nullable=False)
    reason_description = Column(Text, nullable=True)
    customer_refund_percentage = Column(Numeric(5, 2), nullable=False)
    provider_earnings_percentage = Column(Numeric(5, 2), nullable=False)
    platform_fee_percentage = Column(Numeric(5, 2), nullable=False)
    requires_explanation = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    conditions = relationship(
        "CancellationPolicyCondition", back_populates="policy", cascade="all, delete-orphan"
    )


class CancellationPolicyCondition(Base):
    __tablename__ = "cancellation_policy_conditions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    policy_id = Column(Uuid, ForeignKey("cancellation_policies.id"), nullable=False, index=True)
    # booking_status, min_time_before_start, max_time_before_start, time_before_start
    condition_type = Column(String(64), nullable=False)
    condition_value = Column(String(64), nullable=False)  # Minutes for the time-based types

    policy = relationship("CancellationPolicy", back_populates="conditions")


class UserPoints(Base):
    __tablename__ = "user_points"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_points_balance_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_user_points_reserved_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, ForeignKey("users.id"), unique=True, nullable=False)
    balance = Column(Integer, default=0, nullable=False)  # 100 points = $1
    reserved = Column(Integer, default=0, nullable=False)  # Held for unpaid bookings
    total_earned = Column(Integer, default=0, nullable=False)
    total_spent = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class PointTransaction(Base):
    __tablename__ = "point_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    # earn, reserve, reserve_released, spend, spend_confirmed, refund
    type = Column(String(32), nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    reference_id = Column(String(255), nullable=True, index=True)  # Booking id
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MeetingIntegration(Base):
    __tablename__ = "meeting_integrations"
    __table_args__ = (UniqueConstraint("user_id", "platform", name="uq_meeting_integration_platform"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String(32), nullable=False)  # google_meet, zoom

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    platform_email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User")


class BookingSessionData(Base):
    __tablename__ = "booking_session_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), unique=True, nullable=False)
    provider_total_duration = Column(Integer, default=0)  # Seconds
    customer_total_duration = Column(Integer, default=0)  # Seconds
    provider_sessions = Column(JSON, nullable=True)
    customer_sessions = Column(JSON, nullable=True)
    last_checked_at = Column(DateTime(timezone=True), server_default=func.now())
