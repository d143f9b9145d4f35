"""Booking repository - Database operations for bookings"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ...exceptions import NonceReuseError
from ...models import (
    ACTIVE_BOOKING_STATUSES,
    BlockchainEvent,
    Booking,
    Service,
    SignatureNonce,
)
from ...utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

# No booking is longer than this; bounds the coarse overlap query
MAX_BOOKING_SPAN = timedelta(hours=24)


@dataclass
class SlotReservation:
    """Outcome of the slot conflict guard"""

    conflict: bool
    booking: Optional[Booking] = None
    conflicting_bookings: list[Booking] = field(default_factory=list)


def overlaps(start_a: datetime, minutes_a: int, start_b: datetime, minutes_b: int) -> bool:
    """Half-open interval overlap: [a, a+da) intersects [b, b+db)"""
    start_a, start_b = ensure_utc(start_a), ensure_utc(start_b)
    end_a = start_a + timedelta(minutes=minutes_a)
    end_b = start_b + timedelta(minutes=minutes_b)
    return start_a < end_b and start_b < end_a


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def create_booking_atomic(
        db: Session,
        service_id: uuid.UUID,
        customer_id: uuid.UUID,
        provider_id: uuid.UUID,
        scheduled_at: datetime,
        duration_minutes: int,
        total_price,
        service_fee=0,
        customer_notes: Optional[str] = None,
        location: Optional[str] = None,
        is_online: bool = False,
        **extra,
    ) -> SlotReservation:
        """
        Lock, check and insert in a single transaction.

        The service row is locked first so concurrent creators for the same
        service queue behind each other; the overlapping active bookings are
        then locked and re-checked. Either a conflict is reported and nothing
        is written, or the new row is committed in status ``pending``.
        """
        scheduled_at = ensure_utc(scheduled_at)
        window_end = scheduled_at + timedelta(minutes=duration_minutes)

        try:
            db.query(Service).filter(Service.id == service_id).with_for_update().first()

            candidates = (
                db.query(Booking)
                .filter(
                    Booking.service_id == service_id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                    Booking.scheduled_at < window_end,
                    Booking.scheduled_at > scheduled_at - MAX_BOOKING_SPAN,
                )
                .with_for_update()
                .all()
            )
            conflicting = [
                b
                for b in candidates
                if overlaps(b.scheduled_at, b.duration_minutes, scheduled_at, duration_minutes)
            ]

            if conflicting:
                db.rollback()
                logger.warning(
                    f"⚠️ Slot conflict on service {service_id} at {scheduled_at.isoformat()}: "
                    f"{[str(b.id) for b in conflicting]}"
                )
                return SlotReservation(conflict=True, conflicting_bookings=conflicting)

            booking = Booking(
                service_id=service_id,
                customer_id=customer_id,
                provider_id=provider_id,
                scheduled_at=scheduled_at,
                duration_minutes=duration_minutes,
                total_price=total_price,
                service_fee=service_fee,
                customer_notes=customer_notes,
                location=location,
                is_online=is_online,
                status="pending",
                **extra,
            )
            db.add(booking)
            db.commit()
            db.refresh(booking)
            logger.info(f"✅ Booking {booking.id} created for service {service_id}")
            return SlotReservation(conflict=False, booking=booking)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Atomic booking creation failed for service {service_id}: {e}")
            raise

    @staticmethod
    def record_nonce(db: Session, nonce: int, booking_id: uuid.UUID, signature_type: str) -> None:
        """Insert a signature nonce. Raises NonceReuseError when it already exists."""
        try:
            with db.begin_nested():
                db.add(SignatureNonce(nonce=str(nonce), booking_id=booking_id, signature_type=signature_type))
                db.flush()
        except IntegrityError as e:
            raise NonceReuseError(f"Nonce {nonce} already used") from e
        db.commit()

    @staticmethod
    def nonce_exists(db: Session, nonce: int) -> bool:
        return db.query(SignatureNonce).filter(SignatureNonce.nonce == str(nonce)).first() is not None

    @staticmethod
    def get_nonces(db: Session, booking_id: uuid.UUID) -> list[SignatureNonce]:
        return (
            db.query(SignatureNonce)
            .filter(SignatureNonce.booking_id == booking_id)
            .order_by(SignatureNonce.id)
            .all()
        )

    @staticmethod
    def get_booking(db: Session, booking_id: uuid.UUID, lock: bool = False) -> Optional[Booking]:
        query = db.query(Booking).filter(Booking.id == booking_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def get_booking_with_relations(db: Session, booking_id: uuid.UUID) -> Optional[Booking]:
        return (
            db.query(Booking)
            .options(
                joinedload(Booking.service),
                joinedload(Booking.customer),
                joinedload(Booking.provider),
            )
            .filter(Booking.id == booking_id)
            .first()
        )

    @staticmethod
    def find_by_chain_id(db: Session, chain_booking_id: str) -> Optional[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.blockchain_booking_id == chain_booking_id.lower())
            .first()
        )

    @staticmethod
    def list_for_user(
        db: Session,
        user_id: uuid.UUID,
        role: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Booking]:
        """Bookings where the user is customer and/or provider, newest slot first"""
        query = db.query(Booking).options(joinedload(Booking.service))

        if role == "customer":
            query = query.filter(Booking.customer_id == user_id)
        elif role == "provider":
            query = query.filter(Booking.provider_id == user_id)
        else:
            query = query.filter(or_(Booking.customer_id == user_id, Booking.provider_id == user_id))

        if status:
            query = query.filter(Booking.status == status)

        return query.order_by(Booking.scheduled_at.desc()).offset(offset).limit(limit).all()

    @staticmethod
    def list_active_for_service(
        db: Session, service_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Booking]:
        """Active bookings touching [start, end) - used by the availability oracle"""
        return (
            db.query(Booking)
            .filter(
                Booking.service_id == service_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                Booking.scheduled_at < end,
                Booking.scheduled_at > start - MAX_BOOKING_SPAN,
            )
            .all()
        )

    @staticmethod
    def update_booking(db: Session, booking: Booking, **updates) -> Booking:
        for key, value in updates.items():
            if hasattr(booking, key):
                setattr(booking, key, value)
        db.commit()
        db.refresh(booking)
        return booking

    @staticmethod
    def delete_booking(db: Session, booking: Booking) -> None:
        db.query(SignatureNonce).filter(SignatureNonce.booking_id == booking.id).delete()
        db.delete(booking)
        db.commit()

    @staticmethod
    def log_blockchain_event(
        db: Session,
        booking_id: Optional[uuid.UUID],
        event_type: str,
        transaction_hash: Optional[str] = None,
        event_data: Optional[dict] = None,
        log_index: Optional[int] = None,
        processing_status: str = "LOGGED",
        error_message: Optional[str] = None,
    ) -> BlockchainEvent:
        event = BlockchainEvent(
            booking_id=booking_id,
            event_type=event_type,
            transaction_hash=transaction_hash,
            log_index=log_index,
            event_data=event_data,
            processing_status=processing_status,
            error_message=error_message,
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def get_blockchain_events(db: Session, booking_id: uuid.UUID) -> list[BlockchainEvent]:
        return (
            db.query(BlockchainEvent)
            .filter(BlockchainEvent.booking_id == booking_id)
            .order_by(BlockchainEvent.created_at.desc(), BlockchainEvent.id.desc())
            .all()
        )

    @staticmethod
    def event_already_processed(
        db: Session, transaction_hash: str, log_index: Optional[int], event_type: str
    ) -> bool:
        return (
            db.query(BlockchainEvent)
            .filter(
                BlockchainEvent.transaction_hash == transaction_hash,
                BlockchainEvent.log_index == log_index,
                BlockchainEvent.event_type == event_type,
                BlockchainEvent.processing_status == "PROCESSED",
            )
            .first()
            is not None
        )


class SessionNonceStore:
    """Adapts BookingRepository.record_nonce to the signer's nonce store interface"""

    def __init__(self, db: Session):
        self.db = db

    def record_nonce(self, nonce: int, booking_id: uuid.UUID, signature_type: str) -> None:
        BookingRepository.record_nonce(self.db, nonce, booking_id, signature_type)
