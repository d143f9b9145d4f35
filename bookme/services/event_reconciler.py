"""
Blockchain Event Reconciler
Applies escrow contract events to booking rows. This is the only writer of the
paid / completed / cancelled states for bookings settled on chain.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..domain.bookings.repository import BookingRepository
from ..domain.bookings.state_machine import BookingIdentity, is_terminal
from ..exceptions import ChainIdMismatchError
from ..models import BlockchainEvent, Booking, CancellationPolicy
from ..utils.money import from_usdc_units, round_cents
from ..utils.time_utils import utcnow
from .blockchain_service import BOOKING_CANCELLED_EVENT, BOOKING_PAID_EVENT, SERVICE_COMPLETED_EVENT
from .dispatcher import EventDispatcher
from .points_service import PointsService

logger = logging.getLogger(__name__)


class BookingNotFoundForEvent(LookupError):
    pass


class EventReconciler:
    def __init__(self, db: Session, dispatcher: EventDispatcher, points: Optional[PointsService] = None):
        self.db = db
        self.dispatcher = dispatcher
        self.points = points or PointsService(db)
        self.repo = BookingRepository()

    def _record(self, booking_id, event: dict, status: str, error: Optional[str] = None) -> None:
        try:
            self.repo.log_blockchain_event(
                self.db,
                booking_id,
                event["type"],
                transaction_hash=event.get("transactionHash"),
                event_data=event,
                log_index=event.get("logIndex"),
                processing_status=status,
                error_message=error,
            )
        except IntegrityError:
            # Same (tx, log index, type) seen before, e.g. a retry after FAILED
            self.db.rollback()
            existing = (
                self.db.query(BlockchainEvent)
                .filter(
                    BlockchainEvent.transaction_hash == event.get("transactionHash"),
                    BlockchainEvent.log_index == event.get("logIndex"),
                    BlockchainEvent.event_type == event["type"],
                )
                .first()
            )
            if existing is not None:
                existing.processing_status = status
                existing.error_message = error
                self.db.commit()
            logger.info(f"ℹ️ Event {event['type']} {event.get('transactionHash')} already recorded, now {status}")

    def _resolve(self, event: dict, expected_booking_id: Optional[uuid.UUID]) -> Booking:
        chain_id = event["bookingId"].lower()

        if expected_booking_id is not None:
            booking = self.repo.get_booking(self.db, expected_booking_id)
            if not booking:
                raise BookingNotFoundForEvent(f"Booking not found: {expected_booking_id}")
            if not BookingIdentity.of(booking).matches(chain_id):
                raise ChainIdMismatchError(booking.id, booking.blockchain_booking_id, chain_id)
            return booking

        booking = self.repo.find_by_chain_id(self.db, chain_id)
        if not booking:
            raise BookingNotFoundForEvent(f"Booking not found: {chain_id}")
        return booking

    def reconcile(self, event: dict, expected_booking_id: Optional[uuid.UUID] = None) -> Optional[Booking]:
        """
        Apply one normalized contract event. ``expected_booking_id`` pins the
        row the caller believes the event belongs to; a different stored chain
        id is treated as an integrity failure.
        """
        event_type = event["type"]
        if self.repo.event_already_processed(
            self.db, event.get("transactionHash"), event.get("logIndex"), event_type
        ):
            logger.info(f"ℹ️ Skipping already processed {event_type} {event.get('transactionHash')}")
            return None

        try:
            booking = self._resolve(event, expected_booking_id)
        except ChainIdMismatchError as e:
            logger.critical(f"🚨 {e}")
            self.db.rollback()
            self._record(e.booking_id, event, "FAILED", str(e))
            raise
        except BookingNotFoundForEvent as e:
            logger.error(f"⚠️ {e}")
            self.db.rollback()
            self._record(None, event, "FAILED", str(e))
            raise

        handlers = {
            BOOKING_PAID_EVENT: self.handle_booking_paid,
            SERVICE_COMPLETED_EVENT: self.handle_service_completed,
            BOOKING_CANCELLED_EVENT: self.handle_booking_cancelled,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.warning(f"❓ Unknown event type: {event_type}")
            self._record(booking.id, event, "LOGGED")
            return booking

        try:
            handler(booking, event)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Failed to apply {event_type} to booking {booking.id}: {e}")
            self._record(booking.id, event, "FAILED", str(e))
            raise

        self._record(booking.id, event, "PROCESSED")
        return booking

    def handle_booking_paid(self, booking: Booking, event: dict) -> None:
        if booking.status not in ("pending", "pending_payment"):
            logger.info(f"ℹ️ Booking {booking.id} already {booking.status}, payment event is a replay")
            return

        booking.status = "paid"
        booking.blockchain_tx_hash = event.get("transactionHash")
        booking.blockchain_confirmed_at = utcnow()
        booking.blockchain_data = {
            key: event.get(key)
            for key in ("amount", "platformFeeRate", "inviterFeeRate", "customer", "provider", "inviter")
        }
        self.db.flush()

        if booking.points_used:
            # Same transaction as the status flip
            self.points.deduct_points(booking.customer_id, booking.id, commit=False)

        logger.info(f"💰 Booking {booking.id} paid on chain ({event.get('transactionHash')})")
        self.dispatcher.notify(booking.id, "booking_paid")

    def handle_service_completed(self, booking: Booking, event: dict) -> None:
        if is_terminal(booking.status):
            logger.info(f"ℹ️ Booking {booking.id} already {booking.status}, completion event ignored")
            return

        booking.status = "completed"
        booking.completed_at = utcnow()
        booking.completion_tx_hash = event.get("transactionHash")
        if event.get("providerAmount") is not None:
            booking.provider_earnings = round_cents(from_usdc_units(int(event["providerAmount"])))
        if event.get("platformFee") is not None:
            booking.platform_fee = round_cents(from_usdc_units(int(event["platformFee"])))

        logger.info(f"🎉 Service completed on chain for booking {booking.id}")
        self.dispatcher.notify(booking.id, "booking_completed")

    def handle_booking_cancelled(self, booking: Booking, event: dict) -> None:
        if is_terminal(booking.status):
            logger.info(f"ℹ️ Booking {booking.id} already {booking.status}, cancellation event ignored")
            return

        booking.status = "cancelled"
        booking.cancelled_at = utcnow()
        booking.cancellation_tx_hash = event.get("transactionHash")
        booking.cancellation_reason = event.get("reason") or booking.cancellation_reason
        for column, key in (
            ("refund_amount", "customerAmount"),
            ("provider_earnings", "providerAmount"),
            ("platform_fee", "platformAmount"),
        ):
            if event.get(key) is not None:
                setattr(booking, column, round_cents(from_usdc_units(int(event[key]))))
        self.db.flush()

        if booking.points_used:
            refund_percentage = 100
            if booking.cancellation_policy_id:
                policy = self.db.get(CancellationPolicy, booking.cancellation_policy_id)
                if policy:
                    refund_percentage = policy.customer_refund_percentage
            self.points.settle_cancellation(
                booking.customer_id, booking.id, booking.points_used, refund_percentage, commit=False
            )

        logger.info(f"❌ Booking {booking.id} cancelled on chain. Reason: {booking.cancellation_reason}")
        self.dispatcher.delete_meeting(booking.id)
        self.dispatcher.notify(booking.id, "booking_cancelled")
