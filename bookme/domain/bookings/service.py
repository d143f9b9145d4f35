"""Booking service - Business logic for the booking lifecycle"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import (
    CONTRACT_ADDRESS,
    PAYMENT_AUTH_EXPIRY_MINUTES,
    SESSION_DURATION_THRESHOLD,
    USDC_ADDRESS,
)
from ...exceptions import (
    ActorNotAllowed,
    BookingError,
    Forbidden,
    InsufficientPointsError,
    IntegrationFailure,
    NotFound,
    SlotConflict,
    ValidationFailed,
    WalletNotConfiguredError,
)
from ...models import Booking, Service, User
from ...services.availability_service import AvailabilityService
from ...services.blockchain_service import BlockchainService
from ...services.dispatcher import EventDispatcher
from ...services.eip712_signer import EIP712Signer, calculate_fees
from ...services.meeting_service import MeetingService, is_google_meet_link
from ...services.points_service import PointsService, PointsUsage
from ...services.session_tracker import SessionTracker
from ...utils.money import round_cents
from ...utils.time_utils import ensure_utc, utcnow
from .repository import BookingRepository, SessionNonceStore
from .schemas import BookingCreate, BookingUpdate
from .state_machine import CUSTOMER, PROVIDER, SYSTEM, actor_role_for, validate_transition

logger = logging.getLogger(__name__)

PAYMENT_ELIGIBLE_STATUSES = ("pending", "pending_payment")
AUTHORIZATION_ISSUED = "authorization_issued"
PAYMENT_REQUIRED_LATER = "payment_required_later"


def session_block_reason(provider_seconds: float, service_seconds: float, threshold: float) -> str:
    return (
        f"Provider session duration ({round(provider_seconds / 60)}m) is below "
        f"{round(threshold * 100)}% of the scheduled service duration ({round(service_seconds / 60)}m). "
        "Customer must complete manually."
    )


class BookingService:
    """Service layer for booking business logic"""

    def __init__(
        self,
        db: Session,
        dispatcher: EventDispatcher,
        signer: Optional[EIP712Signer] = None,
        points: Optional[PointsService] = None,
        meetings: Optional[MeetingService] = None,
        blockchain: Optional[BlockchainService] = None,
        session_tracker: Optional[SessionTracker] = None,
        availability: Optional[AvailabilityService] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.signer = signer
        self.points = points or PointsService(db)
        self.meetings = meetings or MeetingService(db)
        self.blockchain = blockchain
        self.session_tracker = session_tracker or SessionTracker(db)
        self.availability = availability or AvailabilityService(db)
        self.repo = BookingRepository()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_booking(self, booking_id: uuid.UUID) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        return booking

    def _get_participant_booking(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> tuple[Booking, str]:
        booking = self._get_booking(booking_id)
        role = actor_role_for(booking, user_id)
        if role is None:
            raise Forbidden("Access denied")
        return booking, role

    def get_booking(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> Booking:
        booking, _ = self._get_participant_booking(booking_id, user_id)
        return booking

    def list_user_bookings(
        self,
        user_id: uuid.UUID,
        current_user_id: uuid.UUID,
        role: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Booking]:
        if user_id != current_user_id:
            raise Forbidden("Access denied")
        return self.repo.list_for_user(self.db, user_id, role=role, status=status, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Creation and payment authorization
    # ------------------------------------------------------------------

    def _issue_payment_authorization(self, booking: Booking, customer: User, provider: User) -> dict:
        """
        Sign a BookingAuthorization and bind the booking to it.

        This is the only place blockchain_booking_id is written. The row moves to
        pending_payment in the same commit, before the signature leaves the server.
        """
        if self.signer is None:
            raise IntegrationFailure("Payment signer not configured")

        original = round_cents(booking.original_amount if booking.original_amount is not None else booking.total_price)
        points_value = round_cents(booking.points_value or 0)
        amount = original - points_value

        inviter = customer.inviter.payout_address if customer.referred_by and customer.inviter else None
        fees = calculate_fees(original, has_inviter=bool(inviter))

        signed = self.signer.sign_booking_authorization(
            booking_id=booking.id,
            customer=customer.payout_address,
            provider=provider.payout_address,
            inviter=inviter,
            amount=amount,
            original_amount=original,
            platform_fee_rate=fees.platform_fee_rate,
            inviter_fee_rate=fees.inviter_fee_rate,
            nonce_store=SessionNonceStore(self.db),
            expiry_minutes=PAYMENT_AUTH_EXPIRY_MINUTES,
        )

        if booking.status == "pending":
            validate_transition(booking.status, "pending_payment", SYSTEM)
        self.repo.update_booking(
            self.db,
            booking,
            blockchain_booking_id=signed.chain_booking_id,
            status="pending_payment",
            usdc_paid=amount,
            original_amount=original,
            service_fee=round_cents(fees.platform_amount),
        )
        logger.info(f"🔏 Payment authorization issued for booking {booking.id} ({signed.chain_booking_id})")

        payload = signed.to_dict()
        return {
            "authorization": payload["authorization"],
            "signature": payload["signature"],
            "nonce": payload["nonce"],
            "expiry": payload["expiry"],
            "blockchain_booking_id": signed.chain_booking_id,
            "domain": payload["domain"],
            "contract_address": CONTRACT_ADDRESS,
            "usdc_address": USDC_ADDRESS,
            "fees": fees.to_dict(),
        }

    def create_booking(self, data: BookingCreate, customer_id: uuid.UUID) -> dict:
        """
        Create a booking, reserve points when asked, then issue the payment
        authorization. A signer failure leaves the booking in place with
        payment_status=payment_required_later.
        """
        if not data.service_id or not data.scheduled_at:
            raise ValidationFailed("Service ID and scheduled time are required")

        service = (
            self.db.query(Service)
            .filter(Service.id == data.service_id, Service.is_visible.is_(True))
            .first()
        )
        if not service:
            raise NotFound("Service not found")
        if service.provider_id == customer_id:
            raise ValidationFailed("Cannot book your own service")

        customer = self.db.get(User, customer_id)
        if not customer:
            raise NotFound("Customer not found")
        provider = self.db.get(User, service.provider_id)
        if not provider:
            raise NotFound("Provider not found")

        scheduled_at = ensure_utc(data.scheduled_at)
        if scheduled_at <= utcnow():
            raise ValidationFailed("Cannot schedule bookings in the past")

        duration = data.duration_minutes or service.duration_minutes
        if not self.availability.within_service_hours(service, scheduled_at, duration, data.timezone or "UTC"):
            raise ValidationFailed("Requested time is outside service hours")

        price = round_cents(service.price)
        if data.price is not None and round_cents(data.price) != price:
            logger.warning(f"⚠️ Client price {data.price} ignored for service {service.id} (price {price})")

        usage: Optional[PointsUsage] = None
        if data.use_points:
            usage = self.points.calculate_points_usage(price, self.points.get_balance(customer_id))

        is_online = data.is_online if data.is_online is not None else service.is_online
        logger.info(f"📥 Creating booking for service {service.id} by customer {customer_id}")
        try:
            reservation = self.repo.create_booking_atomic(
                self.db,
                service_id=service.id,
                customer_id=customer_id,
                provider_id=service.provider_id,
                scheduled_at=scheduled_at,
                duration_minutes=duration,
                total_price=price,
                service_fee=Decimal("0"),
                customer_notes=data.customer_notes,
                location=data.location or service.location,
                is_online=is_online,
                timezone=data.timezone or "UTC",
                original_amount=price,
                points_used=usage.points_to_use if usage else 0,
                points_value=usage.points_value if usage else Decimal("0"),
            )
        except SQLAlchemyError:
            raise BookingError("Failed to create booking", status_code=500)

        if reservation.conflict:
            raise SlotConflict(
                [
                    {
                        "id": str(b.id),
                        "scheduled_at": ensure_utc(b.scheduled_at).isoformat(),
                        "duration_minutes": b.duration_minutes,
                    }
                    for b in reservation.conflicting_bookings
                ]
            )
        booking = reservation.booking

        if usage and usage.points_to_use > 0:
            try:
                self.points.reserve_points(customer_id, booking.id, usage.points_to_use)
            except InsufficientPointsError as e:
                logger.warning(f"⚠️ Points reservation failed for booking {booking.id}: {e}")
                self.repo.delete_booking(self.db, booking)
                raise ValidationFailed("Insufficient points balance")

        response = {
            "booking": booking,
            "points": usage.to_dict() if usage else None,
            "payment_status": AUTHORIZATION_ISSUED,
            "payment_error": None,
        }
        try:
            response.update(self._issue_payment_authorization(booking, customer, provider))
        except WalletNotConfiguredError as e:
            logger.warning(f"⚠️ Booking {booking.id} created without payment authorization: {e}")
            response.update(payment_status=PAYMENT_REQUIRED_LATER, payment_error=str(e))
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Payment authorization failed for booking {booking.id}: {e}")
            response.update(payment_status=PAYMENT_REQUIRED_LATER, payment_error=str(e) or type(e).__name__)

        self.db.refresh(booking)
        response["booking"] = booking
        self.dispatcher.notify(booking.id, "booking_created")
        return response

    def authorize_payment(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> dict:
        """Issue a fresh authorization for an unpaid booking (e.g. after expiry)"""
        booking = self._get_booking(booking_id)
        if booking.customer_id != user_id:
            raise Forbidden("Access denied")
        if booking.status not in PAYMENT_ELIGIBLE_STATUSES or booking.is_chain_settled:
            raise ValidationFailed("Booking not eligible for payment")

        customer = self.db.get(User, booking.customer_id)
        provider = self.db.get(User, booking.provider_id)
        try:
            payload = self._issue_payment_authorization(booking, customer, provider)
        except WalletNotConfiguredError as e:
            raise ValidationFailed(str(e))

        return {"booking": booking, "payment_status": AUTHORIZATION_ISSUED, **payload}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def ensure_meeting_link(self, booking: Booking) -> bool:
        if not booking.is_online or booking.meeting_link:
            return False
        try:
            link = await self.meetings.generate_meeting_link_for_booking(booking.id)
        except Exception as e:
            logger.error(f"❌ Meeting generation failed for booking {booking.id}: {e}")
            return False
        self.db.refresh(booking)
        if not link:
            logger.warning(f"⚠️ Booking {booking.id} has no meeting link; manual follow-up needed")
        return bool(link)

    async def update_booking(self, booking_id: uuid.UUID, user_id: uuid.UUID, data: BookingUpdate) -> dict:
        """Status and field updates from either participant, through the state machine"""
        booking, role = self._get_participant_booking(booking_id, user_id)

        if data.status == "cancelled":
            from ..cancellations.service import CancellationService

            cancellations = CancellationService(self.db, self.dispatcher, signer=self.signer, points=self.points)
            return cancellations.cancel_booking(booking.id, user_id, data.cancellation_reason)

        if data.status == "completed":
            return await self.complete_service(booking.id, user_id, data.completion_notes)

        updates = {}
        if data.status is not None:
            validate_transition(booking.status, data.status, role)
            updates["status"] = data.status

        if role == CUSTOMER and data.customer_notes is not None:
            updates["customer_notes"] = data.customer_notes
        if role == PROVIDER:
            for field in ("provider_notes", "location", "meeting_link"):
                value = getattr(data, field)
                if value is not None:
                    updates[field] = value

        if not updates:
            raise ValidationFailed("No valid fields to update")

        previous = booking.status
        booking = self.repo.update_booking(self.db, booking, **updates)
        logger.info(f"✅ Booking {booking.id} updated by {role}: {previous} -> {booking.status}")

        meeting_generated = False
        if data.status in ("confirmed", "in_progress"):
            meeting_generated = await self.ensure_meeting_link(booking)
        if data.status:
            self.dispatcher.notify(booking.id, f"booking_{data.status}")

        return {"status": booking.status, "booking": booking, "meeting_link_generated": meeting_generated}

    def reject_booking(self, booking_id: uuid.UUID, user_id: uuid.UUID, reason: Optional[str] = None) -> Booking:
        booking = self._get_booking(booking_id)
        if booking.provider_id != user_id:
            raise Forbidden("Only the provider can reject this booking")
        if booking.status != "confirmed":
            raise ValidationFailed("Can only reject confirmed bookings")

        booking = self.repo.update_booking(
            self.db,
            booking,
            status="rejected",
            rejection_reason=reason or "Rejected by provider",
            rejected_at=utcnow(),
        )
        logger.info(f"✅ Booking {booking.id} rejected by provider")

        if booking.blockchain_tx_hash:
            self.dispatcher.log_refund_event(
                booking.id,
                "rejection",
                {"amount": str(booking.usdc_paid or booking.total_price), "payment_hash": booking.blockchain_tx_hash},
            )
        if booking.points_used:
            try:
                self.points.settle_cancellation(booking.customer_id, booking.id, booking.points_used, 100)
            except Exception as e:
                logger.error(f"❌ Failed to return points for rejected booking {booking.id}: {e}")
        self.dispatcher.delete_meeting(booking.id)
        self.dispatcher.notify(booking.id, "booking_rejected", reason=booking.rejection_reason)
        return booking

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_service(self, booking_id: uuid.UUID, user_id: uuid.UUID, completion_notes: Optional[str] = None) -> dict:
        """
        Customer completion. Chain-paid bookings get the data for the on-chain
        completeService call and keep their status until the contract emits
        ServiceCompleted; other bookings are completed here.
        """
        booking = self._get_booking(booking_id)
        if booking.customer_id != user_id:
            raise ActorNotAllowed("Only customer can mark service as complete")
        if booking.status not in ("in_progress", "confirmed"):
            raise ValidationFailed("Service cannot be completed from current status")

        if booking.is_chain_settled:
            if completion_notes:
                self.repo.update_booking(self.db, booking, completion_notes=completion_notes)
            return {
                "status": "pending_confirmation",
                "booking_id": str(booking.id),
                "blockchain_booking_id": booking.blockchain_booking_id,
                "contract_address": CONTRACT_ADDRESS,
                "action": "completeService",
            }

        validate_transition(booking.status, "completed", CUSTOMER)
        booking = self.repo.update_booking(
            self.db, booking, status="completed", completed_at=utcnow(), completion_notes=completion_notes
        )
        logger.info(f"✅ Booking {booking.id} completed by customer")
        self.dispatcher.notify(booking.id, "booking_completed")
        return {"status": "completed", "booking": booking}

    async def _session_gate(self, booking: Booking) -> Optional[str]:
        """Reason to block backend completion, or None to proceed"""
        if not booking.is_online or not is_google_meet_link(booking.meeting_link):
            return None
        try:
            result = await self.session_tracker.check_google_meet_session_duration(booking.id)
        except Exception as e:
            logger.error(f"❌ Session duration check failed for booking {booking.id}: {e}")
            return f"Session duration check failed: {e}"

        if result.success and not result.provider_meets_threshold:
            return session_block_reason(
                result.provider_duration, result.service_duration, result.threshold or SESSION_DURATION_THRESHOLD
            )
        return None

    async def complete_service_backend(self, booking_id: uuid.UUID, reason: Optional[str] = None) -> dict:
        """
        System completion after the service window. Online Meet bookings must
        pass the session gate; chain-paid bookings are completed through the
        contract and confirmed by the reconciler.
        """
        booking = self._get_booking(booking_id)
        reason = reason or "Automatic completion after service end"
        allowed = ("in_progress", "confirmed") if booking.is_chain_settled else ("in_progress",)
        if booking.status not in allowed:
            raise ValidationFailed("Service cannot be completed from current status")

        block_reason = await self._session_gate(booking)
        if block_reason:
            booking = self.repo.update_booking(
                self.db, booking, auto_complete_blocked=True, auto_complete_blocked_reason=block_reason
            )
            logger.warning(f"⚠️ Auto-completion blocked for booking {booking.id}: {block_reason}")
            return {"status": "blocked", "blocked": True, "reason": block_reason, "booking": booking}

        if not booking.is_chain_settled:
            booking = self.repo.update_booking(
                self.db,
                booking,
                status="completed",
                completed_at=utcnow(),
                backend_completed=True,
                backend_completion_reason=reason,
            )
            logger.info(f"✅ Booking {booking.id} completed by backend (no on-chain payment)")
            self.dispatcher.notify(booking.id, "booking_completed")
            return {"status": "completed", "booking": booking}

        if self.blockchain is None:
            raise IntegrationFailure("Blockchain service not configured")
        try:
            tx_hash = await self.blockchain.complete_service_as_backend(booking.blockchain_booking_id)
        except Exception as e:
            logger.error(f"❌ Backend completion failed on chain for booking {booking.id}: {e}")
            raise IntegrationFailure(f"Blockchain completion failed: {e}")

        booking = self.repo.update_booking(
            self.db, booking, backend_completed=True, backend_completion_reason=reason
        )
        return {"status": "pending_confirmation", "tx_hash": tx_hash, "booking": booking}

    # ------------------------------------------------------------------
    # Chain status
    # ------------------------------------------------------------------

    async def blockchain_status(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> dict:
        booking, _ = self._get_participant_booking(booking_id, user_id)

        transaction = None
        if booking.blockchain_tx_hash and self.blockchain is not None:
            try:
                transaction = await self.blockchain.get_transaction_status(booking.blockchain_tx_hash)
            except Exception as e:
                logger.warning(f"⚠️ Could not read transaction {booking.blockchain_tx_hash}: {e}")
                transaction = {"tx_hash": booking.blockchain_tx_hash, "status": "unknown", "error": str(e)}

        events = self.repo.get_blockchain_events(self.db, booking.id)
        return {
            "booking_id": str(booking.id),
            "blockchain_booking_id": booking.blockchain_booking_id,
            "status": booking.status,
            "is_on_chain": booking.is_chain_settled,
            "blockchain_tx_hash": booking.blockchain_tx_hash,
            "blockchain_confirmed_at": booking.blockchain_confirmed_at.isoformat() if booking.blockchain_confirmed_at else None,
            "completion_tx_hash": booking.completion_tx_hash,
            "cancellation_tx_hash": booking.cancellation_tx_hash,
            "transaction": transaction,
            "events": [
                {
                    "id": event.id,
                    "event_type": event.event_type,
                    "transaction_hash": event.transaction_hash,
                    "processing_status": event.processing_status,
                    "event_data": event.event_data,
                    "created_at": event.created_at.isoformat() if event.created_at else None,
                }
                for event in events
            ],
        }
