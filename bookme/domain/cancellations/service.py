"""
Cancellation & refund policy engine

Policies are rows in cancellation_policies with conditions on booking status
and minutes until start. The same split function backs the refund preview, the
direct database cancellation and the signed on-chain cancellation, so the three
can never disagree.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...config import CONTRACT_ADDRESS, PAYMENT_AUTH_EXPIRY_MINUTES
from ...exceptions import Forbidden, IntegrationFailure, NotFound, ValidationFailed
from ...models import Booking, CancellationPolicy
from ...services.dispatcher import EventDispatcher
from ...services.eip712_signer import EIP712Signer
from ...services.points_service import PointsService
from ...utils.money import Number, round_cents, to_decimal
from ...utils.time_utils import minutes_between, utcnow
from ..bookings.repository import BookingRepository, SessionNonceStore
from ..bookings.state_machine import CANCELLABLE_STATUSES, CUSTOMER, PROVIDER, actor_role_for
from .repository import CancellationPolicyRepository

logger = logging.getLogger(__name__)

PRE_PAYMENT_STATUSES = ("pending", "pending_payment")


@dataclass
class RefundSplit:
    total: Decimal
    customer_refund: Decimal
    provider_earnings: Decimal
    platform_fee: Decimal

    def to_dict(self) -> dict:
        return {
            "customer_refund": str(self.customer_refund),
            "provider_earnings": str(self.provider_earnings),
            "platform_fee": str(self.platform_fee),
        }


def compute_refund_split(total: Number, policy: CancellationPolicy) -> RefundSplit:
    """
    Split ``total`` by the policy percentages. Customer and provider shares are
    rounded half-up to cents and the platform takes the remainder, so the three
    parts always add up to ``total``.
    """
    total = round_cents(total)
    customer = round_cents(total * to_decimal(policy.customer_refund_percentage) / 100)
    provider = round_cents(total * to_decimal(policy.provider_earnings_percentage) / 100)
    platform = total - customer - provider
    return RefundSplit(total=total, customer_refund=customer, provider_earnings=provider, platform_fee=platform)


def refundable_amount(booking: Booking) -> Decimal:
    """What the escrow holds: the USDC actually paid, else the list price"""
    if booking.usdc_paid is not None:
        return round_cents(booking.usdc_paid)
    return round_cents(booking.total_price)


def policy_conditions_met(policy: CancellationPolicy, booking_status: str, minutes_until_start: int) -> bool:
    """booking_status conditions are alternatives; every other condition must hold"""
    statuses = [c.condition_value for c in policy.conditions if c.condition_type == "booking_status"]
    if statuses and booking_status not in statuses:
        return False

    for condition in policy.conditions:
        if condition.condition_type == "booking_status":
            continue
        minutes = int(condition.condition_value)
        if condition.condition_type == "min_time_before_start" and minutes_until_start < minutes:
            return False
        if condition.condition_type == "max_time_before_start" and minutes_until_start >= minutes:
            return False
        if condition.condition_type == "time_before_start" and minutes_until_start != minutes:
            return False
    return True


def policy_allowed_for_role(policy: CancellationPolicy, role: str) -> bool:
    key = policy.reason_key
    if key == "customer_no_show":
        return role == PROVIDER
    if key.startswith("customer_"):
        return role == CUSTOMER
    if key.startswith("provider_"):
        return role == PROVIDER
    return True


def policy_to_dict(policy: CancellationPolicy) -> dict:
    return {
        "id": str(policy.id),
        "reason_key": policy.reason_key,
        "reason_title": policy.reason_title,
        "reason_description": policy.reason_description,
        "customer_refund_percentage": str(policy.customer_refund_percentage),
        "provider_earnings_percentage": str(policy.provider_earnings_percentage),
        "platform_fee_percentage": str(policy.platform_fee_percentage),
        "requires_explanation": policy.requires_explanation,
    }


class CancellationService:
    """Service layer for cancellation and refund logic"""

    def __init__(
        self,
        db: Session,
        dispatcher: EventDispatcher,
        signer: Optional[EIP712Signer] = None,
        points: Optional[PointsService] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.signer = signer
        self.points = points or PointsService(db)
        self.repo = BookingRepository()
        self.policies = CancellationPolicyRepository()

    def _get_booking_for_actor(self, booking_id: uuid.UUID, actor_id: uuid.UUID) -> tuple[Booking, str]:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        role = actor_role_for(booking, actor_id)
        if role is None:
            raise Forbidden("Access denied")
        return booking, role

    def _get_policy(self, policy_id: uuid.UUID) -> CancellationPolicy:
        policy = self.policies.get_policy(self.db, policy_id)
        if not policy:
            raise NotFound("Cancellation policy not found")
        return policy

    def _applicable(self, booking: Booking, role: str, now: Optional[datetime] = None) -> tuple[list, int]:
        minutes_until_start = minutes_between(now or utcnow(), booking.scheduled_at)
        applicable = [
            policy
            for policy in self.policies.get_active_policies(self.db)
            if policy_conditions_met(policy, booking.status, minutes_until_start)
            and policy_allowed_for_role(policy, role)
        ]
        return applicable, minutes_until_start

    def get_applicable_cancellation_policies(
        self, booking_id: uuid.UUID, actor_id: uuid.UUID, now: Optional[datetime] = None
    ) -> list[dict]:
        booking, role = self._get_booking_for_actor(booking_id, actor_id)
        applicable, minutes_until_start = self._applicable(booking, role, now)
        return [
            {**policy_to_dict(policy), "minutes_until_start": minutes_until_start, "user_role": role}
            for policy in applicable
        ]

    def calculate_refund_breakdown(self, booking_id: uuid.UUID, policy_id: uuid.UUID) -> dict:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        policy = self._get_policy(policy_id)
        split = compute_refund_split(refundable_amount(booking), policy)

        return {
            "policy_id": str(policy.id),
            "policy_title": policy.reason_title,
            "policy_description": policy.reason_description,
            "requires_explanation": policy.requires_explanation,
            "total_amount": str(split.total),
            "original_service_fee": str(booking.service_fee or 0),
            "breakdown": split.to_dict(),
            "percentages": {
                "customer_refund_percentage": str(policy.customer_refund_percentage),
                "provider_earnings_percentage": str(policy.provider_earnings_percentage),
                "platform_fee_percentage": str(policy.platform_fee_percentage),
            },
        }

    def validate_policy_selection(self, booking_id: uuid.UUID, actor_id: uuid.UUID, policy_id: uuid.UUID) -> bool:
        try:
            booking, role = self._get_booking_for_actor(booking_id, actor_id)
        except (NotFound, Forbidden):
            return False
        applicable, _ = self._applicable(booking, role)
        return any(policy.id == policy_id for policy in applicable)

    def _validate_cancellation(
        self, booking_id: uuid.UUID, actor_id: uuid.UUID, policy_id: uuid.UUID, explanation: Optional[str]
    ) -> tuple[Booking, CancellationPolicy]:
        booking, role = self._get_booking_for_actor(booking_id, actor_id)
        if booking.status not in CANCELLABLE_STATUSES:
            raise ValidationFailed("Booking cannot be cancelled in current status")

        policy = self._get_policy(policy_id)
        applicable, _ = self._applicable(booking, role)
        if policy.id not in {p.id for p in applicable}:
            raise ValidationFailed("Selected cancellation policy is not applicable to this booking")

        if policy.requires_explanation and not (explanation or "").strip():
            raise ValidationFailed("An explanation is required for this type of cancellation")
        return booking, policy

    def _after_cancel(self, booking: Booking, refund_percentage: Number, split: Optional[RefundSplit]) -> None:
        if booking.points_used:
            try:
                self.points.settle_cancellation(
                    booking.customer_id, booking.id, booking.points_used, refund_percentage
                )
            except Exception as e:
                logger.error(f"❌ Failed to return points for cancelled booking {booking.id}: {e}")

        self.dispatcher.delete_meeting(booking.id)
        if split is not None and split.customer_refund > 0:
            self.dispatcher.log_refund_event(
                booking.id,
                "cancellation",
                {"amount": str(split.customer_refund), "original_amount": str(split.total)},
            )
        self.dispatcher.notify(booking.id, "booking_cancelled", cancelled_by=str(booking.cancelled_by))

    def process_cancellation(
        self,
        booking_id: uuid.UUID,
        actor_id: uuid.UUID,
        policy_id: uuid.UUID,
        explanation: Optional[str] = None,
    ) -> dict:
        """
        Cancel under a policy. Bookings paid on chain get a signed cancellation
        authorization instead; their status changes when the contract confirms.
        """
        booking, policy = self._validate_cancellation(booking_id, actor_id, policy_id, explanation)
        if booking.is_chain_settled:
            return self.authorize_cancellation(booking_id, actor_id, policy_id, explanation)

        split = compute_refund_split(refundable_amount(booking), policy)
        booking = self.repo.update_booking(
            self.db,
            booking,
            status="cancelled",
            cancelled_at=utcnow(),
            cancelled_by=actor_id,
            cancellation_policy_id=policy.id,
            cancellation_reason=policy.reason_title,
            cancellation_explanation=explanation,
            refund_amount=split.customer_refund,
            provider_earnings=split.provider_earnings,
            platform_fee=split.platform_fee,
        )
        logger.info(f"✅ Booking {booking.id} cancelled under policy {policy.reason_key}")

        self._after_cancel(booking, policy.customer_refund_percentage, split)
        return {
            "status": "cancelled",
            "booking": booking,
            "refund_breakdown": self.calculate_refund_breakdown(booking.id, policy.id),
            "policy": policy_to_dict(policy),
        }

    def authorize_cancellation(
        self,
        booking_id: uuid.UUID,
        actor_id: uuid.UUID,
        policy_id: uuid.UUID,
        explanation: Optional[str] = None,
    ) -> dict:
        """Signed CancellationAuthorization for a booking whose funds sit in escrow"""
        booking, policy = self._validate_cancellation(booking_id, actor_id, policy_id, explanation)
        if not booking.is_chain_settled:
            raise ValidationFailed("Booking has no on-chain payment")
        if self.signer is None:
            raise IntegrationFailure("Payment signer not configured")

        split = compute_refund_split(refundable_amount(booking), policy)
        signed = self.signer.sign_cancellation_authorization(
            booking_id=booking.id,
            chain_booking_id=booking.blockchain_booking_id,
            customer_amount=split.customer_refund,
            provider_amount=split.provider_earnings,
            platform_amount=split.platform_fee,
            inviter_amount=0,
            reason=policy.reason_title,
            nonce_store=SessionNonceStore(self.db),
            expiry_minutes=PAYMENT_AUTH_EXPIRY_MINUTES,
        )

        # Remembered for the reconciler; status stays until BookingCancelled arrives
        self.repo.update_booking(
            self.db,
            booking,
            cancellation_policy_id=policy.id,
            cancellation_explanation=explanation,
            cancelled_by=actor_id,
        )
        logger.info(f"🔏 Cancellation authorization issued for booking {booking.id} ({policy.reason_key})")

        payload = signed.to_dict()
        return {
            "status": "pending_confirmation",
            "authorization": payload["authorization"],
            "signature": payload["signature"],
            "nonce": payload["nonce"],
            "expiry": payload["expiry"],
            "breakdown": split.to_dict(),
            "contract_address": CONTRACT_ADDRESS,
        }

    def cancel_booking(self, booking_id: uuid.UUID, actor_id: uuid.UUID, reason: Optional[str] = None) -> dict:
        """
        Cancel without choosing a policy. Unpaid bookings are cancelled outright;
        anything further along goes through the first applicable policy.
        """
        booking, role = self._get_booking_for_actor(booking_id, actor_id)
        if booking.status not in CANCELLABLE_STATUSES:
            raise ValidationFailed("Booking cannot be cancelled in current status")

        if booking.status in PRE_PAYMENT_STATUSES and not booking.is_chain_settled:
            booking = self.repo.update_booking(
                self.db,
                booking,
                status="cancelled",
                cancelled_at=utcnow(),
                cancelled_by=actor_id,
                cancellation_reason=reason or "No reason provided",
                refund_amount=Decimal("0.00"),
            )
            logger.info(f"✅ Unpaid booking {booking.id} cancelled by {role}")
            self._after_cancel(booking, 100, None)
            return {"status": "cancelled", "booking": booking}

        applicable, _ = self._applicable(booking, role)
        if not applicable:
            raise ValidationFailed("Selected cancellation policy is not applicable to this booking")
        return self.process_cancellation(booking.id, actor_id, applicable[0].id, reason)
