"""
Booking status state machine

pending -> pending_payment -> paid -> confirmed -> in_progress -> completed
Any non-terminal state may be cancelled; confirmed bookings may also be
rejected by the provider through the dedicated reject operation.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from ...exceptions import ActorNotAllowed, InvalidTransition

PROVIDER = "provider"
CUSTOMER = "customer"
SYSTEM = "system"

VALID_TRANSITIONS = {
    "pending": ["pending_payment", "cancelled"],
    "pending_payment": ["cancelled"],
    "paid": ["confirmed", "cancelled"],
    "confirmed": ["in_progress", "cancelled"],
    "in_progress": ["completed", "cancelled"],
    "completed": [],  # Terminal state
    "cancelled": [],  # Terminal state
    "rejected": [],  # Terminal state
}

ALL_STATUSES = tuple(VALID_TRANSITIONS)
TERMINAL_STATUSES = tuple(s for s, targets in VALID_TRANSITIONS.items() if not targets)
CANCELLABLE_STATUSES = tuple(s for s, targets in VALID_TRANSITIONS.items() if "cancelled" in targets)

# target status -> (required role, message when someone else tries)
ACTOR_RULES = {
    "pending_payment": (SYSTEM, "Payment authorization is issued by the system"),
    "confirmed": (PROVIDER, "Only provider can confirm the booking"),
    "in_progress": (PROVIDER, "Only provider can start the service"),
    "completed": (CUSTOMER, "Only customer can mark service as complete"),
}


@dataclass(frozen=True)
class BookingIdentity:
    """A booking's database id paired with its escrow contract correlation id"""

    internal_id: uuid.UUID
    chain_id: Optional[str] = None

    @classmethod
    def of(cls, booking) -> "BookingIdentity":
        return cls(internal_id=booking.id, chain_id=booking.blockchain_booking_id)

    @property
    def is_on_chain(self) -> bool:
        return self.chain_id is not None

    def matches(self, event_chain_id: str) -> bool:
        return self.chain_id is not None and self.chain_id.lower() == event_chain_id.lower()


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current_status: str, new_status: str) -> bool:
    return new_status in VALID_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: str, new_status: str, actor_role: str) -> None:
    """
    Raise unless ``actor_role`` may move a booking from ``current_status`` to
    ``new_status``. Same-status requests are rejected like any other edge
    missing from the table.
    """
    if not can_transition(current_status, new_status):
        raise InvalidTransition(current_status, new_status)

    rule = ACTOR_RULES.get(new_status)
    if rule and actor_role != rule[0]:
        raise ActorNotAllowed(rule[1])


def actor_role_for(booking, user_id: uuid.UUID) -> Optional[str]:
    if booking.provider_id == user_id:
        return PROVIDER
    if booking.customer_id == user_id:
        return CUSTOMER
    return None
