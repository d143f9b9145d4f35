"""
Booking error taxonomy.

HTTP-facing errors subclass ``HTTPException`` so routers and services raise them
the same way they raise plain HTTP errors; ``detail`` is the short reason string
clients branch on and ``extra`` is merged into the JSON body.
"""

from typing import Any, Optional

from fastapi import HTTPException


class BookingError(HTTPException):
    status_code_default = 400

    def __init__(self, reason: str, status_code: Optional[int] = None, **extra: Any):
        super().__init__(status_code=status_code or self.status_code_default, detail=reason)
        self.reason = reason
        self.extra = extra


class ValidationFailed(BookingError):
    status_code_default = 400


class Forbidden(BookingError):
    status_code_default = 403


class NotFound(BookingError):
    status_code_default = 404


class SlotConflict(BookingError):
    status_code_default = 400

    def __init__(self, conflicting_bookings: list[dict]):
        super().__init__("Time slot not available", conflicting_bookings=conflicting_bookings)


class InvalidTransition(BookingError):
    status_code_default = 400

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class ActorNotAllowed(BookingError):
    status_code_default = 403


class IntegrationFailure(BookingError):
    status_code_default = 502


# Domain errors raised below the HTTP layer


class InsufficientPointsError(Exception):
    def __init__(self, balance: int, required: int):
        super().__init__(f"Insufficient points. Balance: {balance}, Required: {required}")
        self.balance = balance
        self.required = required


class NonceReuseError(Exception):
    """A signature nonce was already recorded"""


class WalletNotConfiguredError(Exception):
    """Customer or provider has no wallet address to sign for"""


class ChainIdMismatchError(Exception):
    """An on-chain event's booking id disagrees with the stored correlation id"""

    def __init__(self, booking_id, stored_chain_id: Optional[str], event_chain_id: str):
        super().__init__(
            f"Chain id mismatch for booking {booking_id}: stored={stored_chain_id} event={event_chain_id}"
        )
        self.booking_id = booking_id
        self.stored_chain_id = stored_chain_id
        self.event_chain_id = event_chain_id
