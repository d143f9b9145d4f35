"""
Points Service
Internal credit balance redeemable against booking prices.

Exchange rate: 100 points = $1. Points are reserved when a payment authorization
is issued and only debited once the on-chain payment is confirmed.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..config import MAX_POINTS_USAGE_PERCENT
from ..exceptions import InsufficientPointsError
from ..models import PointTransaction, UserPoints
from ..utils.money import Number, round_cents, to_decimal

logger = logging.getLogger(__name__)

POINTS_PER_DOLLAR = 100


@dataclass
class PointsUsage:
    points_to_use: int
    points_value: Decimal
    usdc_to_pay: Decimal
    original_price: Decimal

    def to_dict(self) -> dict:
        return {
            "points_to_use": self.points_to_use,
            "points_value": str(self.points_value),
            "usdc_to_pay": str(self.usdc_to_pay),
            "original_price": str(self.original_price),
        }


def calculate_points_usage(
    service_price: Number, user_balance: int, max_usage_percent: int = MAX_POINTS_USAGE_PERCENT
) -> PointsUsage:
    """
    Work out how much of a price can be covered by points.

    The result always satisfies points_value + usdc_to_pay == original_price
    and points_to_use <= user_balance.
    """
    price = round_cents(service_price)
    max_points = math.floor(price * POINTS_PER_DOLLAR * to_decimal(max_usage_percent) / 100)
    points_to_use = max(0, min(int(user_balance), max_points))

    points_value = round_cents(Decimal(points_to_use) / POINTS_PER_DOLLAR)
    usdc_to_pay = price - points_value

    return PointsUsage(
        points_to_use=points_to_use,
        points_value=points_value,
        usdc_to_pay=usdc_to_pay,
        original_price=price,
    )


def usd_to_points(usd_amount: Number) -> int:
    return int((to_decimal(usd_amount) * POINTS_PER_DOLLAR).to_integral_value())


def points_to_usd(points: int) -> Decimal:
    return round_cents(Decimal(points) / POINTS_PER_DOLLAR)


class PointsService:
    """Points ledger backed by user_points / point_transactions"""

    def __init__(self, db: Session, max_usage_percent: int = MAX_POINTS_USAGE_PERCENT):
        self.db = db
        self.max_usage_percent = max_usage_percent

    def _get_account(self, user_id: uuid.UUID, lock: bool = False) -> Optional[UserPoints]:
        query = self.db.query(UserPoints).filter(UserPoints.user_id == user_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def _get_or_create_account(self, user_id: uuid.UUID) -> UserPoints:
        account = self._get_account(user_id, lock=True)
        if not account:
            account = UserPoints(user_id=user_id, balance=0, reserved=0, total_earned=0, total_spent=0)
            self.db.add(account)
            self.db.flush()
        return account

    def _finish(self, commit: bool) -> None:
        # With commit=False the caller owns the transaction
        if commit:
            self.db.commit()
        else:
            self.db.flush()

    def get_balance(self, user_id: uuid.UUID) -> int:
        """Spendable balance: points held for unpaid bookings are excluded"""
        account = self._get_account(user_id)
        if not account:
            return 0
        return account.balance - account.reserved

    def get_points_info(self, user_id: uuid.UUID) -> dict:
        account = self._get_account(user_id)
        if not account:
            return {"balance": 0, "reserved": 0, "available": 0, "total_earned": 0, "total_spent": 0}
        return {
            "balance": account.balance,
            "reserved": account.reserved,
            "available": account.balance - account.reserved,
            "total_earned": account.total_earned,
            "total_spent": account.total_spent,
        }

    def calculate_points_usage(self, service_price: Number, user_balance: int) -> PointsUsage:
        return calculate_points_usage(service_price, user_balance, self.max_usage_percent)

    def reserve_points(self, user_id: uuid.UUID, booking_id: uuid.UUID, points: int) -> None:
        """
        Hold points against a booking. Raises InsufficientPointsError when the
        spendable balance does not cover them; nothing is written in that case.
        """
        if points <= 0:
            return

        try:
            account = self._get_account(user_id, lock=True)
            available = (account.balance - account.reserved) if account else 0
            if not account or available < points:
                raise InsufficientPointsError(available, points)

            account.reserved += points
            self.db.add(
                PointTransaction(
                    user_id=user_id,
                    type="reserve",
                    amount=points,
                    description="Points reserved for booking",
                    reference_id=str(booking_id),
                )
            )
            self.db.commit()
            logger.info(f"✅ Reserved {points} points for booking {booking_id}")
        except Exception:
            self.db.rollback()
            raise

    def _open_reservation(self, user_id: uuid.UUID, booking_id: uuid.UUID) -> Optional[PointTransaction]:
        return (
            self.db.query(PointTransaction)
            .filter(
                PointTransaction.user_id == user_id,
                PointTransaction.reference_id == str(booking_id),
                PointTransaction.type == "reserve",
            )
            .first()
        )

    def deduct_points(self, user_id: uuid.UUID, booking_id: uuid.UUID, commit: bool = True) -> int:
        """Turn a booking's reservation into a permanent spend. Returns points spent."""
        try:
            account = self._get_account(user_id, lock=True)
            reservation = self._open_reservation(user_id, booking_id)
            if not account or not reservation:
                logger.info(f"ℹ️ No points reservation to settle for booking {booking_id}")
                return 0

            points = reservation.amount
            if account.balance < points:
                raise InsufficientPointsError(account.balance, points)

            account.balance -= points
            account.reserved = max(0, account.reserved - points)
            account.total_spent += points
            reservation.type = "spend_confirmed"
            self.db.add(
                PointTransaction(
                    user_id=user_id,
                    type="spend",
                    amount=points,
                    description=f"Booking payment ({points} points = ${points_to_usd(points)})",
                    reference_id=str(booking_id),
                )
            )
            self._finish(commit)
            logger.info(f"✅ Deducted {points} points from user {user_id}. New balance: {account.balance}")
            return points
        except Exception:
            self.db.rollback()
            raise

    def release_reserved_points(self, user_id: uuid.UUID, booking_id: uuid.UUID, commit: bool = True) -> int:
        """Drop a reservation without spending it. Returns points released."""
        try:
            account = self._get_account(user_id, lock=True)
            reservation = self._open_reservation(user_id, booking_id)
            if not account or not reservation:
                return 0

            account.reserved = max(0, account.reserved - reservation.amount)
            reservation.type = "reserve_released"
            self._finish(commit)
            logger.info(f"✅ Released {reservation.amount} reserved points for booking {booking_id}")
            return reservation.amount
        except Exception:
            self.db.rollback()
            raise

    def refund_points(self, user_id: uuid.UUID, booking_id: uuid.UUID, points: int, commit: bool = True) -> int:
        """Credit spent points back after a cancellation. Returns the new balance."""
        if points <= 0:
            return self.get_balance(user_id)

        try:
            account = self._get_or_create_account(user_id)
            account.balance += points
            account.total_spent = max(0, account.total_spent - points)
            self.db.add(
                PointTransaction(
                    user_id=user_id,
                    type="refund",
                    amount=points,
                    description="Points refunded for cancelled booking",
                    reference_id=str(booking_id),
                )
            )
            self._finish(commit)
            logger.info(f"✅ Refunded {points} points to user {user_id}. New balance: {account.balance}")
            return account.balance - account.reserved
        except Exception:
            self.db.rollback()
            raise

    def award_points(
        self, user_id: uuid.UUID, points: int, description: str, reference_id: Optional[str] = None
    ) -> int:
        """Credit earned points. Returns the new spendable balance."""
        if points <= 0:
            return self.get_balance(user_id)

        try:
            account = self._get_or_create_account(user_id)
            account.balance += points
            account.total_earned += points
            self.db.add(
                PointTransaction(
                    user_id=user_id,
                    type="earn",
                    amount=points,
                    description=description,
                    reference_id=reference_id,
                )
            )
            self.db.commit()
            logger.info(f"✅ Awarded {points} points to user {user_id}. New balance: {account.balance}")
            return account.balance - account.reserved
        except Exception:
            self.db.rollback()
            raise

    def settle_cancellation(
        self, user_id: uuid.UUID, booking_id: uuid.UUID, points_used: int, refund_percentage: Number = 100, commit: bool = True
    ) -> None:
        """
        Return points for a cancelled booking: an open reservation is simply
        released, spent points are refunded by the policy's customer percentage.
        """
        if self._open_reservation(user_id, booking_id):
            self.release_reserved_points(user_id, booking_id, commit=commit)
            return
        refundable = math.floor(points_used * to_decimal(refund_percentage) / 100)
        if refundable > 0:
            self.refund_points(user_id, booking_id, refundable, commit=commit)

    def get_transaction_history(self, user_id: uuid.UUID, limit: int = 50, offset: int = 0) -> list[dict]:
        rows = (
            self.db.query(PointTransaction)
            .filter(PointTransaction.user_id == user_id)
            .order_by(PointTransaction.created_at.desc(), PointTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [
            {
                "id": row.id,
                "type": row.type,
                "amount": row.amount,
                "description": row.description,
                "reference_id": row.reference_id,
                "created_at": row.created_at,
            }
            for row in rows
        ]
