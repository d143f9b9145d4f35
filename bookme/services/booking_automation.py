"""
Time-driven booking transitions, run every minute by the worker.

- confirmed -> in_progress once the start time has passed (meeting link fallback)
- in_progress bookings past their end time go through backend completion
- 1 hour reminders for upcoming bookings
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import AUTO_COMPLETE_GRACE_MINUTES
from ..domain.bookings.service import BookingService
from ..domain.bookings.state_machine import can_transition
from ..exceptions import BookingError
from ..models import Booking
from ..utils.time_utils import ensure_utc, utcnow
from .blockchain_service import BlockchainService
from .dispatcher import EventDispatcher

logger = logging.getLogger(__name__)

REMINDER_LEAD = timedelta(hours=1)


async def start_due_bookings(service: BookingService, db: Session, now: datetime) -> dict:
    """Move confirmed bookings whose start time has passed to in_progress"""
    summary = {"started": 0, "meeting_links": 0}
    due = (
        db.query(Booking)
        .filter(Booking.status == "confirmed", Booking.scheduled_at <= now)
        .all()
    )
    for booking in due:
        if not can_transition(booking.status, "in_progress"):
            continue
        booking.status = "in_progress"
        db.commit()
        summary["started"] += 1
        logger.info(f"✅ Booking {booking.id} transitioned: confirmed → in_progress")

        if await service.ensure_meeting_link(booking):
            summary["meeting_links"] += 1
        service.dispatcher.notify(booking.id, "booking_in_progress")
    return summary


async def complete_finished_bookings(service: BookingService, db: Session, now: datetime) -> dict:
    """
    Backend completion for in_progress bookings past their end time.
    Chain-paid bookings that fail on chain stay in_progress and are retried on
    the next run.
    """
    summary = {"completed": 0, "pending_chain": 0, "blocked": 0, "failed": 0}
    grace = timedelta(minutes=AUTO_COMPLETE_GRACE_MINUTES)
    candidates = (
        db.query(Booking)
        .filter(
            Booking.status == "in_progress",
            Booking.scheduled_at <= now,
            Booking.auto_complete_blocked.is_(False),
        )
        .all()
    )
    for booking in candidates:
        ends_at = ensure_utc(booking.scheduled_at) + timedelta(minutes=booking.duration_minutes)
        if ends_at + grace > now:
            continue
        if booking.is_chain_settled and booking.backend_completed:
            # completeService already sent; waiting for the ServiceCompleted event
            continue

        try:
            result = await service.complete_service_backend(booking.id)
        except BookingError as e:
            summary["failed"] += 1
            logger.error(f"❌ Auto-completion failed for booking {booking.id}: {e.reason}")
            continue

        if result["status"] == "completed":
            summary["completed"] += 1
        elif result["status"] == "blocked":
            summary["blocked"] += 1
        else:
            summary["pending_chain"] += 1
    return summary


def send_due_reminders(service: BookingService, db: Session, now: datetime) -> int:
    upcoming = (
        db.query(Booking)
        .filter(
            Booking.status.in_(("paid", "confirmed")),
            Booking.scheduled_at > now,
            Booking.scheduled_at <= now + REMINDER_LEAD,
            Booking.reminder_1h_sent.is_(None),
        )
        .all()
    )
    for booking in upcoming:
        booking.reminder_1h_sent = now
        db.commit()
        service.dispatcher.notify(booking.id, "booking_reminder_1h")
    if upcoming:
        logger.info(f"⏰ Sent {len(upcoming)} 1h booking reminders")
    return len(upcoming)


async def run_booking_automation(
    db: Session,
    dispatcher: EventDispatcher,
    blockchain: Optional[BlockchainService] = None,
    now: Optional[datetime] = None,
) -> dict:
    """One automation pass; returns a summary of what changed"""
    now = ensure_utc(now) if now else utcnow()
    service = BookingService(db, dispatcher, blockchain=blockchain)

    summary = {}
    summary.update(await start_due_bookings(service, db, now))
    summary.update(await complete_finished_bookings(service, db, now))
    summary["reminders"] = send_due_reminders(service, db, now)
    return summary
