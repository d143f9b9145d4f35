"""
Availability Service
Slot generation from a service's weekly schedule minus the bookings that hold time.

Schedule format (services.weekly_schedule):
    {
        "monday": {"start": "09:00", "end": "17:00"},
        "tuesday": {"enabled": false},
        "exceptions": [{"date": "2026-12-25", "enabled": false}]
    }
Times are wall-clock times in the requested timezone. A service without a
schedule is bookable at any time.
"""

import calendar
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from ..domain.bookings.repository import BookingRepository, overlaps
from ..models import Service
from ..utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SLOT_STEP_MINUTES = 30
MINIMUM_ADVANCE_HOURS = 1
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"⚠️ Unknown timezone {tz_name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def _parse_hhmm(value: str) -> time:
    hour, minute = value.split(":")[:2]
    return time(int(hour), int(minute))


def day_window(schedule: Optional[dict], day: date, tz: ZoneInfo) -> Optional[tuple[datetime, datetime]]:
    """UTC [open, close) for ``day`` or None when the provider is closed"""
    if schedule is None:
        opens = datetime.combine(day, time.min, tzinfo=tz)
        return ensure_utc(opens), ensure_utc(opens + timedelta(days=1))

    for exception in schedule.get("exceptions") or []:
        if exception.get("date") == day.isoformat() and not exception.get("enabled", True):
            return None

    entry = schedule.get(WEEKDAYS[day.weekday()])
    if not entry or not entry.get("enabled", True) or not entry.get("start") or not entry.get("end"):
        return None

    opens = datetime.combine(day, _parse_hhmm(entry["start"]), tzinfo=tz)
    closes = datetime.combine(day, _parse_hhmm(entry["end"]), tzinfo=tz)
    if closes <= opens:
        return None
    return ensure_utc(opens), ensure_utc(closes)


class AvailabilityService:
    """Read-only availability oracle consumed by booking creation and the calendar view"""

    def __init__(self, db: Session):
        self.db = db

    def _get_service(self, service_id: uuid.UUID) -> Service:
        service = (
            self.db.query(Service)
            .filter(Service.id == service_id, Service.is_visible.is_(True))
            .first()
        )
        if not service:
            raise LookupError("Service not found")
        return service

    def _day_slots(self, service: Service, day: date, tz: ZoneInfo, bookings, now: datetime) -> dict:
        window = day_window(service.weekly_schedule, day, tz)
        if window is None:
            return {"date": day.isoformat(), "available": [], "unavailable": [], "reason": "no_service_hours"}

        opens, closes = window
        earliest = now + timedelta(hours=MINIMUM_ADVANCE_HOURS)
        duration = service.duration_minutes
        available, unavailable = [], []

        slot = opens
        while slot + timedelta(minutes=duration) <= closes:
            label = slot.astimezone(tz).strftime("%H:%M")
            if slot < earliest:
                unavailable.append({"time": label, "reason": "past_time"})
            else:
                clash = next(
                    (b for b in bookings if overlaps(b.scheduled_at, b.duration_minutes, slot, duration)),
                    None,
                )
                if clash:
                    unavailable.append({"time": label, "reason": "booked", "booking_id": str(clash.id)})
                else:
                    available.append(label)
            slot += timedelta(minutes=SLOT_STEP_MINUTES)

        return {
            "date": day.isoformat(),
            "available": available,
            "unavailable": unavailable,
            "reason": None if available else "fully_booked",
        }

    def get_day_availability(self, service_id: uuid.UUID, day: date, timezone: str = "UTC", now=None) -> dict:
        service = self._get_service(service_id)
        tz = _zone(timezone)
        now = ensure_utc(now) if now else utcnow()

        start = datetime.combine(day, time.min, tzinfo=tz)
        bookings = BookingRepository.list_active_for_service(
            self.db, service.id, ensure_utc(start), ensure_utc(start + timedelta(days=1))
        )
        result = self._day_slots(service, day, tz, bookings, now)
        logger.info(
            f"🕐 Day availability for service {service_id} on {day}: {len(result['available'])} slots"
        )
        return {
            "available_slots": result["available"],
            "unavailable_slots": result["unavailable"],
            "service_schedule": (service.weekly_schedule or {}).get(WEEKDAYS[day.weekday()]),
        }

    def get_month_availability(self, service_id: uuid.UUID, month: str, timezone: str = "UTC", now=None) -> dict:
        """``month`` is ``YYYY-MM``"""
        service = self._get_service(service_id)
        tz = _zone(timezone)
        now = ensure_utc(now) if now else utcnow()

        year, month_num = (int(part) for part in month.split("-"))
        days_in_month = calendar.monthrange(year, month_num)[1]
        first = date(year, month_num, 1)
        month_start = datetime.combine(first, time.min, tzinfo=tz)
        month_end = month_start + timedelta(days=days_in_month)

        bookings = BookingRepository.list_active_for_service(
            self.db, service.id, ensure_utc(month_start), ensure_utc(month_end)
        )

        available_dates, unavailable_dates = [], []
        for offset in range(days_in_month):
            day = first + timedelta(days=offset)
            result = self._day_slots(service, day, tz, bookings, now)
            entry = {"date": result["date"], "available_slots": len(result["available"]), "reason": result["reason"]}
            (available_dates if result["available"] else unavailable_dates).append(entry)

        logger.info(
            f"📅 Month availability for service {service_id} ({month}): "
            f"{len(available_dates)} available days, {len(unavailable_dates)} unavailable days"
        )
        return {"available_dates": available_dates, "unavailable_dates": unavailable_dates}

    def within_service_hours(self, service: Service, start: datetime, duration_minutes: int, timezone: str = "UTC") -> bool:
        """Whether [start, start + duration) fits inside the provider's hours for that day"""
        if service.weekly_schedule is None:
            return True
        start = ensure_utc(start)
        end = start + timedelta(minutes=duration_minutes)
        tz = _zone(timezone)
        window = day_window(service.weekly_schedule, start.astimezone(tz).date(), tz)
        return window is not None and window[0] <= start and end <= window[1]

    def is_slot_available(self, service: Service, start: datetime, duration_minutes: int, timezone: str = "UTC") -> bool:
        """
        Whether [start, start + duration) fits inside the provider's hours and
        does not overlap an active booking. Advisory only: the slot guard
        re-checks under lock.
        """
        if not self.within_service_hours(service, start, duration_minutes, timezone):
            return False

        start = ensure_utc(start)
        end = start + timedelta(minutes=duration_minutes)
        bookings = BookingRepository.list_active_for_service(self.db, service.id, start, end)
        return not any(overlaps(b.scheduled_at, b.duration_minutes, start, duration_minutes) for b in bookings)
