"""
Google Meet Session Tracker
Measures how long provider and customer actually spent in a booking's Meet call
using the Meet REST API (conferenceRecords -> participants -> participantSessions).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import Session

from ..config import SESSION_DURATION_THRESHOLD
from ..models import Booking, BookingSessionData, MeetingIntegration, User
from ..utils.time_utils import utcnow
from .meeting_service import GOOGLE_MEET, MeetingService, is_google_meet_link

logger = logging.getLogger(__name__)

MEET_API = "https://meet.googleapis.com/v2"
NOT_GOOGLE_MEET = "Not a Google Meet booking"


class SessionTrackingError(Exception):
    """The Meet API could not be queried for a booking"""


@dataclass
class SessionCheckResult:
    success: bool
    provider_duration: float = 0  # Seconds
    customer_duration: float = 0
    service_duration: float = 0
    threshold: float = SESSION_DURATION_THRESHOLD
    provider_meets_threshold: bool = True
    reason: Optional[str] = None
    sessions: dict = field(default_factory=lambda: {"provider": [], "customer": []})


def extract_meeting_code(meeting_link: Optional[str]) -> Optional[str]:
    """abc-defg-hij from https://meet.google.com/abc-defg-hij"""
    if not meeting_link:
        return None
    parsed = urlparse(meeting_link)
    if parsed.hostname != "meet.google.com":
        return None
    code = parsed.path.strip("/").split("/")[0]
    return code or None


def _parse_ts(value: str) -> datetime:
    # Meet returns RFC 3339 with a Z suffix and up to nanosecond precision
    value = value.replace("Z", "+00:00")
    if "." in value:
        head, rest = value.split(".", 1)
        frac, _, offset = rest.partition("+")
        value = f"{head}.{frac[:6]}+{offset}" if offset else f"{head}.{frac[:6]}"
    return datetime.fromisoformat(value)


def calculate_total_duration(sessions: list[dict]) -> float:
    """Sum of finished sessions in seconds; sessions still running are skipped"""
    total = 0.0
    for session in sessions:
        if not session.get("startTime") or not session.get("endTime"):
            continue
        total += max(0.0, (_parse_ts(session["endTime"]) - _parse_ts(session["startTime"])).total_seconds())
    return total


def _participant_matches(participant: dict, user: Optional[User]) -> bool:
    if not user:
        return False
    signed_in = participant.get("signedinUser") or {}
    name = (signed_in.get("displayName") or (participant.get("anonymousUser") or {}).get("displayName") or "").lower()
    candidates = {(user.display_name or "").lower(), (user.email or "").lower()}
    candidates.discard("")
    return name in candidates


class SessionTracker:
    """Session duration check used by the auto-completion gate"""

    def __init__(self, db: Session, http_client: Optional[httpx.AsyncClient] = None, threshold: float = SESSION_DURATION_THRESHOLD):
        self.db = db
        self.http_client = http_client
        self.threshold = threshold

    async def _get(self, client: httpx.AsyncClient, token: str, path: str, params: Optional[dict] = None) -> dict:
        response = await client.get(f"{MEET_API}/{path}", headers={"Authorization": f"Bearer {token}"}, params=params)
        if response.status_code != 200:
            raise SessionTrackingError(f"Meet API error ({response.status_code}): {response.text}")
        return response.json()

    async def get_participant_sessions(self, token: str, meeting_code: str) -> list[dict]:
        """All participant sessions of every conference held in the meeting space"""
        client = self.http_client or httpx.AsyncClient(timeout=15.0)
        try:
            records = await self._get(
                client, token, "conferenceRecords", {"filter": f'space.meeting_code = "{meeting_code}"'}
            )
            all_sessions = []
            for record in records.get("conferenceRecords", []):
                participants = await self._get(client, token, f"{record['name']}/participants")
                for participant in participants.get("participants", []):
                    sessions = await self._get(client, token, f"{participant['name']}/participantSessions")
                    for session in sessions.get("participantSessions", []):
                        all_sessions.append({**session, "participant": participant})
            return all_sessions
        finally:
            if self.http_client is None:
                await client.aclose()

    def save_session_data(self, booking_id: uuid.UUID, result: SessionCheckResult) -> None:
        row = self.db.query(BookingSessionData).filter(BookingSessionData.booking_id == booking_id).first()
        if not row:
            row = BookingSessionData(booking_id=booking_id)
            self.db.add(row)
        row.provider_total_duration = int(result.provider_duration)
        row.customer_total_duration = int(result.customer_duration)
        row.provider_sessions = result.sessions["provider"]
        row.customer_sessions = result.sessions["customer"]
        row.last_checked_at = utcnow()
        self.db.commit()

    async def check_google_meet_session_duration(self, booking_id: uuid.UUID) -> SessionCheckResult:
        """
        Compare the provider's measured Meet time with the scheduled duration.

        Bookings without a Google Meet link return success=False with the
        "Not a Google Meet booking" reason and never block. Any failure to
        reach the Meet API raises.
        """
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise SessionTrackingError(f"Booking not found: {booking_id}")

        service_duration = booking.duration_minutes * 60
        if not is_google_meet_link(booking.meeting_link):
            return SessionCheckResult(
                success=False, reason=NOT_GOOGLE_MEET, service_duration=service_duration, threshold=self.threshold
            )

        meeting_code = extract_meeting_code(booking.meeting_link)
        if not meeting_code:
            raise SessionTrackingError("Invalid Google Meet link format")

        integration = (
            self.db.query(MeetingIntegration)
            .filter(
                MeetingIntegration.user_id == booking.provider_id,
                MeetingIntegration.platform == GOOGLE_MEET,
                MeetingIntegration.is_active.is_(True),
            )
            .first()
        )
        if not integration:
            raise SessionTrackingError("Provider has no active Google Meet integration")

        token = await MeetingService(self.db).get_valid_access_token(integration)
        if not token:
            raise SessionTrackingError("Could not obtain a Google access token")

        all_sessions = await self.get_participant_sessions(token, meeting_code)
        provider_sessions = [
            {"startTime": s.get("startTime"), "endTime": s.get("endTime")}
            for s in all_sessions
            if _participant_matches(s["participant"], booking.provider)
        ]
        customer_sessions = [
            {"startTime": s.get("startTime"), "endTime": s.get("endTime")}
            for s in all_sessions
            if _participant_matches(s["participant"], booking.customer)
        ]

        provider_duration = calculate_total_duration(provider_sessions)
        customer_duration = calculate_total_duration(customer_sessions)
        result = SessionCheckResult(
            success=True,
            provider_duration=provider_duration,
            customer_duration=customer_duration,
            service_duration=service_duration,
            threshold=self.threshold,
            provider_meets_threshold=provider_duration >= service_duration * self.threshold,
            sessions={"provider": provider_sessions, "customer": customer_sessions},
        )
        self.save_session_data(booking_id, result)

        percent = round(provider_duration / service_duration * 100) if service_duration else 0
        logger.info(
            f"📊 Session check for booking {booking_id}: provider {round(provider_duration)}s / "
            f"{service_duration}s ({percent}%), threshold met: {result.provider_meets_threshold}"
        )
        return result
