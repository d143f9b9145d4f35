"""
Meeting Service
Creates and deletes Google Meet / Zoom meetings for online bookings using the
provider's stored OAuth integration.
"""

import base64
import logging
import uuid
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Optional

import httpx
from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from ..config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, SECRET_KEY, ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET
from ..models import Booking, MeetingIntegration
from ..utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
ZOOM_TOKEN_URL = "https://zoom.us/oauth/token"
ZOOM_API = "https://api.zoom.us/v2"

GOOGLE_MEET = "google_meet"
ZOOM = "zoom"


def _cipher() -> Fernet:
    return Fernet(base64.urlsafe_b64encode(SECRET_KEY.encode().ljust(32, b"=")[:32]))


def encrypt_token(token: str) -> str:
    return _cipher().encrypt(token.encode()).decode()


def decrypt_token(token: str) -> str:
    return _cipher().decrypt(token.encode()).decode()


def is_google_meet_link(link: Optional[str]) -> bool:
    return bool(link) and "meet.google.com" in link


class MeetingService:
    """Meeting generator for online bookings"""

    def __init__(self, db: Session, http_client: Optional[httpx.AsyncClient] = None):
        self.db = db
        self._http_client = http_client

    def _client(self):
        """Shared client when one was injected, otherwise a short-lived one"""
        if self._http_client is not None:
            return nullcontext(self._http_client)
        return httpx.AsyncClient(timeout=15.0)

    def _get_integration(self, user_id: uuid.UUID, platform: str) -> Optional[MeetingIntegration]:
        return (
            self.db.query(MeetingIntegration)
            .filter(
                MeetingIntegration.user_id == user_id,
                MeetingIntegration.platform == platform,
                MeetingIntegration.is_active.is_(True),
            )
            .first()
        )

    async def _refresh(self, integration: MeetingIntegration) -> Optional[str]:
        """Exchange the stored refresh token for a new access token and persist it"""
        if not integration.refresh_token:
            logger.error(f"❌ No refresh token for {integration.platform} integration {integration.id}")
            return None

        refresh_token = decrypt_token(integration.refresh_token)
        if integration.platform == GOOGLE_MEET:
            request = {
                "url": GOOGLE_TOKEN_URL,
                "data": {
                    "client_id": GOOGLE_CLIENT_ID,
                    "client_secret": GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            }
        else:
            basic = base64.b64encode(f"{ZOOM_CLIENT_ID}:{ZOOM_CLIENT_SECRET}".encode()).decode()
            request = {
                "url": ZOOM_TOKEN_URL,
                "data": {"grant_type": "refresh_token", "refresh_token": refresh_token},
                "headers": {"Authorization": f"Basic {basic}"},
            }

        async with self._client() as client:
            response = await client.post(**request)

        if response.status_code != 200:
            logger.error(f"❌ {integration.platform} token refresh failed: {response.text}")
            return None

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            logger.error("❌ No access token in refresh response")
            return None

        integration.access_token = encrypt_token(access_token)
        if tokens.get("refresh_token"):
            integration.refresh_token = encrypt_token(tokens["refresh_token"])
        integration.expires_at = utcnow() + timedelta(seconds=tokens.get("expires_in", 3600))
        self.db.commit()
        logger.info(f"✅ {integration.platform} token refreshed")
        return access_token

    async def get_valid_access_token(self, integration: MeetingIntegration, force_refresh: bool = False) -> Optional[str]:
        """Decrypted access token, refreshed when expired or about to expire"""
        expires_at = ensure_utc(integration.expires_at)
        if force_refresh or (expires_at and expires_at <= utcnow() + timedelta(minutes=5)):
            logger.info(f"🔄 {integration.platform} token expired, refreshing...")
            return await self._refresh(integration)
        return decrypt_token(integration.access_token)

    async def _create_google_event(self, access_token: str, booking: Booking) -> httpx.Response:
        start = ensure_utc(booking.scheduled_at)
        end = start + timedelta(minutes=booking.duration_minutes)
        timezone = (booking.provider.timezone if booking.provider else None) or "UTC"
        customer = booking.customer
        title = booking.service.title if booking.service else "Booking"

        event = {
            "summary": f"{title} - Meeting",
            "description": f"Meeting for {title}\nCustomer: {(customer.display_name if customer else None) or 'Customer'}",
            "start": {"dateTime": start.isoformat(), "timeZone": timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": timezone},
            "attendees": [{"email": customer.email}] if customer and customer.email else [],
            "conferenceData": {
                "createRequest": {
                    "requestId": f"meet-{booking.id}-{int(datetime.now().timestamp())}",
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }
        async with self._client() as client:
            return await client.post(
                f"{GOOGLE_CALENDAR_API}/calendars/primary/events",
                params={"conferenceDataVersion": 1},
                headers={"Authorization": f"Bearer {access_token}"},
                json=event,
            )

    async def _create_zoom_meeting(self, access_token: str, booking: Booking) -> httpx.Response:
        title = booking.service.title if booking.service else "Booking"
        payload = {
            "topic": f"{title} - Meeting",
            "type": 2,  # Scheduled meeting
            "start_time": ensure_utc(booking.scheduled_at).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "duration": booking.duration_minutes,
            "timezone": "UTC",
            "settings": {"join_before_host": False, "waiting_room": True},
        }
        async with self._client() as client:
            return await client.post(
                f"{ZOOM_API}/users/me/meetings",
                headers={"Authorization": f"Bearer {access_token}"},
                json=payload,
            )

    async def _create_meeting(self, platform: str, integration: MeetingIntegration, booking: Booking):
        """Returns (meeting_link, meeting_id) or (None, None)"""
        create = self._create_google_event if platform == GOOGLE_MEET else self._create_zoom_meeting

        access_token = await self.get_valid_access_token(integration)
        if not access_token:
            return None, None

        response = await create(access_token, booking)
        if response.status_code == 401:
            # Token revoked or clock skew; refresh once and retry
            access_token = await self.get_valid_access_token(integration, force_refresh=True)
            if not access_token:
                return None, None
            response = await create(access_token, booking)

        if response.status_code not in (200, 201):
            logger.error(f"❌ {platform} API error ({response.status_code}): {response.text}")
            return None, None

        data = response.json()
        if platform == GOOGLE_MEET:
            link = data.get("hangoutLink") or next(
                (
                    ep.get("uri")
                    for ep in (data.get("conferenceData") or {}).get("entryPoints", [])
                    if ep.get("entryPointType") == "video"
                ),
                None,
            )
            return link, data.get("id")
        return data.get("join_url"), str(data.get("id")) if data.get("id") else None

    async def generate_meeting_link_for_booking(self, booking_id: uuid.UUID) -> Optional[str]:
        """
        Create a meeting on the provider's connected platform and store the link
        on the booking. Returns the link, or None when nothing was created.
        """
        try:
            booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
            if not booking:
                logger.error(f"❌ Booking {booking_id} not found for meeting generation")
                return None

            platform = booking.service.meeting_platform if booking.service else None
            if not platform:
                logger.info(f"ℹ️ Service for booking {booking_id} does not use a meeting platform")
                return None

            integration = self._get_integration(booking.provider_id, platform)
            if not integration:
                logger.warning(f"⚠️ Provider {booking.provider_id} has no active {platform} integration")
                return None

            link, meeting_id = await self._create_meeting(platform, integration, booking)
            if not link:
                return None

            booking.meeting_link = link
            booking.meeting_id = meeting_id
            booking.meeting_platform = platform
            self.db.commit()
            logger.info(f"✅ Generated {platform} meeting for booking {booking_id}: {link}")
            return link
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Failed to generate meeting link for booking {booking_id}: {e}")
            return None

    async def delete_meeting_for_booking(self, booking_id: uuid.UUID) -> bool:
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking or not booking.meeting_id or not booking.meeting_platform:
            return False

        integration = self._get_integration(booking.provider_id, booking.meeting_platform)
        if integration:
            access_token = await self.get_valid_access_token(integration)
            if access_token:
                if booking.meeting_platform == GOOGLE_MEET:
                    url = f"{GOOGLE_CALENDAR_API}/calendars/primary/events/{booking.meeting_id}"
                else:
                    url = f"{ZOOM_API}/meetings/{booking.meeting_id}"
                async with self._client() as client:
                    response = await client.delete(url, headers={"Authorization": f"Bearer {access_token}"})
                if response.status_code not in (200, 204, 404, 410):
                    logger.error(f"❌ Failed to delete {booking.meeting_platform} meeting: {response.text}")
                    return False

        booking.meeting_link = None
        booking.meeting_id = None
        self.db.commit()
        logger.info(f"✅ Deleted meeting for booking {booking_id}")
        return True
