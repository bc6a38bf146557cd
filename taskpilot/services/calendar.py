"""
Google Calendar port.

Creates a deadline event on the worker's primary calendar when the worker
has linked Google credentials. Never raises to the caller.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog

from ..config import Settings
from .work_items import as_utc


log = structlog.get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.events"
EVENT_DURATION = timedelta(hours=1)


@dataclass(frozen=True)
class CalendarCredentials:
    """Detached copy of a user's Google tokens; safe to hand to another thread."""

    user_id: int
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @classmethod
    def from_user(cls, user) -> "CalendarCredentials":
        return cls(
            user_id=user.id,
            access_token=user.google_access_token,
            refresh_token=user.google_refresh_token,
        )


class CalendarPort(ABC):
    @abstractmethod
    def create_event(self, credentials: CalendarCredentials, item) -> bool:
        """Create the deadline event; report failure as False instead of raising."""


class NullCalendar(CalendarPort):
    def create_event(self, credentials: CalendarCredentials, item) -> bool:
        return False


class GoogleOAuth:
    """OAuth2 web-server flow used to link a user's Google Calendar."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": CALENDAR_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        payload = {"client_id": self.client_id, "client_secret": self.client_secret, **data}
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(GOOGLE_TOKEN_URL, data=payload)
            response.raise_for_status()
            return response.json()

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """Trade an authorization code for ``access_token`` / ``refresh_token``."""
        return self._token_request(
            {"code": code, "grant_type": "authorization_code", "redirect_uri": self.redirect_uri}
        )

    def refresh_access_token(self, refresh_token: str) -> str:
        tokens = self._token_request({"refresh_token": refresh_token, "grant_type": "refresh_token"})
        return tokens["access_token"]


class GoogleCalendarClient(CalendarPort):
    def __init__(self, oauth: GoogleOAuth, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.oauth = oauth
        self.timeout = timeout
        self.transport = transport

    def _event_body(self, item) -> Dict[str, Any]:
        end = as_utc(item.deadline)
        start = end - EVENT_DURATION
        description = item.instructions
        if item.description:
            description = f"{item.description}\n\n{item.instructions}"
        return {
            "summary": f"TaskPilot: {item.task}",
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": end.isoformat(), "timeZone": "UTC"},
            "reminders": {"useDefault": True},
        }

    def create_event(self, credentials: CalendarCredentials, item) -> bool:
        if not credentials.refresh_token and not credentials.access_token:
            return False
        try:
            access_token: Optional[str] = credentials.access_token
            if credentials.refresh_token:
                access_token = self.oauth.refresh_access_token(credentials.refresh_token)
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    GOOGLE_EVENTS_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                    json=self._event_body(item),
                )
                response.raise_for_status()
                event_id = response.json().get("id")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            log.warning("calendar_event_failed", user_id=credentials.user_id, work_item_id=item.id, error=str(e))
            return False
        log.info("calendar_event_created", user_id=credentials.user_id, work_item_id=item.id, event_id=event_id)
        return True


def build_oauth(settings: Settings) -> Optional[GoogleOAuth]:
    if not settings.calendar_enabled:
        return None
    return GoogleOAuth(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        redirect_uri=settings.google_redirect_uri,
        timeout=settings.side_effect_timeout_seconds,
    )


def build_calendar(settings: Settings) -> CalendarPort:
    oauth = build_oauth(settings)
    if oauth is None:
        log.warning("calendar_disabled", reason="Google OAuth client not configured")
        return NullCalendar()
    return GoogleCalendarClient(oauth, timeout=settings.side_effect_timeout_seconds)
