from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from calmirror.errors import AuthenticationError
from calmirror.models import GoogleConfig


logger = logging.getLogger(__name__)

CREDENTIALS_META_KEY = "google_credentials"


def _parse_expiry(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    # google-auth compares expiry against a naive UTC clock.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class CredentialStore:
    """The single stored Google token set, kept as JSON in the state store."""

    def __init__(self, state_store: Any, key: str = CREDENTIALS_META_KEY) -> None:
        self.state_store = state_store
        self.key = key

    def load(self) -> dict[str, Any] | None:
        raw = self.state_store.get_meta(self.key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored Google credentials are not valid JSON, ignoring them")
            return None
        return data if isinstance(data, dict) else None

    def save_token_set(self, data: dict[str, Any]) -> None:
        payload = {key: value for key, value in data.items() if value not in (None, "")}
        self.state_store.set_meta(self.key, json.dumps(payload, ensure_ascii=False))

    def save(self, credentials: Credentials) -> None:
        expiry = credentials.expiry
        self.save_token_set(
            {
                "token": credentials.token,
                "refresh_token": credentials.refresh_token,
                "token_uri": credentials.token_uri,
                "client_id": credentials.client_id,
                "client_secret": credentials.client_secret,
                "scopes": list(credentials.scopes or []),
                "expiry": expiry.replace(tzinfo=timezone.utc).isoformat() if expiry else None,
            }
        )

    def has_credentials(self) -> bool:
        data = self.load() or {}
        return bool(data.get("refresh_token") or data.get("token"))


class GoogleCalendarClient:
    def __init__(self, service: Any, calendar_id: str = "primary") -> None:
        self.service = service
        self.calendar_id = calendar_id

    def create_event(self, body: dict[str, Any]) -> str:
        created = self.service.events().insert(calendarId=self.calendar_id, body=body).execute()
        event_id = str((created or {}).get("id", ""))
        if not event_id:
            raise ValueError("Calendar API returned an event without an id")
        return event_id

    def update_event(self, event_id: str, body: dict[str, Any]) -> None:
        self.service.events().update(calendarId=self.calendar_id, eventId=event_id, body=body).execute()

    def delete_event(self, event_id: str) -> None:
        self.service.events().delete(calendarId=self.calendar_id, eventId=event_id).execute()


class GoogleClientFactory:
    def __init__(
        self,
        config: GoogleConfig,
        credential_store: CredentialStore,
        on_refresh: Callable[[Credentials], None] | None = None,
    ) -> None:
        self.config = config
        self.credential_store = credential_store
        self.on_refresh = on_refresh or credential_store.save

    def credentials(self) -> Credentials:
        stored = self.credential_store.load()
        if not stored:
            raise AuthenticationError("No stored Google credentials; upload a token set first")
        credentials = Credentials(
            token=stored.get("token") or stored.get("access_token"),
            refresh_token=stored.get("refresh_token"),
            token_uri=stored.get("token_uri") or self.config.token_uri,
            client_id=stored.get("client_id") or self.config.client_id or None,
            client_secret=stored.get("client_secret") or self.config.client_secret or None,
            scopes=stored.get("scopes") or self.config.scopes,
            expiry=_parse_expiry(stored.get("expiry")),
        )
        if credentials.valid:
            return credentials
        if not credentials.refresh_token:
            raise AuthenticationError("Stored Google credentials are expired and carry no refresh token")
        try:
            credentials.refresh(Request())
        except RefreshError as exc:
            raise AuthenticationError(f"Google token refresh failed: {exc}") from exc
        logger.info("Refreshed Google access token")
        self.on_refresh(credentials)
        return credentials

    def build(self) -> GoogleCalendarClient:
        service = build("calendar", "v3", credentials=self.credentials(), cache_discovery=False)
        return GoogleCalendarClient(service, self.config.calendar_id)
