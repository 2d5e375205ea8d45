"""Google Calendar v3 adapter over httpx.

The adapter performs exactly one HTTP request per call and maps the outcome
onto the transient/fatal error split; retries, token storage and refresh
coordination all live in the layers above it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from slotkeeper.errors import ProviderFatalError, ProviderTransientError, sanitize_message
from slotkeeper.providers.base import (
    CalendarEvent,
    CalendarProvider,
    EventDraft,
    EventPatch,
    EventStatus,
    InsertedEvent,
    TokenGrant,
    classify_status,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_PAGE_SIZE = 250
MAX_PAGES = 20


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_message(f"{error_payload}: {description}")
            return sanitize_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_message(raw_text)
    return "Request failed without an error payload"


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _extract_conferencing_uri(payload: dict[str, Any]) -> str | None:
    hangout_link = payload.get("hangoutLink")
    if isinstance(hangout_link, str) and hangout_link:
        return hangout_link
    conference = payload.get("conferenceData")
    if isinstance(conference, dict):
        for entry in conference.get("entryPoints") or []:
            if isinstance(entry, dict) and entry.get("entryPointType") == "video":
                uri = entry.get("uri")
                if isinstance(uri, str) and uri:
                    return uri
    return None


def _event_from_payload(payload: dict[str, Any]) -> CalendarEvent | None:
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id:
        return None

    raw_status = payload.get("status")
    try:
        status = EventStatus(raw_status) if raw_status else EventStatus.CONFIRMED
    except ValueError:
        status = EventStatus.CONFIRMED

    start_payload = payload.get("start") or {}
    end_payload = payload.get("end") or {}
    start_raw = start_payload.get("dateTime") if isinstance(start_payload, dict) else None
    end_raw = end_payload.get("dateTime") if isinstance(end_payload, dict) else None
    all_day = isinstance(start_payload, dict) and "date" in start_payload and start_raw is None

    start = end = None
    if isinstance(start_raw, str) and isinstance(end_raw, str):
        try:
            start = _parse_google_datetime(start_raw)
            end = _parse_google_datetime(end_raw)
        except ValueError:
            logger.warning("Ignoring event %s with unparseable dateTime", event_id)
            start = end = None

    summary = payload.get("summary")
    return CalendarEvent(
        id=event_id,
        status=status,
        summary=summary if isinstance(summary, str) else None,
        start=start,
        end=end,
        all_day=all_day,
        conferencing_uri=_extract_conferencing_uri(payload),
    )


def _draft_body(draft: EventDraft, *, wants_conferencing: bool) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.summary,
        "start": {"dateTime": _google_rfc3339(draft.start), "timeZone": draft.timezone},
        "end": {"dateTime": _google_rfc3339(draft.end), "timeZone": draft.timezone},
        "attendees": [
            {
                key: value
                for key, value in {
                    "email": attendee.email,
                    "displayName": attendee.display_name,
                    "organizer": attendee.organizer or None,
                    "responseStatus": str(attendee.response_status),
                }.items()
                if value is not None
            }
            for attendee in draft.attendees
        ],
        "reminders": {
            "useDefault": not draft.reminders,
            "overrides": [
                {"method": str(reminder.method), "minutes": reminder.minutes}
                for reminder in draft.reminders
            ],
        },
    }
    if draft.description:
        body["description"] = draft.description
    if draft.location:
        body["location"] = draft.location
    if wants_conferencing:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def _patch_body(patch: EventPatch) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for field_name in ("summary", "description", "location"):
        value = getattr(patch, field_name)
        if value is not None:
            body[field_name] = value
    if patch.status is not None:
        body["status"] = str(patch.status)
    if patch.start is not None:
        body["start"] = {"dateTime": _google_rfc3339(patch.start)}
        if patch.timezone:
            body["start"]["timeZone"] = patch.timezone
    if patch.end is not None:
        body["end"] = {"dateTime": _google_rfc3339(patch.end)}
        if patch.timezone:
            body["end"]["timeZone"] = patch.timezone
    return body


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar REST adapter."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._api_base_url = api_base_url.rstrip("/")
        self._token_url = token_url
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> str:
        return "google"

    def __repr__(self) -> str:
        return f"GoogleCalendarProvider(client_id={self._client_id!r}, client_secret=<redacted>)"

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                data=data,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise ProviderTransientError(
                status_code=None,
                message=sanitize_message(f"{type(exc).__name__}: {exc}"),
            ) from exc

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_statuses: frozenset[int] = frozenset(),
    ) -> dict[str, Any]:
        normalized_path = path if path.startswith("/") else f"/{path}"
        response = await self._send(
            method,
            f"{self._api_base_url}{normalized_path}",
            params=params,
            json_body=json_body,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

        if response.status_code in allow_statuses:
            return {}

        if response.status_code < 200 or response.status_code >= 300:
            raise classify_status(response.status_code, _safe_google_error_message(response))

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderFatalError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderFatalError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    # ------------------------------------------------------------------
    # CalendarProvider
    # ------------------------------------------------------------------

    async def list_events(
        self,
        *,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarEvent]:
        normalized_calendar_id = quote(calendar_id, safe="")
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": MAX_PAGE_SIZE,
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
        }

        events: list[CalendarEvent] = []
        for _ in range(MAX_PAGES):
            payload = await self._request_google_json(
                "GET",
                f"/calendars/{normalized_calendar_id}/events",
                access_token=access_token,
                params=params,
            )
            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event = _event_from_payload(item)
                    if event is not None:
                        events.append(event)

            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            logger.warning(
                "Stopped paging events for calendar after %d pages (%d events)",
                MAX_PAGES,
                len(events),
            )
        return events

    async def insert_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        draft: EventDraft,
        wants_conferencing: bool = False,
    ) -> InsertedEvent:
        normalized_calendar_id = quote(calendar_id, safe="")
        params: dict[str, Any] = {"sendUpdates": "all"}
        if wants_conferencing:
            params["conferenceDataVersion"] = 1

        payload = await self._request_google_json(
            "POST",
            f"/calendars/{normalized_calendar_id}/events",
            access_token=access_token,
            params=params,
            json_body=_draft_body(draft, wants_conferencing=wants_conferencing),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ProviderFatalError(
                status_code=None,
                message="Google Calendar API response is missing the created event id",
            )
        return InsertedEvent(id=event_id, conferencing_uri=_extract_conferencing_uri(payload))

    async def patch_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
        patch: EventPatch,
    ) -> None:
        normalized_calendar_id = quote(calendar_id, safe="")
        normalized_event_id = quote(event_id, safe="")
        await self._request_google_json(
            "PATCH",
            f"/calendars/{normalized_calendar_id}/events/{normalized_event_id}",
            access_token=access_token,
            params={"sendUpdates": "all"},
            json_body=_patch_body(patch),
        )

    async def delete_event(
        self,
        *,
        access_token: str,
        calendar_id: str,
        event_id: str,
    ) -> None:
        normalized_calendar_id = quote(calendar_id, safe="")
        normalized_event_id = quote(event_id, safe="")
        await self._request_google_json(
            "DELETE",
            f"/calendars/{normalized_calendar_id}/events/{normalized_event_id}",
            access_token=access_token,
            params={"sendUpdates": "all"},
            # Already gone counts as deleted.
            allow_statuses=frozenset({404, 410}),
        )

    async def refresh_token(self, *, refresh_token: str) -> TokenGrant:
        response = await self._send(
            "POST",
            self._token_url,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            headers={"Accept": "application/json"},
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise classify_status(
                response.status_code,
                f"Google OAuth token refresh failed: {_safe_google_error_message(response)}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderFatalError(
                status_code=response.status_code,
                message="Google OAuth token endpoint returned invalid JSON",
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderFatalError(
                status_code=response.status_code,
                message="Google OAuth token response is missing a non-empty access_token",
            )

        rotated = payload.get("refresh_token")
        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=rotated.strip() if isinstance(rotated, str) and rotated.strip() else None,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in_seconds),
        )
