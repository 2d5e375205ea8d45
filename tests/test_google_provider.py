"""Unit tests for slotkeeper.providers.google.GoogleCalendarProvider.

All HTTP traffic goes through ``httpx.MockTransport``.
"""

from __future__ import annotations

import datetime as dt
import json

import httpx
import pytest

from slotkeeper.errors import ProviderFatalError, ProviderTransientError
from slotkeeper.providers.base import (
    EventAttendee,
    EventDraft,
    EventPatch,
    EventReminder,
    EventStatus,
    ReminderMethod,
    ResponseStatus,
)
from slotkeeper.providers.google import (
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarProvider,
    _coerce_expires_in_seconds,
    _google_rfc3339,
    _parse_google_datetime,
)

pytestmark = pytest.mark.unit

_START = dt.datetime(2030, 6, 3, 10, 0, tzinfo=dt.UTC)
_END = dt.datetime(2030, 6, 3, 10, 30, tzinfo=dt.UTC)


def _provider(handler) -> tuple[GoogleCalendarProvider, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    provider = GoogleCalendarProvider(
        client_id="client-id", client_secret="client-secret", http_client=client
    )
    return provider, requests


def _draft() -> EventDraft:
    return EventDraft(
        summary="Consultation - Sam Visitor",
        description="Appointment with Sam Visitor",
        start=_START,
        end=_END,
        timezone="Europe/London",
        attendees=[
            EventAttendee(
                email="owner@example.com",
                display_name="Dana",
                organizer=True,
                response_status=ResponseStatus.ACCEPTED,
            ),
            EventAttendee(
                email="sam@example.com",
                display_name="Sam Visitor",
                response_status=ResponseStatus.ACCEPTED,
            ),
        ],
        reminders=[
            EventReminder(method=ReminderMethod.EMAIL, minutes=0),
            EventReminder(method=ReminderMethod.POPUP, minutes=30),
        ],
    )


class TestHelpers:
    def test_rfc3339_uses_z_suffix(self) -> None:
        assert _google_rfc3339(_START) == "2030-06-03T10:00:00Z"

    def test_parse_offset_and_z(self) -> None:
        assert _parse_google_datetime("2030-06-03T10:00:00Z") == _START
        parsed = _parse_google_datetime("2030-06-03T12:00:00+02:00")
        assert parsed == _START

    @pytest.mark.parametrize("value,expected", [(120, 120), (0, 3600), ("x", 3600), (True, 3600)])
    def test_expires_in_coercion(self, value, expected) -> None:
        assert _coerce_expires_in_seconds(value) == expected


class TestListEvents:
    async def test_parses_timed_all_day_and_cancelled_events(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "timed",
                            "status": "confirmed",
                            "start": {"dateTime": "2030-06-03T10:00:00Z"},
                            "end": {"dateTime": "2030-06-03T11:00:00Z"},
                        },
                        {"id": "holiday", "start": {"date": "2030-06-03"}, "end": {"date": "2030-06-04"}},
                        {
                            "id": "gone",
                            "status": "cancelled",
                            "start": {"dateTime": "2030-06-03T12:00:00Z"},
                            "end": {"dateTime": "2030-06-03T13:00:00Z"},
                        },
                        {"summary": "no id"},
                    ]
                },
            )

        provider, requests = _provider(handler)
        events = await provider.list_events(
            access_token="tok", calendar_id="owner@example.com", time_min=_START, time_max=_END
        )

        assert [event.id for event in events] == ["timed", "holiday", "gone"]
        assert events[0].busy_interval() is not None
        assert events[1].all_day and events[1].busy_interval() is None
        assert events[2].status == EventStatus.CANCELLED and events[2].busy_interval() is None

        request = requests[0]
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.url.path.endswith("/calendars/owner@example.com/events")
        assert request.url.params["singleEvents"] == "true"
        assert request.url.params["timeMin"] == "2030-06-03T10:00:00Z"

    async def test_follows_page_tokens(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(200, json={"items": [{"id": "second"}]})
            return httpx.Response(200, json={"items": [{"id": "first"}], "nextPageToken": "p2"})

        provider, requests = _provider(handler)
        events = await provider.list_events(
            access_token="tok", calendar_id="primary", time_min=_START, time_max=_END
        )
        assert [event.id for event in events] == ["first", "second"]
        assert len(requests) == 2

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status: int) -> None:
        provider, _ = _provider(lambda request: httpx.Response(status, json={}))
        with pytest.raises(ProviderTransientError) as excinfo:
            await provider.list_events(
                access_token="tok", calendar_id="primary", time_min=_START, time_max=_END
            )
        assert excinfo.value.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    async def test_other_statuses_are_fatal(self, status: int) -> None:
        provider, _ = _provider(
            lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
        )
        with pytest.raises(ProviderFatalError) as excinfo:
            await provider.list_events(
                access_token="tok", calendar_id="primary", time_min=_START, time_max=_END
            )
        assert excinfo.value.requires_reconnect is (status in (401, 403))

    async def test_transport_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider, _ = _provider(handler)
        with pytest.raises(ProviderTransientError) as excinfo:
            await provider.list_events(
                access_token="tok", calendar_id="primary", time_min=_START, time_max=_END
            )
        assert excinfo.value.status_code is None

    async def test_error_messages_are_redacted(self) -> None:
        provider, _ = _provider(
            lambda request: httpx.Response(
                400, json={"error": {"message": "bad access_token=ya29.secret"}}
            )
        )
        with pytest.raises(ProviderFatalError) as excinfo:
            await provider.list_events(
                access_token="tok", calendar_id="primary", time_min=_START, time_max=_END
            )
        assert "ya29.secret" not in str(excinfo.value)


class TestInsertEvent:
    async def test_body_carries_attendees_reminders_and_timezone(self) -> None:
        provider, requests = _provider(
            lambda request: httpx.Response(200, json={"id": "evt-1"})
        )

        inserted = await provider.insert_event(
            access_token="tok", calendar_id="primary", draft=_draft()
        )

        assert inserted.id == "evt-1"
        assert inserted.conferencing_uri is None
        body = json.loads(requests[0].content)
        assert body["start"] == {"dateTime": "2030-06-03T10:00:00Z", "timeZone": "Europe/London"}
        assert body["attendees"][0] == {
            "email": "owner@example.com",
            "displayName": "Dana",
            "organizer": True,
            "responseStatus": "accepted",
        }
        assert body["attendees"][1]["responseStatus"] == "accepted"
        assert "organizer" not in body["attendees"][1]
        assert body["reminders"] == {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 0},
                {"method": "popup", "minutes": 30},
            ],
        }
        assert "conferenceData" not in body
        assert requests[0].url.params["sendUpdates"] == "all"
        assert "conferenceDataVersion" not in requests[0].url.params

    async def test_conferencing_request_and_link(self) -> None:
        provider, requests = _provider(
            lambda request: httpx.Response(
                200, json={"id": "evt-2", "hangoutLink": "https://meet.google.com/xyz"}
            )
        )

        inserted = await provider.insert_event(
            access_token="tok", calendar_id="primary", draft=_draft(), wants_conferencing=True
        )

        assert inserted.conferencing_uri == "https://meet.google.com/xyz"
        body = json.loads(requests[0].content)
        assert body["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {
            "type": "hangoutsMeet"
        }
        assert requests[0].url.params["conferenceDataVersion"] == "1"

    async def test_missing_event_id_is_fatal(self) -> None:
        provider, _ = _provider(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ProviderFatalError):
            await provider.insert_event(access_token="tok", calendar_id="primary", draft=_draft())


class TestPatchAndDelete:
    async def test_patch_sends_only_set_fields(self) -> None:
        provider, requests = _provider(lambda request: httpx.Response(200, json={"id": "evt-1"}))
        await provider.patch_event(
            access_token="tok",
            calendar_id="primary",
            event_id="evt-1",
            patch=EventPatch(summary="Moved", start=_START, end=_END, timezone="UTC"),
        )
        assert requests[0].method == "PATCH"
        body = json.loads(requests[0].content)
        assert set(body) == {"summary", "start", "end"}
        assert body["end"] == {"dateTime": "2030-06-03T10:30:00Z", "timeZone": "UTC"}

    @pytest.mark.parametrize("status", [204, 404, 410])
    async def test_delete_succeeds_when_gone(self, status: int) -> None:
        provider, requests = _provider(lambda request: httpx.Response(status))
        await provider.delete_event(access_token="tok", calendar_id="primary", event_id="evt-1")
        assert requests[0].method == "DELETE"


class TestRefreshToken:
    async def test_posts_refresh_grant(self) -> None:
        provider, requests = _provider(
            lambda request: httpx.Response(
                200, json={"access_token": "new-access", "expires_in": 3599}
            )
        )

        grant = await provider.refresh_token(refresh_token="old-refresh")

        assert grant.access_token == "new-access"
        assert grant.refresh_token is None
        assert grant.expires_at > dt.datetime.now(dt.UTC) + dt.timedelta(minutes=59)
        request = requests[0]
        assert str(request.url) == GOOGLE_OAUTH_TOKEN_URL
        form = dict(httpx.QueryParams(request.content.decode()))
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "old-refresh"
        assert "new-access" not in repr(grant)

    async def test_rotated_refresh_token_is_returned(self) -> None:
        provider, _ = _provider(
            lambda request: httpx.Response(
                200, json={"access_token": "a", "refresh_token": "r2", "expires_in": 60}
            )
        )
        grant = await provider.refresh_token(refresh_token="r1")
        assert grant.refresh_token == "r2"

    async def test_invalid_grant_is_fatal(self) -> None:
        provider, _ = _provider(
            lambda request: httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token has been revoked"}
            )
        )
        with pytest.raises(ProviderFatalError, match="invalid_grant"):
            await provider.refresh_token(refresh_token="r1")

    async def test_missing_access_token_is_fatal(self) -> None:
        provider, _ = _provider(lambda request: httpx.Response(200, json={"expires_in": 60}))
        with pytest.raises(ProviderFatalError):
            await provider.refresh_token(refresh_token="r1")

    async def test_token_endpoint_outage_is_transient(self) -> None:
        provider, _ = _provider(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(ProviderTransientError):
            await provider.refresh_token(refresh_token="r1")

    def test_repr_hides_client_secret(self) -> None:
        provider = GoogleCalendarProvider(client_id="cid", client_secret="s3cr3t")
        assert "s3cr3t" not in repr(provider)
