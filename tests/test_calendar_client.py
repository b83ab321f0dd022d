from __future__ import annotations

import httpx
import pytest

from salesops.sales.calendar import CalendlyLinkClient
from salesops.sales.errors import (
    CalendarNotFoundError,
    CalendarTimeoutError,
    CalendarUnauthenticatedError,
    ExternalCollaboratorError,
)


def _client(handler) -> CalendlyLinkClient:
    return CalendlyLinkClient(base_url="https://calendar.test/v2/", timeout=1.0, transport=httpx.MockTransport(handler))


def test_fetch_reschedule_link_reads_invitee_resource() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"resource": {"reschedule_url": "https://calendly.com/reschedulings/xyz"}})

    url = _client(handler).fetch_reschedule_link("/scheduled_events/ev1/invitees/inv1", "team-token")

    assert url == "https://calendly.com/reschedulings/xyz"
    assert str(seen[0].url) == "https://calendar.test/v2/scheduled_events/ev1/invitees/inv1"
    assert seen[0].headers["authorization"] == "Bearer team-token"


def test_full_invitee_uri_is_used_as_is() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"resource": {"reschedule_url": "https://calendly.com/reschedulings/abc"}})

    _client(handler).fetch_reschedule_link("https://api.calendly.com/scheduled_events/ev2/invitees/inv2", "team-token")

    assert seen == ["https://api.calendly.com/scheduled_events/ev2/invitees/inv2"]


def test_missing_credential_fails_without_calling_provider() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(CalendarUnauthenticatedError):
        _client(handler).fetch_reschedule_link("invitees/inv1", None)
    assert calls == []


@pytest.mark.parametrize(
    ("status_code", "error_type"),
    [
        (401, CalendarUnauthenticatedError),
        (403, CalendarUnauthenticatedError),
        (404, CalendarNotFoundError),
        (500, ExternalCollaboratorError),
        (429, ExternalCollaboratorError),
    ],
)
def test_provider_errors_map_to_domain_errors(status_code: int, error_type: type[Exception]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"message": "nope"})

    with pytest.raises(error_type):
        _client(handler).fetch_reschedule_link("invitees/inv1", "team-token")


def test_timeout_maps_to_calendar_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(CalendarTimeoutError) as exc_info:
        _client(handler).fetch_reschedule_link("invitees/inv1", "team-token")
    assert exc_info.value.status_code == 504
    assert exc_info.value.code == "calendar_timeout"


def test_transport_failure_maps_to_external_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalCollaboratorError) as exc_info:
        _client(handler).fetch_reschedule_link("invitees/inv1", "team-token")
    assert exc_info.value.code == "calendar_unavailable"


def test_resource_without_reschedule_url_is_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"resource": {"status": "active"}})

    with pytest.raises(CalendarNotFoundError):
        _client(handler).fetch_reschedule_link("invitees/inv1", "team-token")


def test_malformed_json_is_external_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>maintenance</html>", headers={"content-type": "text/html"})

    with pytest.raises(ExternalCollaboratorError) as exc_info:
        _client(handler).fetch_reschedule_link("invitees/inv1", "team-token")
    assert exc_info.value.code == "calendar_unavailable"
