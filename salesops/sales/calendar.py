from __future__ import annotations

import logging
from typing import Protocol

import httpx
from opentelemetry.trace import Status, StatusCode

from salesops.core.config import get_settings
from salesops.otel import sales_span
from salesops.sales.errors import (
    CalendarNotFoundError,
    CalendarTimeoutError,
    CalendarUnauthenticatedError,
    ExternalCollaboratorError,
)


logger = logging.getLogger("salesops.calendar")


class CalendarLinkProvider(Protocol):
    def fetch_reschedule_link(self, invitee_reference: str, team_credential: str | None) -> str: ...


class CalendlyLinkClient:
    """Resolves an invitee's self-service reschedule URL from the Calendly API.

    ``invitee_reference`` is either the full invitee URI Calendly hands out in
    webhooks or a path relative to ``base_url``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.calendar_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.calendar_timeout_seconds
        self.transport = transport

    def fetch_reschedule_link(self, invitee_reference: str, team_credential: str | None) -> str:
        with sales_span("sales.calendar.fetch_link") as span:
            if not team_credential:
                raise CalendarUnauthenticatedError("calendar integration is not connected for this team")

            url = self._resolve_url(invitee_reference)
            span.set_attribute("http.url", url)
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.get(
                        url,
                        headers={"Authorization": f"Bearer {team_credential}", "Accept": "application/json"},
                    )
            except httpx.TimeoutException as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                logger.warning("calendar.timeout", extra={"error_code": CalendarTimeoutError.code})
                raise CalendarTimeoutError("calendar provider timed out") from exc
            except httpx.HTTPError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.warning("calendar.unavailable", extra={"error_code": ExternalCollaboratorError.code, "error": str(exc)[:500]})
                raise ExternalCollaboratorError("calendar provider request failed") from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code in {401, 403}:
                raise CalendarUnauthenticatedError("calendar credential was rejected")
            if response.status_code == 404:
                raise CalendarNotFoundError("calendar invitee not found")
            if response.status_code >= 400:
                logger.warning(
                    "calendar.unavailable",
                    extra={"error_code": ExternalCollaboratorError.code, "status": response.status_code},
                )
                raise ExternalCollaboratorError(f"calendar provider returned {response.status_code}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise ExternalCollaboratorError("calendar provider returned malformed json") from exc

            resource = payload.get("resource") if isinstance(payload, dict) else None
            reschedule_url = resource.get("reschedule_url") if isinstance(resource, dict) else None
            if not reschedule_url:
                raise CalendarNotFoundError("calendar invitee has no reschedule link")
            return str(reschedule_url)

    def _resolve_url(self, invitee_reference: str) -> str:
        if invitee_reference.startswith(("http://", "https://")):
            return invitee_reference
        return f"{self.base_url}/{invitee_reference.lstrip('/')}"


calendar_client: CalendarLinkProvider = CalendlyLinkClient()
