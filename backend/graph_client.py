# backend/graph_client.py

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

import requests
from pydantic import BaseModel

from auth_utils import (
    GRAPH_SCOPE,
    ClientCredentialTokenProvider,
    StaticTokenProvider,
    token_url_for,
)
from errors import CalendarApiError, CredentialError
from settings import Settings


class AppointmentRequest(BaseModel):
    name: str
    datetime: str


class Attendee(BaseModel):
    email: str
    name: str


def compute_end(start: str, duration_minutes: int) -> str:
    """
    End time for the event.

    Input is never validated, so a start that is not ISO-8601 is passed
    through unchanged as the end as well.
    """
    try:
        parsed = datetime.fromisoformat(start.strip())
    except ValueError:
        return start
    return (parsed + timedelta(minutes=duration_minutes)).isoformat()


def build_event_payload(
    request: AppointmentRequest,
    time_zone: str,
    attendee: Attendee,
    duration_minutes: int = 0,
) -> dict:
    return {
        "subject": f"Appointment with {request.name}",
        "start": {
            "dateTime": request.datetime,
            "timeZone": time_zone,
        },
        "end": {
            "dateTime": compute_end(request.datetime, duration_minutes),
            "timeZone": time_zone,
        },
        "attendees": [
            {
                "emailAddress": {
                    "address": attendee.email,
                    "name": attendee.name,
                },
                "type": "required",
            }
        ],
    }


class GraphCalendarClient:
    def __init__(
        self,
        token_provider,
        base_url: str = "https://graph.microsoft.com/v1.0",
        events_path: str = "/me/events",
        time_zone: str = "UTC",
        attendee: Optional[Attendee] = None,
        duration_minutes: int = 30,
        http_timeout: float = 10.0,
        call_timeout: float = 20.0,
    ):
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.events_path = "/" + events_path.lstrip("/")
        self.time_zone = time_zone
        self.attendee = attendee or Attendee(email="doctor@example.com", name="Dr. Smith")
        self.duration_minutes = duration_minutes
        self.http_timeout = http_timeout
        self.call_timeout = call_timeout

    def transaction_id(self, request: AppointmentRequest) -> str:
        """Same booking, same id, so Graph drops a retried duplicate."""
        key = f"{self.base_url}{self.events_path}|{request.name}|{request.datetime}"
        return str(uuid.uuid5(uuid.NAMESPACE_URL, key))

    async def create_event(self, name: str, datetime_text: str) -> None:
        """Book the appointment; raises CredentialError or CalendarApiError on failure."""
        request = AppointmentRequest(name=name, datetime=datetime_text)
        # call_timeout is enforced inside the worker, which is never abandoned
        await asyncio.to_thread(self._post_event, request)

    def _post_event(self, request: AppointmentRequest) -> dict:
        deadline = time.monotonic() + self.call_timeout

        token = self.token_provider.get_token(timeout=min(self.http_timeout, self.call_timeout))
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logging.error(f"[CALENDAR TIMEOUT] budget of {self.call_timeout}s spent before booking {request.name}")
            raise CalendarApiError(f"calendar call timed out after {self.call_timeout}s, nothing was booked")

        payload = build_event_payload(request, self.time_zone, self.attendee, self.duration_minutes)
        payload["transactionId"] = self.transaction_id(request)
        url = f"{self.base_url}{self.events_path}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            res = requests.post(url, json=payload, headers=headers, timeout=min(self.http_timeout, remaining))
        except requests.Timeout as e:
            raise CalendarApiError(f"calendar call timed out: {e}") from e
        except requests.RequestException as e:
            raise CalendarApiError(f"calendar API connection error: {e}") from e

        if res.status_code in (401, 403):
            self.token_provider.invalidate()
            raise CredentialError(f"calendar API rejected the token: status={res.status_code}")
        if res.status_code >= 400:
            raise CalendarApiError(
                f"calendar API error: status={res.status_code} body={res.text[:500]}",
                status_code=res.status_code,
            )

        logging.info(f"[CALENDAR EVENT CREATED] {payload['subject']} at {request.datetime}")
        try:
            return res.json()
        except ValueError:
            return {}


def create_calendar_client(settings: Settings) -> GraphCalendarClient:
    if settings.calendar_auth_mode == "client_credentials":
        provider = ClientCredentialTokenProvider(
            token_url=token_url_for(settings.tenant_id),
            client_id=settings.microsoft_app_id,
            client_secret=settings.microsoft_app_password,
            scope=GRAPH_SCOPE,
            timeout=settings.http_timeout_seconds,
        )
    else:
        provider = StaticTokenProvider(settings.graph_access_token)

    logging.info(f"[CALENDAR] auth_mode={settings.calendar_auth_mode} | path={settings.graph_events_path}")
    return GraphCalendarClient(
        token_provider=provider,
        base_url=settings.graph_base_url,
        events_path=settings.graph_events_path,
        time_zone=settings.appointment_timezone,
        attendee=Attendee(email=settings.attendee_email, name=settings.attendee_name),
        duration_minutes=settings.appointment_duration_minutes,
        http_timeout=settings.http_timeout_seconds,
        call_timeout=settings.calendar_timeout_seconds,
    )
