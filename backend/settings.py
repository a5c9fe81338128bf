# backend/settings.py

import os
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

CALENDAR_AUTH_MODES = ("static", "client_credentials")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logging.warning(f"[CONFIG] Invalid {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logging.warning(f"[CONFIG] Invalid {name}={raw!r}, using default {default}")
        return default


@dataclass
class Settings:
    """
    Runtime configuration for the scheduling bot.

    Everything is sourced from the environment (a local .env file is honoured
    through python-dotenv). Only the calendar and channel credentials are
    secrets; the rest have working defaults for local runs.
    """

    # Bot Framework channel identity
    microsoft_app_id: str = ""
    microsoft_app_password: str = ""

    # Twilio SMS gateway
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_validate_signature: bool = False
    sms_ack_message: str = "Processing your request."

    # Calendar (Microsoft Graph)
    calendar_auth_mode: str = "static"
    graph_access_token: str = ""
    tenant_id: str = ""
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    graph_events_path: str = "/me/events"
    appointment_timezone: str = "UTC"
    appointment_duration_minutes: int = 30
    attendee_email: str = "doctor@example.com"
    attendee_name: str = "Dr. Smith"

    # Session store bounds
    session_ttl_seconds: int = 1800
    max_sessions: int = 10000

    # Outbound call limits
    http_timeout_seconds: float = 10.0
    calendar_timeout_seconds: float = 20.0

    log_level: str = "INFO"
    port: int = 3000

    def __post_init__(self):
        self.calendar_auth_mode = self.calendar_auth_mode.strip().lower()
        if self.calendar_auth_mode not in CALENDAR_AUTH_MODES:
            raise ValueError(
                f"calendar_auth_mode must be one of {CALENDAR_AUTH_MODES}, got {self.calendar_auth_mode!r}"
            )
        if self.session_ttl_seconds <= 0:
            raise ValueError(f"session_ttl_seconds must be positive, got {self.session_ttl_seconds}")
        if self.max_sessions < 1:
            raise ValueError(f"max_sessions must be at least 1, got {self.max_sessions}")
        if self.appointment_duration_minutes < 0:
            raise ValueError(
                f"appointment_duration_minutes must not be negative, got {self.appointment_duration_minutes}"
            )
        if self.http_timeout_seconds <= 0 or self.calendar_timeout_seconds <= 0:
            raise ValueError("timeouts must be positive")

        if self.calendar_auth_mode == "static" and not self.graph_access_token:
            logging.warning("[CONFIG] MS_GRAPH_ACCESS_TOKEN not set, calendar events will fail")
        if self.calendar_auth_mode == "client_credentials" and not self.tenant_id:
            logging.warning("[CONFIG] TENANT_ID not set, calendar token exchange will fail")

    @property
    def bot_auth_enabled(self) -> bool:
        return bool(self.microsoft_app_id and self.microsoft_app_password)

    @staticmethod
    def from_env() -> "Settings":
        load_dotenv()
        return Settings(
            microsoft_app_id=os.getenv("MICROSOFT_APP_ID", ""),
            microsoft_app_password=os.getenv("MICROSOFT_APP_PASSWORD", ""),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_validate_signature=_env_bool("TWILIO_VALIDATE_SIGNATURE"),
            sms_ack_message=os.getenv("SMS_ACK_MESSAGE", "Processing your request."),
            calendar_auth_mode=os.getenv("CALENDAR_AUTH_MODE", "static"),
            graph_access_token=os.getenv("MS_GRAPH_ACCESS_TOKEN", ""),
            tenant_id=os.getenv("TENANT_ID", ""),
            graph_base_url=os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0"),
            graph_events_path=os.getenv("GRAPH_EVENTS_PATH", "/me/events"),
            appointment_timezone=os.getenv("APPOINTMENT_TIMEZONE", "UTC"),
            appointment_duration_minutes=_env_int("APPOINTMENT_DURATION_MINUTES", 30),
            attendee_email=os.getenv("APPOINTMENT_ATTENDEE_EMAIL", "doctor@example.com"),
            attendee_name=os.getenv("APPOINTMENT_ATTENDEE_NAME", "Dr. Smith"),
            session_ttl_seconds=_env_int("SESSION_TTL_SECONDS", 1800),
            max_sessions=_env_int("MAX_SESSIONS", 10000),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 10.0),
            calendar_timeout_seconds=_env_float("CALENDAR_TIMEOUT_SECONDS", 20.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=_env_int("PORT", 3000),
        )
