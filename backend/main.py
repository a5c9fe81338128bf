# main.py

import logging
import os
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from bot_utils import create_bot_sender, create_bot_validator, router as bot_router
from dialog import StepSequencer
from dispatcher import CHANNEL_BOTFRAMEWORK, CHANNEL_SMS, InboundDispatcher
from graph_client import create_calendar_client
from session_memory import SessionStore
from settings import Settings
from twilio_utils import TwilioSmsSender, router as twilio_router

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging() -> None:
    # Runs before Settings.from_env() so its config warnings are formatted too
    load_dotenv()
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    if not isinstance(logging.getLevelName(level), int):
        level = "INFO"
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def build_dispatcher(settings: Settings) -> InboundDispatcher:
    store = SessionStore(max_sessions=settings.max_sessions, ttl_seconds=settings.session_ttl_seconds)
    calendar = create_calendar_client(settings)
    dispatcher = InboundDispatcher(store=store, sequencer=StepSequencer(calendar.create_event))
    dispatcher.register(CHANNEL_SMS, TwilioSmsSender(settings.twilio_account_sid, settings.twilio_auth_token))
    dispatcher.register(CHANNEL_BOTFRAMEWORK, create_bot_sender(settings))
    return dispatcher


def create_app(
    settings: Optional[Settings] = None,
    dispatcher: Optional[InboundDispatcher] = None,
    bot_validator=None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    dispatcher = dispatcher or build_dispatcher(settings)

    app = FastAPI(title="Appointment Scheduler Bot", version="0.1.0")
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.bot_validator = bot_validator or create_bot_validator(settings)
    app.include_router(bot_router)
    app.include_router(twilio_router)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"ok": True, "sessions": len(app.state.dispatcher.store)}

    return app


configure_logging()
SETTINGS = Settings.from_env()

app = create_app(SETTINGS)


if __name__ == "__main__":
    logging.info(f"Server is running on port {SETTINGS.port}")
    uvicorn.run(app, host="0.0.0.0", port=SETTINGS.port)
