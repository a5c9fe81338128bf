"""
Shared fixtures: a fake calendar, recording channel senders and an app wired
to them, so no test talks to Twilio, Graph or the Bot Connector.
"""

import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

from dialog import StepSequencer
from dispatcher import CHANNEL_BOTFRAMEWORK, CHANNEL_SMS, ChannelEvent, InboundDispatcher
from main import create_app
from session_memory import SessionStore
from settings import Settings


class RecordingSender:
    def __init__(self):
        self.sent = []

    async def send(self, event, text):
        self.sent.append((event.sender_id, text))

    @property
    def texts(self):
        return [text for _, text in self.sent]


@pytest.fixture
def test_settings():
    return Settings(
        graph_access_token="test-token",
        twilio_account_sid="AC123",
        twilio_auth_token="twilio-secret",
        session_ttl_seconds=1800,
        max_sessions=100,
    )


@pytest.fixture
def calendar():
    """Stand-in for GraphCalendarClient.create_event"""
    return AsyncMock(return_value=None)


@pytest.fixture
def store():
    return SessionStore(max_sessions=100, ttl_seconds=1800)


@pytest.fixture
def sequencer(calendar):
    return StepSequencer(calendar)


@pytest.fixture
def sms_sender():
    return RecordingSender()


@pytest.fixture
def bot_sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(store, sequencer, sms_sender, bot_sender):
    return InboundDispatcher(
        store=store,
        sequencer=sequencer,
        senders={CHANNEL_SMS: sms_sender, CHANNEL_BOTFRAMEWORK: bot_sender},
    )


@pytest.fixture
def client(test_settings, dispatcher):
    return TestClient(create_app(test_settings, dispatcher))


@pytest.fixture
def sms_event():
    def make(text, sender="+15550001111", recipient="+15559990000"):
        return ChannelEvent(channel=CHANNEL_SMS, sender_id=sender, recipient_id=recipient, text=text)

    return make
