# backend/dialog.py

"""
Three-step appointment script.

The conversation is a tiny linear state machine:

    NEW -> AWAITING_NAME -> AWAITING_DATETIME -> COMPLETED

Each user turn moves it forward by at most one state. The last transition
books the calendar event and only happens if booking succeeds.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from errors import CalendarApiError, CredentialError

NAME_PROMPT = "Please provide your name:"
DATETIME_PROMPT = "Please provide the date and time for the appointment:"
CONFIRMATION_MESSAGE = "Your appointment has been scheduled."
FAILURE_MESSAGE = (
    "Sorry, we could not schedule your appointment right now. "
    "Please send the date and time again to retry."
)

CreateEvent = Callable[[str, str], Awaitable[None]]


class DialogState(str, Enum):
    NEW = "new"
    AWAITING_NAME = "awaiting_name"
    AWAITING_DATETIME = "awaiting_datetime"
    COMPLETED = "completed"


STEP_INDEX = {
    DialogState.NEW: 0,
    DialogState.AWAITING_NAME: 1,
    DialogState.AWAITING_DATETIME: 2,
    DialogState.COMPLETED: 3,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Session:
    key: str
    state: DialogState = DialogState.NEW
    collected_values: Dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def current_step_index(self) -> int:
        return STEP_INDEX[self.state]

    @property
    def done(self) -> bool:
        return self.state == DialogState.COMPLETED

    def reset(self) -> None:
        self.state = DialogState.NEW
        self.collected_values = {}
        self.updated_at = _now_iso()


@dataclass(frozen=True)
class Step:
    """
    One entry of the script.

    `stores` is the field the incoming text is saved under when this step
    runs; `books` marks the step that creates the calendar event before
    replying.
    """

    reply: str
    next_state: DialogState
    stores: Optional[str] = None
    books: bool = False


SCRIPT: Dict[DialogState, Step] = {
    DialogState.NEW: Step(reply=NAME_PROMPT, next_state=DialogState.AWAITING_NAME),
    DialogState.AWAITING_NAME: Step(
        reply=DATETIME_PROMPT, next_state=DialogState.AWAITING_DATETIME, stores="name"
    ),
    DialogState.AWAITING_DATETIME: Step(
        reply=CONFIRMATION_MESSAGE, next_state=DialogState.COMPLETED, stores="datetime", books=True
    ),
}

# Prompt to repeat when a step receives no usable text
REPROMPTS = {
    DialogState.AWAITING_NAME: NAME_PROMPT,
    DialogState.AWAITING_DATETIME: DATETIME_PROMPT,
}


@dataclass
class StepResult:
    reply: str
    done: bool = False
    error: Optional[str] = None


class StepSequencer:
    def __init__(self, create_event: CreateEvent):
        self.create_event = create_event

    async def advance(self, session: Session, incoming_text: str) -> StepResult:
        """
        Run one user turn against the session and return the reply to send.

        Text is taken verbatim; nothing checks that a name looks like a name
        or that the datetime parses. A completed session starts a fresh
        script, so the turn that arrives after completion gets the name
        prompt again. Blank text re-sends the pending prompt without moving.
        """
        if session.state == DialogState.COMPLETED:
            logging.info(f"[SCRIPT RESTART] {session.key} completed earlier, starting over")
            session.reset()

        text = incoming_text or ""
        if session.state in REPROMPTS and not text.strip():
            logging.info(f"[EMPTY INPUT] {session.key} | state={session.state.value}, re-prompting")
            return StepResult(reply=REPROMPTS[session.state])

        step = SCRIPT[session.state]

        if step.books:
            name = session.collected_values.get("name", "")
            error = await self._book(session, name, text)
            if error:
                return StepResult(reply=FAILURE_MESSAGE, error=error)

        if step.stores:
            session.collected_values[step.stores] = text

        previous = session.state
        session.state = step.next_state
        session.updated_at = _now_iso()
        logging.info(f"[STEP] {session.key} | {previous.value} -> {session.state.value}")
        return StepResult(reply=step.reply, done=session.done)

    async def _book(self, session: Session, name: str, when: str) -> Optional[str]:
        try:
            await self.create_event(name, when)
        except CredentialError as e:
            logging.error(f"[CALENDAR CREDENTIAL ERROR] {session.key} | {e}")
            return "credential"
        except CalendarApiError as e:
            logging.error(f"[CALENDAR ERROR] {session.key} | status={e.status_code} | {e}")
            return "calendar"
        except Exception as e:
            logging.exception(f"[CALENDAR UNEXPECTED ERROR] {session.key} | {e}")
            return "unexpected"
        logging.info(f"[APPOINTMENT BOOKED] {session.key} | name={name!r} | datetime={when!r}")
        return None
