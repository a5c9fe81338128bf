# backend/dispatcher.py

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from dialog import StepSequencer
from errors import ChannelDeliveryError
from session_memory import SessionStore

CHANNEL_SMS = "sms"
CHANNEL_BOTFRAMEWORK = "botframework"


@dataclass
class ChannelEvent:
    """One inbound message, normalized across channels."""

    channel: str
    sender_id: str
    recipient_id: str
    text: str
    is_message: bool = True
    conversation_id: Optional[str] = None
    reply_context: Dict[str, Any] = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        scope = self.conversation_id or self.recipient_id
        return f"{self.channel}:{scope}:{self.sender_id}"


@dataclass
class OutboundMessage:
    channel: str
    to: str
    text: str
    delivered: bool = True


class ChannelSender(Protocol):
    async def send(self, event: ChannelEvent, text: str) -> None:
        ...


class InboundDispatcher:
    def __init__(
        self,
        store: SessionStore,
        sequencer: StepSequencer,
        senders: Optional[Dict[str, ChannelSender]] = None,
    ):
        self.store = store
        self.sequencer = sequencer
        self.senders: Dict[str, ChannelSender] = dict(senders or {})

    def register(self, channel: str, sender: ChannelSender) -> None:
        self.senders[channel] = sender

    async def handle(self, event: ChannelEvent) -> List[OutboundMessage]:
        """
        Feed one inbound event through the script and reply on its channel.

        The whole read-advance-save-reply sequence runs under the session's
        lock, so two messages from the same sender are processed strictly one
        after the other and their replies go out in order.
        """
        if not event.is_message:
            logging.info(f"[EVENT IGNORED] non-message event on {event.channel} from {event.sender_id}")
            return []

        sender = self.senders.get(event.channel)
        if sender is None:
            raise ValueError(f"no sender registered for channel {event.channel!r}")

        key = event.session_key
        async with self.store.lock(key):
            session = self.store.get(key)
            logging.info(f"[MESSAGE RECEIVED] {key} | state={session.state.value} | text={event.text!r}")
            result = await self.sequencer.advance(session, event.text)
            self.store.save(key, session)

            outbound = OutboundMessage(channel=event.channel, to=event.sender_id, text=result.reply)
            try:
                await sender.send(event, result.reply)
            except ChannelDeliveryError as e:
                outbound.delivered = False
                logging.error(f"[REPLY FAILED] {key} | {e}")

        return [outbound]
