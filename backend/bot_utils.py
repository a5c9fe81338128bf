# backend/bot_utils.py

import asyncio
import logging
from typing import Optional
from urllib.parse import quote

import requests
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from auth_utils import BOT_CONNECTOR_SCOPE, BotTokenValidator, ClientCredentialTokenProvider, token_url_for
from dispatcher import CHANNEL_BOTFRAMEWORK, ChannelEvent
from errors import AuthenticationError, ChannelDeliveryError, CredentialError, TransportError

router = APIRouter()

BOT_FRAMEWORK_TENANT = "botframework.com"


class ChannelAccount(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None


class ConversationAccount(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str


class Activity(BaseModel):
    """The subset of a Bot Framework activity the bot reads."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str
    id: Optional[str] = None
    text: Optional[str] = None
    channel_id: str = Field(default="", alias="channelId")
    service_url: Optional[str] = Field(default=None, alias="serviceUrl")
    from_: ChannelAccount = Field(alias="from")
    recipient: Optional[ChannelAccount] = None
    conversation: ConversationAccount


def parse_activity(payload: dict) -> ChannelEvent:
    try:
        activity = Activity.model_validate(payload)
    except ValidationError as e:
        raise TransportError(f"invalid activity: {e.error_count()} validation error(s)") from e

    is_message = activity.type.lower() == "message"
    if is_message and not activity.service_url:
        raise TransportError("message activity has no serviceUrl")

    recipient = activity.recipient
    return ChannelEvent(
        channel=CHANNEL_BOTFRAMEWORK,
        sender_id=activity.from_.id,
        recipient_id=recipient.id if recipient else "",
        text=activity.text or "",
        is_message=is_message,
        conversation_id=f"{activity.channel_id}/{activity.conversation.id}",
        reply_context={
            "service_url": activity.service_url,
            "conversation_id": activity.conversation.id,
            "activity_id": activity.id,
            "from": activity.from_.model_dump(exclude_none=True),
            "recipient": recipient.model_dump(exclude_none=True) if recipient else None,
        },
    )


def build_reply_activity(event: ChannelEvent, text: str) -> dict:
    ctx = event.reply_context
    reply = {
        "type": "message",
        "text": text,
        "conversation": {"id": ctx["conversation_id"]},
        "recipient": ctx["from"],
    }
    if ctx.get("recipient"):
        reply["from"] = ctx["recipient"]
    if ctx.get("activity_id"):
        reply["replyToId"] = ctx["activity_id"]
    return reply


def reply_url(event: ChannelEvent) -> str:
    ctx = event.reply_context
    base = f"{ctx['service_url'].rstrip('/')}/v3/conversations/{quote(ctx['conversation_id'], safe='')}/activities"
    if ctx.get("activity_id"):
        return f"{base}/{quote(ctx['activity_id'], safe='')}"
    return base


class BotConnectorSender:
    """
    Posts replies to the Bot Connector service named in the activity.

    Without a token provider (no app id configured) replies go out
    unauthenticated, which is what the local Bot Framework Emulator expects.
    """

    def __init__(self, token_provider=None, timeout: float = 10.0):
        self.token_provider = token_provider
        self.timeout = timeout

    async def send(self, event: ChannelEvent, text: str) -> None:
        await asyncio.to_thread(self._post_reply, event, text)

    def _post_reply(self, event: ChannelEvent, text: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token_provider is not None:
            # The bot token only goes to a serviceUrl the inbound JWT vouched for
            if not event.reply_context.get("service_url_verified"):
                raise ChannelDeliveryError(f"refusing to send token to unverified serviceUrl {event.reply_context.get('service_url')!r}")
            try:
                headers["Authorization"] = f"Bearer {self.token_provider.get_token()}"
            except CredentialError as e:
                raise ChannelDeliveryError(f"bot connector token unavailable: {e}") from e

        url = reply_url(event)
        try:
            res = requests.post(url, json=build_reply_activity(event, text), headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ChannelDeliveryError(f"bot connector unreachable: {e}") from e
        if res.status_code >= 400:
            raise ChannelDeliveryError(f"bot connector error: status={res.status_code} body={res.text[:500]}")
        logging.info(f"[BOT REPLY SENT] {event.session_key}")


def create_bot_sender(settings) -> BotConnectorSender:
    provider = None
    if settings.bot_auth_enabled:
        provider = ClientCredentialTokenProvider(
            token_url=token_url_for(BOT_FRAMEWORK_TENANT),
            client_id=settings.microsoft_app_id,
            client_secret=settings.microsoft_app_password,
            scope=BOT_CONNECTOR_SCOPE,
            timeout=settings.http_timeout_seconds,
        )
    else:
        logging.warning("[BOT] MICROSOFT_APP_ID/PASSWORD not set, replies are sent unauthenticated")
    return BotConnectorSender(token_provider=provider, timeout=settings.http_timeout_seconds)


def create_bot_validator(settings) -> Optional[BotTokenValidator]:
    if not settings.bot_auth_enabled:
        logging.warning("[BOT] MICROSOFT_APP_ID/PASSWORD not set, inbound activities are not authenticated")
        return None
    return BotTokenValidator(settings.microsoft_app_id, timeout=settings.http_timeout_seconds)


@router.post("/api/messages")
async def bot_messages(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        logging.warning("[BOT REJECTED] body is not JSON")
        return JSONResponse({"ok": False, "error": "invalid json payload"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"ok": False, "error": "activity must be an object"}, status_code=400)

    try:
        event = parse_activity(payload)
    except TransportError as e:
        logging.warning(f"[BOT REJECTED] {e}")
        return JSONResponse({"ok": False, "error": str(e)}, status_code=400)

    validator = getattr(request.app.state, "bot_validator", None)
    if validator is not None:
        try:
            await asyncio.to_thread(
                validator.validate,
                request.headers.get("Authorization"),
                event.reply_context.get("service_url"),
            )
        except AuthenticationError as e:
            logging.warning(f"[BOT REJECTED] unauthenticated activity from {event.sender_id}: {e}")
            return JSONResponse({"ok": False, "error": "unauthorized"}, status_code=401)
        event.reply_context["service_url_verified"] = True

    outbound = await request.app.state.dispatcher.handle(event)
    return JSONResponse({"ok": True, "replies": len(outbound)})
