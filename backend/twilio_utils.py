# backend/twilio_utils.py

import asyncio
import logging
from typing import Mapping, Optional

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import Response
from twilio.base.exceptions import TwilioException
from twilio.request_validator import RequestValidator
from twilio.rest import Client
from twilio.twiml.messaging_response import MessagingResponse

from dispatcher import CHANNEL_SMS, ChannelEvent, InboundDispatcher
from errors import ChannelDeliveryError, TransportError

router = APIRouter()


def parse_sms_form(form: Mapping[str, str]) -> ChannelEvent:
    sender = (form.get("From") or "").strip()
    recipient = (form.get("To") or "").strip()
    body = form.get("Body")
    if not sender:
        raise TransportError("missing From")
    if body is None:
        raise TransportError("missing Body")
    return ChannelEvent(
        channel=CHANNEL_SMS,
        sender_id=sender,
        recipient_id=recipient,
        text=body,
        reply_context={"message_sid": form.get("MessageSid")},
    )


def build_ack_twiml(message: str) -> str:
    twiml = MessagingResponse()
    twiml.message(message)
    return str(twiml)


def verify_twilio_signature(auth_token: str, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
    if not auth_token or not signature:
        return False
    return RequestValidator(auth_token).validate(url, dict(params), signature)


class TwilioSmsSender:
    """Sends step replies as outbound SMS, from the number the user texted."""

    def __init__(self, account_sid: str, auth_token: str, client: Optional[Client] = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self._client = client

    @property
    def client(self) -> Client:
        # Built on first use so the app starts without Twilio credentials
        if self._client is None:
            if not self.account_sid or not self.auth_token:
                raise ChannelDeliveryError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required to send SMS")
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    async def send(self, event: ChannelEvent, text: str) -> None:
        if not event.recipient_id:
            raise ChannelDeliveryError(f"no From number to reply to {event.sender_id}")
        try:
            message = await asyncio.to_thread(
                self.client.messages.create,
                to=event.sender_id,
                from_=event.recipient_id,
                body=text,
            )
        except TwilioException as e:
            raise ChannelDeliveryError(f"twilio send failed: {e}") from e
        logging.info(f"[SMS SENT] to={event.sender_id} | sid={message.sid}")


async def process_sms_event(dispatcher: InboundDispatcher, event: ChannelEvent) -> None:
    # Runs after the TwiML acknowledgement has gone out; failures stay here.
    try:
        await dispatcher.handle(event)
    except Exception as e:
        logging.exception(f"[SMS PROCESSING ERROR] {event.session_key} | {e}")


@router.post("/twilio")
async def sms_webhook(request: Request, background_tasks: BackgroundTasks):
    settings = request.app.state.settings
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if settings.twilio_validate_signature:
        signature = request.headers.get("X-Twilio-Signature")
        if not verify_twilio_signature(settings.twilio_auth_token, str(request.url), params, signature):
            logging.warning("[SMS REJECTED] invalid Twilio signature")
            return Response(status_code=403)

    try:
        event = parse_sms_form(params)
    except TransportError as e:
        logging.warning(f"[SMS REJECTED] malformed form post: {e}")
        return Response(content=str(e), status_code=400, media_type="text/plain")

    logging.info(f"[SMS RECEIVED] from={event.sender_id} | to={event.recipient_id}")
    background_tasks.add_task(process_sms_event, request.app.state.dispatcher, event)

    return Response(content=build_ack_twiml(settings.sms_ack_message), media_type="text/xml")
