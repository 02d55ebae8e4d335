# /chatflow/services/channel_service.py

import re
import httpx
import logging
import tenacity
from typing import Any, Dict, List, Optional, Set

from chatflow.config.settings import Settings
from chatflow.models.events import InboundEvent, OutboundMessage
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import outbound_messages_counter

# Channel adapters: the WhatsApp Cloud API adapter used in production and an
# in-memory adapter that records sends for tests and local runs.

logger = logging.getLogger(__name__)

MAX_REPLY_BUTTONS = 3
MEDIA_TYPES = ("image", "video", "audio", "document")


class ChannelSendError(Exception):
    pass


def normalize_whatsapp_payload(data: Dict[str, Any]) -> List[InboundEvent]:
    """Turns a WhatsApp webhook body into normalized inbound events. Status updates are skipped."""
    events = []
    for entry in data.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                continue
            value = change.get("value", {})
            channel_id = (value.get("metadata") or {}).get("phone_number_id")
            for message in value.get("messages", []):
                event = _normalize_message(message, channel_id)
                if event is not None:
                    events.append(event)
    return events


def _normalize_message(message: Dict[str, Any], channel_id: Optional[str]) -> Optional[InboundEvent]:
    sender = message.get("from")
    if not sender:
        return None
    message_type = message.get("type")
    text, selection, attachments = None, None, []

    if message_type == "text":
        text = (message.get("text") or {}).get("body")
    elif message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        selection = reply.get("id")
        text = reply.get("title")
    elif message_type == "button":
        button = message.get("button") or {}
        selection = button.get("payload")
        text = button.get("text")
    elif message_type in MEDIA_TYPES:
        media = message.get(message_type) or {}
        attachments.append({"type": message_type, "id": media.get("id"), "mime_type": media.get("mime_type")})
        text = media.get("caption")
    elif message_type == "location":
        attachments.append({"type": "location", **(message.get("location") or {})})
    else:
        logger.info(f"Ignoring unsupported WhatsApp message type '{message_type}'")
        return None

    return InboundEvent(
        chat_id=sender,
        user_id=sender,
        text=text,
        selection=selection,
        attachments=attachments,
        message_id=message.get("id"),
        channel_id=channel_id,
    )


def build_whatsapp_payload(message: OutboundMessage) -> Dict[str, Any]:
    to_phone = re.sub(r"[^\d+]", "", message.chat_id or "")
    payload: Dict[str, Any] = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to_phone}
    text = message.text or ""

    if message.keyboard:
        if len(message.keyboard) <= MAX_REPLY_BUTTONS:
            action = {"buttons": [
                {"type": "reply", "reply": {"id": (b.value or b.text)[:256], "title": b.text[:20]}}
                for b in message.keyboard
            ]}
            interactive_type = "button"
        else:
            action = {"button": "Choose", "sections": [{"title": "Options", "rows": [
                {"id": (b.value or b.text)[:200], "title": b.text[:24]} for b in message.keyboard[:10]
            ]}]}
            interactive_type = "list"
        payload["type"] = "interactive"
        payload["interactive"] = {"type": interactive_type, "body": {"text": text[:1024] or " "}, "action": action}
    elif message.media_url:
        media_type = message.media_type if message.media_type in MEDIA_TYPES else "image"
        payload["type"] = media_type
        payload[media_type] = {"link": message.media_url}
        if text and media_type != "audio":
            payload[media_type]["caption"] = text[:1024]
    else:
        payload["type"] = "text"
        payload["text"] = {"body": text[:4096]}
    return payload


class WhatsAppChannel:
    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = settings.whatsapp_access_token
        self.phone_id = settings.whatsapp_phone_id
        self.base_url = f"https://graph.facebook.com/{settings.whatsapp_api_version}"
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send(self, message: OutboundMessage) -> Optional[str]:
        """Sends one message and returns the WhatsApp message id."""
        payload = build_whatsapp_payload(message)
        if not payload["to"]:
            raise ChannelSendError("Outbound message has no recipient")

        url = f"{self.base_url}/{self.phone_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)

        if response.status_code != 200:
            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text
            outbound_messages_counter.labels(status="failed").inc()
            raise ChannelSendError(f"WhatsApp send to {payload['to']} failed: {response.status_code} - {error_message}")

        wamid = (response.json().get("messages") or [{}])[0].get("id")
        outbound_messages_counter.labels(status="sent").inc()
        logger.info(f"WhatsApp message sent to {payload['to']}, wamid: {wamid}")
        return wamid

    async def close(self):
        await self.http_client.aclose()


class MemoryChannel:
    """Records every send; used by the memory backend and tests."""

    def __init__(self):
        self.sent: List[OutboundMessage] = []
        # Chats whose sends fail, as if the provider rejected them.
        self.unreachable: Set[str] = set()

    async def send(self, message: OutboundMessage) -> Optional[str]:
        if message.chat_id in self.unreachable:
            outbound_messages_counter.labels(status="failed").inc()
            raise ChannelSendError(f"Chat {message.chat_id} is unreachable")
        self.sent.append(message)
        outbound_messages_counter.labels(status="sent").inc()
        return f"mem-{len(self.sent)}"

    def texts_for(self, chat_id: str) -> List[Optional[str]]:
        return [m.text for m in self.sent if m.chat_id == chat_id]

    async def close(self):
        pass
