# backend/tests/unit/test_channel.py
import json

import httpx
import pytest

from chatflow.config.settings import settings
from chatflow.models.events import KeyboardButton, OutboundMessage
from chatflow.services.channel_service import (
    ChannelSendError, WhatsAppChannel, build_whatsapp_payload, normalize_whatsapp_payload,
)


def webhook_body(*messages):
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{
            "field": "messages",
            "value": {"metadata": {"phone_number_id": "1234567890"}, "messages": list(messages)},
        }]}],
    }


def test_normalize_text_and_button_replies():
    events = normalize_whatsapp_payload(webhook_body(
        {"from": "15551230000", "id": "wamid.1", "type": "text", "text": {"body": "hello"}},
        {"from": "15551230000", "id": "wamid.2", "type": "interactive",
         "interactive": {"type": "button_reply", "button_reply": {"id": "opt_yes", "title": "Yes"}}},
    ))

    assert [(e.text, e.selection) for e in events] == [("hello", None), ("Yes", "opt_yes")]
    assert events[1].input_value == "opt_yes"
    assert all(e.channel_id == "1234567890" and e.chat_id == "15551230000" for e in events)


def test_normalize_media_and_skips_unknown_types():
    events = normalize_whatsapp_payload(webhook_body(
        {"from": "1555", "id": "wamid.3", "type": "image", "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "receipt"}},
        {"from": "1555", "id": "wamid.4", "type": "reaction", "reaction": {"emoji": "👍"}},
    ))

    assert len(events) == 1
    assert events[0].text == "receipt"
    assert events[0].attachments == [{"type": "image", "id": "media-1", "mime_type": "image/jpeg"}]


def test_status_updates_produce_no_events():
    body = {"entry": [{"changes": [{"field": "messages", "value": {"statuses": [{"id": "wamid.9", "status": "read"}]}}]}]}
    assert normalize_whatsapp_payload(body) == []


def test_payload_uses_reply_buttons_up_to_three_then_a_list():
    three = OutboundMessage(chat_id="+1 555-0100", text="Pick one", keyboard=[
        KeyboardButton(text=f"Option {i}", value=f"opt_{i}") for i in range(3)
    ])
    payload = build_whatsapp_payload(three)
    assert payload["to"] == "+15550100"
    assert payload["interactive"]["type"] == "button"
    assert [b["reply"]["id"] for b in payload["interactive"]["action"]["buttons"]] == ["opt_0", "opt_1", "opt_2"]

    four = three.model_copy(update={"keyboard": three.keyboard + [KeyboardButton(text="Option 3", value="opt_3")]})
    assert build_whatsapp_payload(four)["interactive"]["type"] == "list"


def test_payload_for_media_and_plain_text():
    media = build_whatsapp_payload(OutboundMessage(chat_id="1555", text="Your ticket", media_url="https://cdn.example.com/t.pdf", media_type="document"))
    assert media["type"] == "document"
    assert media["document"] == {"link": "https://cdn.example.com/t.pdf", "caption": "Your ticket"}

    text = build_whatsapp_payload(OutboundMessage(chat_id="1555", text="Hi"))
    assert text["type"] == "text"
    assert text["text"] == {"body": "Hi"}


@pytest.mark.asyncio
async def test_whatsapp_send_posts_to_the_cloud_api():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.out.1"}]})

    channel = WhatsAppChannel(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    wamid = await channel.send(OutboundMessage(chat_id="15551230000", text="Welcome"))

    assert wamid == "wamid.out.1"
    assert seen[0].url.path.endswith(f"/{settings.whatsapp_phone_id}/messages")
    assert json.loads(seen[0].content)["text"] == {"body": "Welcome"}
    await channel.close()


@pytest.mark.asyncio
async def test_whatsapp_send_raises_on_api_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": {"message": "bad number"}}))
    channel = WhatsAppChannel(settings, http_client=httpx.AsyncClient(transport=transport))

    with pytest.raises(ChannelSendError, match="bad number"):
        await channel.send(OutboundMessage(chat_id="15551230000", text="Welcome"))
    await channel.close()
