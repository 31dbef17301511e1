from unittest.mock import Mock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from oyadeki.database import get_db
from oyadeki.main import app
from oyadeki.routers.line_webhook import (
    MSG_HELP_FALLBACK,
    MSG_IMAGE_UNAVAILABLE,
    MSG_TEXT_FALLBACK,
    parse_rating_postback,
)
from oyadeki.schemas.dialogue import DialogueReply, MediaCandidate
from oyadeki.schemas.line import LineWebhookBody
from oyadeki.services.media_log_service import build_media_log

ROUTER = "oyadeki.routers.line_webhook"
OWNER = "U4af4980629"


@pytest.fixture
def client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def line():
    service = Mock()
    service.reply_message.return_value = {"ok": True}
    service.get_message_content.return_value = (b"\xff\xd8jpeg", "image/jpeg")
    with patch(f"{ROUTER}.get_line_service", return_value=service):
        yield service


def _text_event(text: str, event_id: str = "01HTEXT", timestamp: int = 1700000000000) -> dict:
    return {
        "type": "message",
        "webhookEventId": event_id,
        "timestamp": timestamp,
        "replyToken": "reply-token-1",
        "source": {"type": "user", "userId": OWNER},
        "message": {"id": "468789577898262530", "type": "text", "text": text},
        "deliveryContext": {"isRedelivery": False},
    }


def _image_event(event_id: str = "01HIMAGE") -> dict:
    return {
        "type": "message",
        "webhookEventId": event_id,
        "timestamp": 1700000000001,
        "replyToken": "reply-token-2",
        "source": {"type": "user", "userId": OWNER},
        "message": {"id": "468789577898262531", "type": "image", "contentProvider": {"type": "line"}},
    }


def _postback_event(data: str, event_id: str = "01HPOSTBACK") -> dict:
    return {
        "type": "postback",
        "webhookEventId": event_id,
        "timestamp": 1700000000002,
        "replyToken": "reply-token-3",
        "source": {"type": "user", "userId": OWNER},
        "postback": {"data": data},
    }


class TestLineSchemas:
    def test_parse_text_event(self):
        body = LineWebhookBody.model_validate({"destination": "Ubot", "events": [_text_event("はい")]})
        event = body.events[0]
        assert event.owner_id == OWNER
        assert event.webhook_event_id == "01HTEXT"
        assert event.reply_token == "reply-token-1"
        assert event.message.text == "はい"
        assert event.delivery_context.is_redelivery is False

    def test_unknown_fields_are_ignored(self):
        body = LineWebhookBody.model_validate({"events": [_image_event()]})
        assert body.events[0].message.type == "image"


class TestWebhookEndpoint:
    def test_verification_request(self, client):
        response = client.post("/line-webhook", json={"destination": "Ubot", "events": []})
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_invalid_payload(self, client):
        response = client.post("/line-webhook", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_text_routed_to_engine(self, client, line):
        reply = DialogueReply(handled=True, messages=["パイロットはアムロですか？"])
        with patch(f"{ROUTER}.on_text_received", return_value=reply) as on_text:
            response = client.post("/line-webhook", json={"events": [_text_event("ロボットです")]})

        assert response.json()["processed"] == 1
        assert on_text.call_args.args[1:] == (OWNER, "ロボットです")
        line.reply_message.assert_called_once_with("reply-token-1", ["パイロットはアムロですか？"], quick_reply=None)

    def test_declined_text_gets_guidance(self, client, line):
        with patch(f"{ROUTER}.on_text_received", return_value=DialogueReply.declined()):
            client.post("/line-webhook", json={"events": [_text_event("こんにちは")]})

        line.reply_message.assert_called_once_with("reply-token-1", [MSG_TEXT_FALLBACK], quick_reply=None)

    def test_image_downloaded_and_routed(self, client, line):
        reply = DialogueReply(handled=True, messages=["🎬 当ててみせます！"])
        with patch(f"{ROUTER}.on_image_received", return_value=reply) as on_image:
            client.post("/line-webhook", json={"events": [_image_event()]})

        line.get_message_content.assert_called_once_with("468789577898262531")
        image = on_image.call_args.args[2]
        assert image.data == b"\xff\xd8jpeg"
        assert image.mime_type == "image/jpeg"

    def test_declined_image_gets_help_fallback(self, client, line):
        with patch(f"{ROUTER}.on_image_received", return_value=DialogueReply.declined()):
            client.post("/line-webhook", json={"events": [_image_event()]})

        line.reply_message.assert_called_once_with("reply-token-2", [MSG_HELP_FALLBACK], quick_reply=None)

    def test_image_download_failure(self, client, line):
        line.get_message_content.return_value = None
        with patch(f"{ROUTER}.on_image_received") as on_image:
            client.post("/line-webhook", json={"events": [_image_event()]})

        on_image.assert_not_called()
        line.reply_message.assert_called_once_with("reply-token-2", [MSG_IMAGE_UNAVAILABLE], quick_reply=None)

    def test_redelivered_event_processed_once(self, client, line):
        reply = DialogueReply(handled=True, messages=["ok"])
        with patch(f"{ROUTER}.on_text_received", return_value=reply) as on_text:
            first = client.post("/line-webhook", json={"events": [_text_event("はい")]})
            second = client.post("/line-webhook", json={"events": [_text_event("はい")]})

        assert on_text.call_count == 1
        assert first.json()["processed"] == 1
        assert second.json()["processed"] == 0

    def test_event_without_id_dedups_on_owner_and_timestamp(self, client, line):
        event = _text_event("はい", event_id=None)
        reply = DialogueReply(handled=True, messages=["ok"])
        with patch(f"{ROUTER}.on_text_received", return_value=reply) as on_text:
            client.post("/line-webhook", json={"events": [event, dict(event, timestamp=1700000000999)]})
            client.post("/line-webhook", json={"events": [event]})

        assert on_text.call_count == 2

    def test_one_failing_event_does_not_stop_others(self, client, line):
        reply = DialogueReply(handled=True, messages=["ok"])
        with patch(f"{ROUTER}.on_text_received", side_effect=[RuntimeError("boom"), reply]):
            response = client.post(
                "/line-webhook",
                json={"events": [_text_event("a", event_id="e1"), _text_event("b", event_id="e2")]},
            )

        assert response.status_code == 200
        assert response.json()["processed"] == 1

    def test_completed_media_reply_carries_rating_buttons(self, client, line):
        log_id = str(uuid4())
        reply = DialogueReply(handled=True, messages=["記録しました"], media_log_id=log_id)
        with patch(f"{ROUTER}.on_text_received", return_value=reply):
            client.post("/line-webhook", json={"events": [_text_event("はい")]})

        quick_reply = line.reply_message.call_args.kwargs["quick_reply"]
        assert len(quick_reply["items"]) == 5
        assert quick_reply["items"][4]["action"]["data"] == f"action=rate&log={log_id}&score=5"


class TestRatingPostback:
    def test_parse_rating_postback(self):
        log_id = uuid4()
        assert parse_rating_postback(f"action=rate&log={log_id}&score=4") == (log_id, 4)
        assert parse_rating_postback("action=other") is None
        assert parse_rating_postback("action=rate&log=not-a-uuid&score=4") is None

    def test_rating_recorded(self, client, line, db_session):
        log = build_media_log(OWNER, MediaCandidate(media_type="anime", title="機動戦士ガンダム"))
        db_session.add(log)
        db_session.commit()

        client.post("/line-webhook", json={"events": [_postback_event(f"action=rate&log={log.id}&score=5")]})

        db_session.refresh(log)
        assert log.rating == 5
        assert "5点" in line.reply_message.call_args.args[1][0]

    def test_double_tap_is_suppressed(self, client, line):
        log_id = uuid4()
        with patch(f"{ROUTER}.rate_media_log") as rate:
            rate.return_value.ok = True
            client.post(
                "/line-webhook",
                json={
                    "events": [
                        _postback_event(f"action=rate&log={log_id}&score=4", event_id="p1"),
                        _postback_event(f"action=rate&log={log_id}&score=5", event_id="p2"),
                    ]
                },
            )

        assert rate.call_count == 1


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}
