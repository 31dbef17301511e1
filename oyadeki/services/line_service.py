from typing import Optional

import httpx

from oyadeki.logging_config import get_logger

logger = get_logger("line_service")

# LINE accepts at most 5 message objects per reply.
MAX_REPLY_MESSAGES = 5
MAX_CONTENT_BYTES = 10 * 1024 * 1024


class LineService:
    """Service for talking to the LINE Messaging API."""

    API_URL = "https://api.line.me/v2/bot"
    DATA_API_URL = "https://api-data.line.me/v2/bot"

    def __init__(self, access_token: str, timeout: float = 30.0):
        self.access_token = access_token
        self.timeout = timeout

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _make_request(self, path: str, data: dict) -> dict:
        """POST JSON to the Messaging API."""
        url = f"{self.API_URL}/{path}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=data, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(f"LINE API error: {e}")
            return {"ok": False, "error": str(e)}

        if response.status_code != 200:
            logger.error(f"LINE API {path} failed: status={response.status_code} body={response.text[:200]}")
            return {"ok": False, "status": response.status_code, "error": response.text}
        return {"ok": True}

    def reply_message(self, reply_token: str, texts: list[str], quick_reply: Optional[dict] = None) -> dict:
        """Reply with up to five text messages. The quick reply goes on the last one."""
        messages = [{"type": "text", "text": text} for text in texts[:MAX_REPLY_MESSAGES]]
        if not messages:
            return {"ok": True}
        if quick_reply:
            messages[-1]["quickReply"] = quick_reply
        return self._make_request("message/reply", {"replyToken": reply_token, "messages": messages})

    def get_message_content(self, message_id: str) -> Optional[tuple[bytes, str]]:
        """Download an image (or other binary content) a user sent. Returns (bytes, mime) or None."""
        url = f"{self.DATA_API_URL}/message/{message_id}/content"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(f"LINE content download error: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"LINE content download failed: message_id={message_id} status={response.status_code}")
            return None
        if len(response.content) > MAX_CONTENT_BYTES:
            logger.warning(f"LINE content too large: message_id={message_id} bytes={len(response.content)}")
            return None

        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return response.content, mime_type


def build_rating_quick_reply(media_log_id: str) -> dict:
    """Quick reply buttons 1-5 whose postbacks carry the media log id."""
    items = []
    for score in range(1, 6):
        items.append(
            {
                "type": "action",
                "action": {
                    "type": "postback",
                    "label": "⭐" * score,
                    "data": f"action=rate&log={media_log_id}&score={score}",
                    "displayText": f"{score}点",
                },
            }
        )
    return {"items": items}
