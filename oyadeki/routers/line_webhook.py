import asyncio
import json
from typing import Optional
from urllib.parse import parse_qs
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from oyadeki.config import settings
from oyadeki.database import get_db
from oyadeki.logging_config import get_logger
from oyadeki.schemas.dialogue import DialogueReply, ImageInput
from oyadeki.schemas.line import LineEvent, LineWebhookBody, LineWebhookResponse
from oyadeki.services.dedup import event_key, is_duplicate_action, is_duplicate_event
from oyadeki.services.dialogue_engine import on_image_received, on_text_received
from oyadeki.services.line_service import LineService, build_rating_quick_reply
from oyadeki.services.media_log_service import rate_media_log

logger = get_logger("line_webhook")

router = APIRouter()

MSG_HELP_FALLBACK = (
    "スマホの画面で困っていることがあれば、どこで止まっているか教えてください。"
    "一緒に確認しますね！"
)
MSG_TEXT_FALLBACK = (
    "テレビや映画の画面を送ってくれたら作品を当てます🎬\n"
    "売りたいものの写真を送ってくれたら出品文を作りますよ🛍"
)
MSG_IMAGE_UNAVAILABLE = "ごめんなさい、画像を受け取れませんでした。もう一度送ってもらえますか？"
MSG_RATING_THANKS = "評価ありがとうございます！（{score}点）"
MSG_RATING_FAILED = "ごめんなさい、評価を記録できませんでした。"


async def parse_line_body(request: Request) -> Optional[dict]:
    """
    Parse the LINE webhook body with tolerant decoding.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except json.JSONDecodeError:
            continue

    logger.error("Failed to decode LINE webhook payload after fallbacks")
    return None


def get_line_service() -> Optional[LineService]:
    if not settings.line_channel_access_token:
        return None
    return LineService(settings.line_channel_access_token)


@router.post("/line-webhook", response_model=LineWebhookResponse)
async def handle_line_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle LINE webhook deliveries:
    - image message -> start an identification dialogue
    - text message -> advance the owner's dialogue
    - postback -> rating for a recorded media log
    """
    body = await parse_line_body(request)
    if body is None:
        return LineWebhookResponse(success=False, message="Invalid LINE payload")

    try:
        payload = LineWebhookBody.model_validate(body)
    except ValidationError as e:
        logger.warning(f"LINE payload validation failed: {e.error_count()} errors")
        return LineWebhookResponse(success=False, message="Invalid LINE payload")

    # Empty events is the console's verification request.
    if not payload.events:
        return LineWebhookResponse(success=True, message="No events")

    line = get_line_service()
    processed = 0
    for event in payload.events:
        try:
            if await asyncio.to_thread(process_event, db, event, line):
                processed += 1
        except Exception as e:
            logger.error(
                f"LINE event processing failed: {e}",
                exc_info=True,
                extra={"context": {"event_type": event.type, "webhook_event_id": event.webhook_event_id}},
            )

    return LineWebhookResponse(success=True, processed=processed)


def process_event(db: Session, event: LineEvent, line: Optional[LineService]) -> bool:
    """Handle one event. Returns False when it was skipped."""
    owner_id = event.owner_id
    if not owner_id:
        logger.debug(f"Skipping LINE event without user source: type={event.type}")
        return False

    key = event_key(owner_id, event.webhook_event_id, event.timestamp)
    if is_duplicate_event(key):
        return False

    if event.type == "postback" and event.postback:
        return handle_postback(db, event, line)

    if event.type != "message" or not event.message:
        return False

    if event.message.type == "image":
        return handle_image_message(db, event, line)
    if event.message.type == "text" and event.message.text:
        return handle_text_message(db, event, line)
    return False


def _deliver(line: Optional[LineService], event: LineEvent, texts: list[str], quick_reply: Optional[dict] = None) -> None:
    if line is None or not event.reply_token:
        logger.warning("No LINE channel or reply token, reply dropped", extra={"context": {"texts": len(texts)}})
        return
    result = line.reply_message(event.reply_token, texts, quick_reply=quick_reply)
    if not result.get("ok"):
        logger.warning("LINE reply failed", extra={"context": {"owner_id": event.owner_id, "error": result.get("error")}})


def _deliver_dialogue_reply(line: Optional[LineService], event: LineEvent, reply: DialogueReply) -> None:
    quick_reply = build_rating_quick_reply(reply.media_log_id) if reply.media_log_id else None
    _deliver(line, event, reply.messages, quick_reply=quick_reply)


def handle_image_message(db: Session, event: LineEvent, line: Optional[LineService]) -> bool:
    content = line.get_message_content(event.message.id) if line else None
    if content is None:
        _deliver(line, event, [MSG_IMAGE_UNAVAILABLE])
        return True

    data, mime_type = content
    reply = on_image_received(db, event.owner_id, ImageInput(data=data, mime_type=mime_type))
    if not reply.handled:
        _deliver(line, event, [MSG_HELP_FALLBACK])
        return True

    _deliver_dialogue_reply(line, event, reply)
    return True


def handle_text_message(db: Session, event: LineEvent, line: Optional[LineService]) -> bool:
    reply = on_text_received(db, event.owner_id, event.message.text)
    if not reply.handled:
        _deliver(line, event, [MSG_TEXT_FALLBACK])
        return True

    _deliver_dialogue_reply(line, event, reply)
    return True


def parse_rating_postback(data: str) -> Optional[tuple[UUID, int]]:
    """Parse "action=rate&log=<uuid>&score=<n>". Returns None for anything else."""
    params = parse_qs(data)
    if params.get("action", [None])[0] != "rate":
        return None
    try:
        media_log_id = UUID(params["log"][0])
        score = int(params["score"][0])
    except (KeyError, IndexError, ValueError):
        return None
    return media_log_id, score


def handle_postback(db: Session, event: LineEvent, line: Optional[LineService]) -> bool:
    parsed = parse_rating_postback(event.postback.data)
    if parsed is None:
        logger.info(f"Unsupported postback: {event.postback.data[:100]}")
        return False

    media_log_id, score = parsed
    if is_duplicate_action(event.owner_id, f"rate:{media_log_id}"):
        return False

    result = rate_media_log(db, event.owner_id, media_log_id, score)
    if not result.ok:
        logger.warning(
            "Rating not recorded",
            extra={"context": {"media_log_id": str(media_log_id), "code": result.error_code}},
        )
        _deliver(line, event, [MSG_RATING_FAILED])
        return True

    _deliver(line, event, [MSG_RATING_THANKS.format(score=score)])
    return True
