"""Multi-turn identification dialogue.

Two entry points drive every session: ``on_image_received`` opens a dialogue
from a photo, ``on_text_received`` advances the owner's live session by one
turn. Both return a ``DialogueReply`` for the webhook layer to deliver; a reply
with ``handled=False`` means the message is not part of any dialogue.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from oyadeki.logging_config import get_logger
from oyadeki.models import DialogueSession
from oyadeki.schemas.dialogue import (
    DialogueReply,
    Finalized,
    FollowUp,
    IdentificationStep,
    ImageInput,
    MediaCandidate,
    ProductCandidate,
    dump_candidate,
    load_candidate,
)
from oyadeki.services.ai_service import classify_confirmation, is_cancel_message, normalize_for_matching
from oyadeki.services.classifier_service import ImageIntent, classify_image_intent
from oyadeki.services.enrichment_service import enrich_media
from oyadeki.services.identification_service import (
    continue_media_identification,
    continue_product_identification,
    start_media_identification,
    start_product_identification,
)
from oyadeki.services.media_log_service import build_media_log
from oyadeki.services.session_store import (
    SessionStoreError,
    create_session,
    get_active_session,
    owner_lock,
    save_session,
)
from oyadeki.services.state_machine import DialogueKind, DialogueStatus, cancel, complete
from oyadeki.services.usage_service import log_usage

logger = get_logger("dialogue_engine")

MSG_MEDIA_OPENING = "🎬 当ててみせます！\n{question}"
MSG_PRODUCT_OPENING = "🛍 出品のお手伝いをしますね！\n{question}"
MSG_TELL_ME_MORE = "うーん、まだピンときません…。もう少しヒントを教えてもらえますか？"
MSG_CONFIRM = "🎉 わかりました！\n{summary}\n\nこれで合っていますか？（はい／いいえ）"
MSG_RETRY_AFTER_REJECT = "ごめんなさい、ハズレでした！\n{question}"
MSG_RECORDED = "📖 「{title}」を記録しました！\nいかがでしたか？ 下のボタンから1〜5で評価してください。"
MSG_LISTING = "✨ 出品文ができました！\n\n【タイトル】\n{title}\n\n【説明】\n{description}"
MSG_CANCELLED = "わかりました、ここでおしまいにしますね。また画像を送ってください！"
MSG_STORE_ERROR = "ごめんなさい、うまく記録できませんでした。少し時間をおいてもう一度送ってください。"

MEDIA_TYPE_LABELS = {
    "movie": "映画",
    "tv_show": "テレビ番組",
    "anime": "アニメ",
    "sports": "スポーツ",
    "music": "音楽",
    "book": "本",
    "other": "その他",
}


def format_media_summary(candidate: MediaCandidate) -> str:
    lines = [f"【{MEDIA_TYPE_LABELS.get(candidate.media_type, 'その他')}】{candidate.title}"]
    if candidate.subtitle:
        lines.append(candidate.subtitle)
    if candidate.artist_or_cast:
        lines.append(f"出演・作者: {candidate.artist_or_cast}")
    if candidate.year:
        lines.append(f"{candidate.year}年")
    if candidate.score is not None:
        source = f" ({candidate.external_source})" if candidate.external_source else ""
        lines.append(f"評価: {candidate.score}{source}")
    if candidate.trivia:
        lines.append(f"💡 {candidate.trivia}")
    if candidate.external_url:
        lines.append(candidate.external_url)
    return "\n".join(lines)


def format_listing(candidate: ProductCandidate) -> str:
    listing = candidate.listing
    text = MSG_LISTING.format(title=listing.title, description=listing.description)
    if listing.category:
        text += f"\n\n【カテゴリ】{listing.category}"
    if listing.condition:
        text += f"\n【状態】{listing.condition}"
    return text


def _reply(session: DialogueSession, messages: list[str], media_log_id: Optional[str] = None) -> DialogueReply:
    return DialogueReply(
        handled=True,
        messages=messages,
        session_id=str(session.id),
        status=session.status,
        kind=session.kind,
        media_log_id=media_log_id,
    )


def _store_failure(owner_id: str, error: SessionStoreError) -> DialogueReply:
    logger.error(
        "Dialogue store failure",
        extra={"context": {"owner_id": owner_id, "code": error.code, "error": error.message}},
    )
    return DialogueReply(handled=True, messages=[MSG_STORE_ERROR], error_code="store_error")


def _with_turns(history: Optional[list], *turns: tuple[str, str]) -> list[dict]:
    return [*(history or []), *({"speaker": speaker, "text": text} for speaker, text in turns)]


def _known_titles(candidate) -> list[str]:
    """Title shown to the owner plus the one identified before enrichment renamed it."""
    if not isinstance(candidate, MediaCandidate):
        return []
    return [t for t in (candidate.title, candidate.identified_title) if t]


def _is_rejected(candidate, rejected_titles: list[str]) -> bool:
    rejected = {normalize_for_matching(t) for t in rejected_titles or []}
    return any(normalize_for_matching(t) in rejected for t in _known_titles(candidate))


def _add_rejected(rejected_titles: Optional[list[str]], candidate) -> list[str]:
    rejected = list(rejected_titles or [])
    seen = {normalize_for_matching(t) for t in rejected}
    for title in _known_titles(candidate):
        if normalize_for_matching(title) not in seen:
            rejected.append(title)
            seen.add(normalize_for_matching(title))
    return rejected


def _drop_rejected(step: Optional[IdentificationStep], rejected_titles: list[str]) -> Optional[IdentificationStep]:
    """A title the owner already turned down never comes back as a guess."""
    if step is None or not _is_rejected(step.candidate, rejected_titles):
        return step
    logger.warning(
        "Capability repeated a rejected title",
        extra={"context": {"title": step.candidate.title, "outcome": step.outcome}},
    )
    if isinstance(step, Finalized):
        return None
    return step.model_copy(update={"candidate": None})


# --- Transition 1: image ---


def on_image_received(
    db: Session,
    owner_id: str,
    image: ImageInput,
    now: Optional[datetime] = None,
) -> DialogueReply:
    """Classify an inbound image and open a dialogue for it, replacing any live one."""
    intent = classify_image_intent(image)
    logger.info("Image intent", extra={"context": {"owner_id": owner_id, "intent": intent.value}})
    if intent == ImageIntent.HELP:
        return DialogueReply.declined()

    if intent == ImageIntent.MEDIA:
        opening = start_media_identification(image)
        kind = DialogueKind.MEDIA_DIALOGUE
        template = MSG_MEDIA_OPENING
        usage_action = "media_dialogue_start"
    else:
        opening = start_product_identification(image)
        kind = DialogueKind.OPEN_ENDED_DIALOGUE
        template = MSG_PRODUCT_OPENING
        usage_action = "sell_dialogue_start"

    if opening is None:
        logger.info("Opening capability failed, declining", extra={"context": {"owner_id": owner_id, "kind": kind.value}})
        return DialogueReply.declined()

    with owner_lock(owner_id):
        try:
            session = create_session(
                db,
                owner_id,
                kind,
                visual_summary=opening.visual_summary,
                first_question=opening.question,
                candidate=dump_candidate(opening.candidate),
                now=now,
            )
        except SessionStoreError as e:
            return _store_failure(owner_id, e)

    log_usage(db, owner_id, usage_action, {"session_id": str(session.id)})
    return _reply(session, [template.format(question=opening.question)])


# --- Transitions 2-4: text ---


def on_text_received(
    db: Session,
    owner_id: str,
    text: str,
    now: Optional[datetime] = None,
) -> DialogueReply:
    """Advance the owner's live session by one reply. Declines when there is none."""
    with owner_lock(owner_id):
        try:
            session = get_active_session(db, owner_id, now=now)
            if session is None:
                return DialogueReply.declined()

            if is_cancel_message(text):
                return _cancel_session(db, session, now)

            kind = DialogueKind(session.kind)
            if kind == DialogueKind.MEDIA_CONFIRM:
                return _handle_confirmation(db, session, text, now)
            if kind == DialogueKind.MEDIA_DIALOGUE:
                return _handle_media_reply(db, session, text, now)
            return _handle_product_reply(db, session, text, now)
        except SessionStoreError as e:
            return _store_failure(owner_id, e)


def _cancel_session(db: Session, session: DialogueSession, now: Optional[datetime]) -> DialogueReply:
    session.status = cancel(DialogueStatus(session.status)).value
    save_session(db, session, now)
    logger.info("Dialogue cancelled by owner", extra={"context": {"session_id": str(session.id)}})
    log_usage(db, session.owner_id, "session_cancelled", {"session_id": str(session.id)})
    return _reply(session, [MSG_CANCELLED])


def _handle_media_reply(db: Session, session: DialogueSession, text: str, now: Optional[datetime]) -> DialogueReply:
    rejected = list(session.rejected_titles or [])
    current = load_candidate(session.candidate)
    history = _with_turns(session.turn_history, ("user", text))

    step = continue_media_identification(
        session.visual_summary,
        history,
        text,
        candidate=current if isinstance(current, MediaCandidate) else None,
        rejected_titles=rejected,
    )
    step = _drop_rejected(step, rejected)

    if isinstance(step, Finalized) and isinstance(step.candidate, MediaCandidate):
        candidate = enrich_media(step.candidate)
        if candidate.title != step.candidate.title:
            candidate = candidate.model_copy(update={"identified_title": step.candidate.title})
        session.candidate = dump_candidate(candidate)
        session.kind = DialogueKind.MEDIA_CONFIRM.value
        session.turn_history = history
        save_session(db, session, now)
        logger.info(
            "Media candidate finalized, awaiting confirmation",
            extra={"context": {"session_id": str(session.id), "title": candidate.title}},
        )
        return _reply(session, [MSG_CONFIRM.format(summary=format_media_summary(candidate))])

    if isinstance(step, FollowUp):
        if step.candidate is not None:
            session.candidate = dump_candidate(step.candidate)
        if step.visual_summary:
            session.visual_summary = step.visual_summary
        session.turn_history = _with_turns(history, ("assistant", step.question))
        save_session(db, session, now)
        return _reply(session, [step.question])

    logger.info("Media continuation failed, asking for more", extra={"context": {"session_id": str(session.id)}})
    return _reply(session, [MSG_TELL_ME_MORE])


def _handle_confirmation(db: Session, session: DialogueSession, text: str, now: Optional[datetime]) -> DialogueReply:
    candidate = load_candidate(session.candidate)
    history = _with_turns(session.turn_history, ("user", text))

    if isinstance(candidate, MediaCandidate) and classify_confirmation(text) == "yes":
        session.status = complete(DialogueStatus(session.status)).value
        session.turn_history = history
        media_log = build_media_log(session.owner_id, candidate, session.id)
        db.add(media_log)
        save_session(db, session, now)
        logger.info(
            "Media identification confirmed",
            extra={"context": {"session_id": str(session.id), "title": candidate.title}},
        )
        log_usage(db, session.owner_id, "media_identified", {"title": candidate.title, "media_type": candidate.media_type})
        return _reply(session, [MSG_RECORDED.format(title=candidate.title)], media_log_id=str(media_log.id))

    # Anything but a literal affirmation sends the dialogue back to questioning.
    rejected = _add_rejected(session.rejected_titles, candidate)

    step = continue_media_identification(session.visual_summary, history, text, candidate=None, rejected_titles=rejected)
    step = _drop_rejected(step, rejected)
    question = step.question if isinstance(step, FollowUp) else MSG_TELL_ME_MORE

    session.kind = DialogueKind.MEDIA_DIALOGUE.value
    session.candidate = None
    session.rejected_titles = rejected
    session.turn_history = _with_turns(history, ("assistant", question))
    save_session(db, session, now)
    logger.info(
        "Media candidate rejected",
        extra={"context": {"session_id": str(session.id), "rejected_count": len(rejected)}},
    )
    return _reply(session, [MSG_RETRY_AFTER_REJECT.format(question=question)])


def _handle_product_reply(db: Session, session: DialogueSession, text: str, now: Optional[datetime]) -> DialogueReply:
    current = load_candidate(session.candidate)
    attributes = current.attributes if isinstance(current, ProductCandidate) else {}
    history = _with_turns(session.turn_history, ("user", text))

    step = continue_product_identification(session.visual_summary, attributes, history, text)

    if isinstance(step, Finalized) and isinstance(step.candidate, ProductCandidate) and step.candidate.listing:
        session.status = complete(DialogueStatus(session.status)).value
        session.candidate = dump_candidate(step.candidate)
        session.turn_history = history
        save_session(db, session, now)
        logger.info("Listing produced", extra={"context": {"session_id": str(session.id)}})
        log_usage(db, session.owner_id, "sell_listing", {"title": step.candidate.listing.title})
        return _reply(session, [format_listing(step.candidate)])

    if isinstance(step, FollowUp):
        if step.candidate is not None:
            session.candidate = dump_candidate(step.candidate)
        session.turn_history = _with_turns(history, ("assistant", step.question))
        save_session(db, session, now)
        return _reply(session, [step.question])

    logger.info("Product continuation failed, asking for more", extra={"context": {"session_id": str(session.id)}})
    return _reply(session, [MSG_TELL_ME_MORE])
