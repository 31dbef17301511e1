import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from oyadeki.logging_config import get_logger
from oyadeki.models import DialogueSession
from oyadeki.services.state_machine import (
    ACTIVE_STATUSES,
    DialogueKind,
    DialogueStatus,
    cancel,
    is_active,
)

logger = get_logger("session_store")

SESSION_IDLE_MINUTES = int(os.environ.get("SESSION_IDLE_MINUTES", "60"))

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


class SessionStoreError(Exception):
    def __init__(self, message: str, code: str = "store_error"):
        self.message = message
        self.code = code
        super().__init__(message)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


OWNER_LOCK_STRIPES = 64
_owner_locks = tuple(threading.Lock() for _ in range(OWNER_LOCK_STRIPES))


def lock_for_owner(owner_id: str) -> threading.Lock:
    # Fixed pool of stripes; distinct owners may share one.
    return _owner_locks[hash(owner_id) % OWNER_LOCK_STRIPES]


@contextmanager
def owner_lock(owner_id: str) -> Iterator[None]:
    """Serialize read-compute-write of one owner's session inside this process."""
    with lock_for_owner(owner_id):
        yield


def _commit(db: Session, action: str, session: DialogueSession | None = None) -> None:
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(
            f"Session {action} lost a concurrent update",
            extra={"context": {"session_id": str(session.id) if session else None}},
        )
        raise SessionStoreError(f"Concurrent update on {action}: {e}", "conflict") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Session {action} failed: {e}", exc_info=True)
        raise SessionStoreError(f"Session {action} failed: {e}") from e


def create_session(
    db: Session,
    owner_id: str,
    kind: DialogueKind,
    visual_summary: str,
    first_question: str,
    candidate: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> DialogueSession:
    """Persist a new session already in QUESTIONING with the opening question as its first turn.

    Any live session of the owner is cancelled in the same commit, so a failed
    write leaves the previous dialogue as it was.
    """
    now = now or utcnow()
    superseded = list_active_sessions(db, owner_id)
    for previous in superseded:
        _mark_cancelled(previous, now)

    session = DialogueSession(
        owner_id=owner_id,
        status=DialogueStatus.QUESTIONING.value,
        kind=kind.value,
        visual_summary=visual_summary,
        candidate=candidate,
        turn_history=[{"speaker": "assistant", "text": first_question}],
        rejected_titles=[],
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    _commit(db, "create", session)
    logger.info(
        "Dialogue session created",
        extra={
            "context": {
                "session_id": str(session.id),
                "owner_id": owner_id,
                "kind": kind.value,
                "superseded": len(superseded),
            }
        },
    )
    return session


def list_active_sessions(db: Session, owner_id: str) -> list[DialogueSession]:
    try:
        return (
            db.query(DialogueSession)
            .filter(DialogueSession.owner_id == owner_id, DialogueSession.status.in_(_ACTIVE_VALUES))
            .order_by(DialogueSession.updated_at.desc())
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Active session query failed: {e}")
        raise SessionStoreError(f"Active session query failed: {e}") from e


def is_expired(session: DialogueSession, now: datetime, idle_minutes: int = SESSION_IDLE_MINUTES) -> bool:
    updated_at = as_aware(session.updated_at)
    return updated_at is not None and now - updated_at > timedelta(minutes=idle_minutes)


def get_active_session(db: Session, owner_id: str, now: Optional[datetime] = None) -> Optional[DialogueSession]:
    """Return the owner's live session, expiring idle ones first. Terminal sessions never come back."""
    now = now or utcnow()
    sessions = list_active_sessions(db, owner_id)
    live = []
    for session in sessions:
        if is_expired(session, now):
            _mark_cancelled(session, now)
            logger.info(
                "Idle dialogue session expired",
                extra={"context": {"session_id": str(session.id), "owner_id": owner_id}},
            )
        else:
            live.append(session)

    if len(live) > 1:
        # Older duplicates can only come from a lost race; keep the newest.
        for stale in live[1:]:
            _mark_cancelled(stale, now)
        logger.warning(
            "Multiple active sessions for owner, cancelled older ones",
            extra={"context": {"owner_id": owner_id, "count": len(live)}},
        )

    if len(live) != len(sessions) or len(live) > 1:
        _commit(db, "expire")

    return live[0] if live else None


def _mark_cancelled(session: DialogueSession, now: datetime) -> None:
    session.status = cancel(DialogueStatus(session.status)).value
    session.updated_at = now


def save_session(db: Session, session: DialogueSession, now: Optional[datetime] = None) -> DialogueSession:
    """Write a transition. The version column makes this a compare-and-swap."""
    session.updated_at = now or utcnow()
    _commit(db, "update", session)
    return session


def sweep_expired_sessions(db: Session, now: Optional[datetime] = None, idle_minutes: int = SESSION_IDLE_MINUTES) -> int:
    """Cancel all sessions idle past the threshold. Returns the number expired."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=idle_minutes)
    try:
        candidates = (
            db.query(DialogueSession)
            .filter(DialogueSession.status.in_(_ACTIVE_VALUES), DialogueSession.updated_at < cutoff)
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Sweep query failed: {e}")
        raise SessionStoreError(f"Sweep query failed: {e}") from e

    expired = [s for s in candidates if is_active(DialogueStatus(s.status)) and is_expired(s, now, idle_minutes)]
    for session in expired:
        _mark_cancelled(session, now)
    if expired:
        _commit(db, "sweep")
        logger.info("Expired idle dialogue sessions", extra={"context": {"count": len(expired)}})
    return len(expired)
