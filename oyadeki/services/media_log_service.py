from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oyadeki.logging_config import get_logger
from oyadeki.models import MediaLog
from oyadeki.schemas.dialogue import MediaCandidate
from oyadeki.services.result import Result
from oyadeki.services.session_store import utcnow

logger = get_logger("media_log_service")

MIN_RATING = 1
MAX_RATING = 5


def build_media_log(owner_id: str, candidate: MediaCandidate, session_id: Optional[UUID] = None) -> MediaLog:
    return MediaLog(
        owner_id=owner_id,
        session_id=session_id,
        media_type=candidate.media_type,
        title=candidate.title,
        subtitle=candidate.subtitle,
        artist_or_cast=candidate.artist_or_cast,
        year=candidate.year,
        trivia=candidate.trivia,
        poster_url=candidate.poster_url,
        synopsis=candidate.synopsis,
        score=candidate.score,
        genres=candidate.genres,
        external_url=candidate.external_url,
        external_source=candidate.external_source,
        watched_at=utcnow(),
    )


def rate_media_log(db: Session, owner_id: str, media_log_id: UUID, rating: int) -> Result[MediaLog]:
    if rating < MIN_RATING or rating > MAX_RATING:
        return Result.failure(f"Rating must be {MIN_RATING}-{MAX_RATING}, got {rating}", "invalid_rating")

    try:
        log = db.query(MediaLog).filter(MediaLog.id == media_log_id, MediaLog.owner_id == owner_id).first()
        if log is None:
            return Result.failure(f"Media log {media_log_id} not found", "not_found")
        log.rating = rating
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Media log rating failed: {e}")
        return Result.from_exception(e)

    return Result.success(log)
