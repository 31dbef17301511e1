from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oyadeki.logging_config import get_logger
from oyadeki.models import UsageLog
from oyadeki.services.session_store import utcnow

logger = get_logger("usage_service")


def log_usage(db: Session, owner_id: str, action_type: str, meta: Optional[dict] = None) -> bool:
    """Record a usage row. Best-effort: a failure is logged and never propagated."""
    try:
        db.add(UsageLog(owner_id=owner_id, action_type=action_type, meta=meta or {}, created_at=utcnow()))
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "Usage log write failed",
            extra={"context": {"owner_id": owner_id, "action_type": action_type, "error": str(e)}},
        )
        return False
