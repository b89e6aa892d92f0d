import logging

from sqlmodel import Session

from app.models import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    event: str,
    user_id: int | None,
    reference: str | None = None,
    detail: str | None = None,
    ip: str | None = None,
) -> None:
    """Best effort: a failed audit write must not undo a payment outcome that is already committed."""
    try:
        db.add(AuditLog(event=event, user_id=user_id, reference=reference, detail=detail[:500] if detail else None, ip=ip))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("AuditLog write failed: event=%s reference=%s error=%s", event, reference, e)
