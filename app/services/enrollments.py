"""Enrollment writer: turns a PAID transaction into course access, exactly once per (user, course)."""
import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.models import Course, Enrollment, EnrollmentStatus

logger = logging.getLogger(__name__)

ACTIVE = EnrollmentStatus.ACTIVE.value
REVOKED = EnrollmentStatus.REVOKED.value


def get_enrollment(db: Session, user_id: int, course_id: int) -> Enrollment | None:
    stmt = (
        select(Enrollment)
        .where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        .execution_options(populate_existing=True)
    )
    return db.exec(stmt).first()


def get_active_enrollment(db: Session, user_id: int, course_id: int) -> Enrollment | None:
    enrollment = get_enrollment(db, user_id, course_id)
    if enrollment is None or enrollment.status != ACTIVE:
        return None
    return enrollment


def list_enrollments(db: Session, user_id: int, *, status: str | None = None) -> list[Enrollment]:
    stmt = select(Enrollment).where(Enrollment.user_id == user_id)
    if status:
        stmt = stmt.where(Enrollment.status == status.upper())
    return list(db.exec(stmt.order_by(Enrollment.enrolled_at.desc())).all())


def _bump_enrollment_count(db: Session, course_id: int, delta: int) -> None:
    stmt = update(Course).where(Course.id == course_id)
    if delta < 0:
        stmt = stmt.where(Course.enrollment_count > 0)
    db.exec(stmt.values(enrollment_count=Course.enrollment_count + delta).execution_options(synchronize_session=False))


def _reactivate(
    db: Session,
    enrollment: Enrollment,
    transaction_reference: str,
    price_paid: int,
    currency: str,
) -> Enrollment:
    """
    REVOKED -> ACTIVE for a new purchase of a refunded course; the (user, course) row is reused.
    The transaction whose refund revoked the row can never reactivate it.
    """
    if enrollment.transaction_reference == transaction_reference:
        logger.warning(
            "Reactivation refused, %s is the refunded purchase: user_id=%s course_id=%s",
            transaction_reference,
            enrollment.user_id,
            enrollment.course_id,
        )
        return enrollment
    stmt = (
        update(Enrollment)
        .where(
            Enrollment.id == enrollment.id,
            Enrollment.status == REVOKED,
            Enrollment.transaction_reference != transaction_reference,
        )
        .values(
            status=ACTIVE,
            transaction_reference=transaction_reference,
            price_paid=price_paid,
            currency=currency,
            enrolled_at=datetime.utcnow(),
            revoked_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.exec(stmt)
    if result.rowcount == 1:
        _bump_enrollment_count(db, enrollment.course_id, 1)
        logger.info(
            "Enrollment reactivated: user_id=%s course_id=%s reference=%s",
            enrollment.user_id,
            enrollment.course_id,
            transaction_reference,
        )
    db.commit()
    return get_enrollment(db, enrollment.user_id, enrollment.course_id)


def ensure_enrollment(
    db: Session,
    user_id: int,
    course_id: int,
    transaction_reference: str,
    price_paid: int,
    currency: str,
) -> Enrollment:
    """
    Idempotent. An existing ACTIVE enrollment is returned untouched (price and date are not
    overwritten); "already enrolled" is the expected outcome of a repeated verify, not an error.
    The unique (user_id, course_id) constraint decides races between two PAID transactions.
    """
    existing = get_enrollment(db, user_id, course_id)
    if existing is not None:
        if existing.status == ACTIVE:
            return existing
        return _reactivate(db, existing, transaction_reference, price_paid, currency)

    enrollment = Enrollment(
        user_id=user_id,
        course_id=course_id,
        transaction_reference=transaction_reference,
        price_paid=price_paid,
        currency=currency,
        status=ACTIVE,
    )
    db.add(enrollment)
    try:
        db.flush()
        _bump_enrollment_count(db, course_id, 1)
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = get_enrollment(db, user_id, course_id)
        if winner is None:
            raise
        logger.info("Enrollment already created concurrently: user_id=%s course_id=%s", user_id, course_id)
        if winner.status == ACTIVE:
            return winner
        return _reactivate(db, winner, transaction_reference, price_paid, currency)
    db.refresh(enrollment)
    logger.info(
        "Enrollment created: user_id=%s course_id=%s reference=%s price_paid=%s %s",
        user_id,
        course_id,
        transaction_reference,
        price_paid,
        currency,
    )
    return enrollment


def revoke_enrollment(db: Session, user_id: int, course_id: int) -> Enrollment | None:
    """ACTIVE -> REVOKED (refund). Revoking twice is a no-op."""
    stmt = (
        update(Enrollment)
        .where(
            Enrollment.user_id == user_id,
            Enrollment.course_id == course_id,
            Enrollment.status == ACTIVE,
        )
        .values(status=REVOKED, revoked_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.exec(stmt)
    if result.rowcount == 1:
        _bump_enrollment_count(db, course_id, -1)
        logger.warning("Enrollment revoked: user_id=%s course_id=%s", user_id, course_id)
    db.commit()
    return get_enrollment(db, user_id, course_id)
