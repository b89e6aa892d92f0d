"""
Transaction store: PaymentTransaction rows and their state machine.

PENDING -> VERIFYING -> PAID | FAILED. Every transition is a single conditional UPDATE
(compare-and-swap on status, rows-affected checked) so concurrent callers on different
workers or instances are serialized by the database, not by an in-process lock.
The only backwards move is VERIFYING -> PENDING (rollback_verification) when the gateway
could not be reached.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.config import settings
from app.core.errors import DuplicateReference, FailureReason, InvalidTransition, TransactionNotFound
from app.models import PaymentTransaction, TransactionStatus

logger = logging.getLogger(__name__)

PENDING = TransactionStatus.PENDING.value
VERIFYING = TransactionStatus.VERIFYING.value
PAID = TransactionStatus.PAID.value
FAILED = TransactionStatus.FAILED.value


def _dump_raw(raw_response: dict[str, Any] | None) -> str | None:
    if raw_response is None:
        return None
    return json.dumps(raw_response, default=str)


def create_transaction(
    db: Session,
    reference: str,
    user_id: int,
    course_id: int,
    amount: int,
    currency: str,
    *,
    course_title: str = "",
    provider: str = "paystack",
) -> PaymentTransaction:
    """Checkout initialization. A reference collision is a caller bug, never a retry."""
    if not reference:
        raise ValueError("reference must be a non-empty string")
    if db.get(PaymentTransaction, reference) is not None:
        raise DuplicateReference(reference)
    tx = PaymentTransaction(
        reference=reference,
        user_id=user_id,
        course_id=course_id,
        course_title=course_title,
        amount=amount,
        currency=currency.upper(),
        provider=provider,
        status=PENDING,
    )
    db.add(tx)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateReference(reference) from e
    db.refresh(tx)
    logger.info("Transaction created: reference=%s user_id=%s course_id=%s amount=%s %s", reference, user_id, course_id, amount, tx.currency)
    return tx


def get_transaction(db: Session, reference: str) -> PaymentTransaction:
    stmt = (
        select(PaymentTransaction)
        .where(PaymentTransaction.reference == reference)
        .execution_options(populate_existing=True)
    )
    tx = db.exec(stmt).first()
    if tx is None:
        raise TransactionNotFound(reference)
    return tx


def _compare_and_set(
    db: Session,
    reference: str,
    condition,
    values: dict[str, Any],
) -> bool:
    """UPDATE ... WHERE reference = :reference AND <condition>; True when exactly one row changed."""
    stmt = (
        update(PaymentTransaction)
        .where(PaymentTransaction.reference == reference)
        .where(condition)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.exec(stmt)
    db.commit()
    return result.rowcount == 1


def _raise_for_failed_transition(db: Session, reference: str, target: str) -> None:
    current = db.get(PaymentTransaction, reference)
    if current is None:
        raise TransactionNotFound(reference)
    raise InvalidTransition(reference, current.status, target)


def _owned_by(token: str | None):
    if token is None:
        return PaymentTransaction.status == VERIFYING
    return and_(PaymentTransaction.status == VERIFYING, PaymentTransaction.verification_token == token)


def begin_verification(db: Session, reference: str, *, lease_seconds: int | None = None) -> PaymentTransaction:
    """
    PENDING -> VERIFYING. The winner gets a fresh verification_token; everyone else gets
    InvalidTransition. A VERIFYING lease older than lease_seconds belongs to a worker that
    died mid-verification and may be taken over.
    """
    lease = settings.verification_lease_seconds if lease_seconds is None else lease_seconds
    now = datetime.utcnow()
    token = uuid.uuid4().hex
    stale_before = now - timedelta(seconds=lease)
    condition = or_(
        PaymentTransaction.status == PENDING,
        and_(
            PaymentTransaction.status == VERIFYING,
            PaymentTransaction.verification_started_at < stale_before,
        ),
    )
    values = {
        "status": VERIFYING,
        "verification_token": token,
        "verification_started_at": now,
        "updated_at": now,
    }
    if not _compare_and_set(db, reference, condition, values):
        _raise_for_failed_transition(db, reference, VERIFYING)
    tx = get_transaction(db, reference)
    if tx.verification_token != token:
        # Someone else took the lease between our UPDATE and this read
        raise InvalidTransition(reference, tx.status, VERIFYING)
    logger.info("Verification started: reference=%s", reference)
    return tx


def mark_paid(
    db: Session,
    reference: str,
    verified_amount: int,
    *,
    raw_response: dict[str, Any] | None = None,
    token: str | None = None,
) -> PaymentTransaction:
    """VERIFYING -> PAID. With token, only the attempt holding that lease may finish."""
    now = datetime.utcnow()
    values: dict[str, Any] = {
        "status": PAID,
        "amount_paid": verified_amount,
        "failure_reason": None,
        "verification_token": None,
        "verified_at": now,
        "updated_at": now,
    }
    raw = _dump_raw(raw_response)
    if raw is not None:
        values["gateway_raw_response"] = raw
    if not _compare_and_set(db, reference, _owned_by(token), values):
        _raise_for_failed_transition(db, reference, PAID)
    logger.info("Transaction paid: reference=%s amount=%s", reference, verified_amount)
    return get_transaction(db, reference)


def mark_failed(
    db: Session,
    reference: str,
    reason: str = FailureReason.DECLINED.value,
    *,
    raw_response: dict[str, Any] | None = None,
    token: str | None = None,
) -> PaymentTransaction:
    """VERIFYING -> FAILED. Terminal; a new checkout must mint a new reference."""
    now = datetime.utcnow()
    values: dict[str, Any] = {
        "status": FAILED,
        "failure_reason": str(getattr(reason, "value", reason)),
        "verification_token": None,
        "verified_at": now,
        "updated_at": now,
    }
    raw = _dump_raw(raw_response)
    if raw is not None:
        values["gateway_raw_response"] = raw
    if not _compare_and_set(db, reference, _owned_by(token), values):
        _raise_for_failed_transition(db, reference, FAILED)
    logger.warning("Transaction failed: reference=%s reason=%s", reference, values["failure_reason"])
    return get_transaction(db, reference)


def rollback_verification(db: Session, reference: str, *, token: str | None = None) -> bool:
    """
    VERIFYING -> PENDING after the gateway gave no answer. Never used for a negative result.
    Returns False when the lease is no longer ours (reclaimed or already finished).
    """
    values = {
        "status": PENDING,
        "verification_token": None,
        "verification_started_at": None,
        "updated_at": datetime.utcnow(),
    }
    rolled_back = _compare_and_set(db, reference, _owned_by(token), values)
    if rolled_back:
        logger.info("Verification rolled back to PENDING: reference=%s", reference)
    else:
        logger.warning("Rollback skipped, lease no longer held: reference=%s", reference)
    return rolled_back


def mark_refunded(db: Session, reference: str) -> bool:
    """Stamps refunded_at on a PAID transaction. Status is untouched. False when already refunded or not PAID."""
    now = datetime.utcnow()
    condition = and_(PaymentTransaction.status == PAID, PaymentTransaction.refunded_at.is_(None))
    refunded = _compare_and_set(db, reference, condition, {"refunded_at": now, "updated_at": now})
    if refunded:
        logger.warning("Transaction refunded: reference=%s", reference)
    return refunded


def list_transactions(
    db: Session,
    user_id: int,
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[PaymentTransaction], int]:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    conditions = [PaymentTransaction.user_id == user_id]
    if status:
        conditions.append(PaymentTransaction.status == status.upper())
    stmt = (
        select(PaymentTransaction)
        .where(*conditions)
        .order_by(PaymentTransaction.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = db.exec(select(func.count()).select_from(PaymentTransaction).where(*conditions)).one()
    return list(db.exec(stmt).all()), int(total)
