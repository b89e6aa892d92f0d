"""
Verification orchestrator: reference -> gateway ground truth -> transaction state -> enrollment.

Both the redirect callback and the gateway webhook call verify_payment(); it holds no state of
its own. At most one caller per reference talks to the gateway at a time: that is whoever wins
begin_verification(). Losers report verification_in_progress and are expected to re-invoke.
"""
import logging
from dataclasses import dataclass
from enum import Enum

from sqlmodel import Session

from app.core.errors import (
    FailureReason,
    GatewayNotSettled,
    GatewayUnreachable,
    InvalidTransition,
    TransactionNotFound,
)
from app.models import TERMINAL_STATUSES, Enrollment, PaymentTransaction, TransactionStatus
from app.services import enrollments, transactions
from app.services.audit import record_audit
from app.services.paystack import GatewayStatus, GatewayVerification

logger = logging.getLogger(__name__)


class VerificationStatus(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    # Transient: nothing was decided, call verify again later
    PENDING = "PENDING"


@dataclass
class VerificationResult:
    status: VerificationStatus
    reference: str
    reason: str | None = None
    enrollment: Enrollment | None = None
    transaction: PaymentTransaction | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == VerificationStatus.PAID

    @property
    def is_terminal(self) -> bool:
        return self.status != VerificationStatus.PENDING


def _failed(reference: str, reason: str, tx: PaymentTransaction | None = None) -> VerificationResult:
    return VerificationResult(
        status=VerificationStatus.FAILED,
        reference=reference,
        reason=str(getattr(reason, "value", reason)),
        transaction=tx,
    )


def _pending(reference: str, reason: FailureReason, tx: PaymentTransaction | None = None) -> VerificationResult:
    return VerificationResult(status=VerificationStatus.PENDING, reference=reference, reason=reason.value, transaction=tx)


def _enroll(db: Session, tx: PaymentTransaction) -> VerificationResult:
    enrollment = enrollments.ensure_enrollment(
        db,
        tx.user_id,
        tx.course_id,
        tx.reference,
        tx.amount_paid if tx.amount_paid is not None else tx.amount,
        tx.currency,
    )
    return VerificationResult(
        status=VerificationStatus.PAID,
        reference=tx.reference,
        enrollment=enrollment,
        transaction=tx,
    )


def _from_settled(db: Session, tx: PaymentTransaction) -> VerificationResult:
    """Result for a transaction another attempt has already moved; never calls the gateway."""
    if tx.status == TransactionStatus.PAID.value:
        if tx.refunded_at is not None:
            # Redelivered charge.success or a callback refresh after the refund
            result = _failed(tx.reference, FailureReason.REFUNDED, tx)
            result.enrollment = enrollments.get_enrollment(db, tx.user_id, tx.course_id)
            return result
        return _enroll(db, tx)
    if tx.status == TransactionStatus.FAILED.value:
        return _failed(tx.reference, tx.failure_reason or FailureReason.DECLINED.value, tx)
    return _pending(tx.reference, FailureReason.VERIFICATION_IN_PROGRESS, tx)


def _amount_matches(tx: PaymentTransaction, outcome: GatewayVerification) -> bool:
    if outcome.amount is None or outcome.amount != tx.amount:
        return False
    if outcome.currency and outcome.currency.upper() != (tx.currency or "").upper():
        return False
    return True


def verify_payment(db: Session, reference: str, *, gateway, user_id: int | None = None) -> VerificationResult:
    """
    Reconcile one reference. Safe to call any number of times, concurrently, from any instance.

    user_id: when the caller is an authenticated student, a reference that belongs to someone
    else is reported exactly like one that does not exist.
    """
    try:
        tx = transactions.get_transaction(db, reference)
    except TransactionNotFound:
        logger.warning("Verify for unknown reference: %s", reference)
        return _failed(reference, FailureReason.UNKNOWN_REFERENCE)
    if user_id is not None and tx.user_id != user_id:
        logger.warning("Verify for reference %s by user %s, owned by user %s", reference, user_id, tx.user_id)
        return _failed(reference, FailureReason.UNKNOWN_REFERENCE)

    # Duplicate callback, page refresh, webhook + redirect: answer from the store
    if tx.status in TERMINAL_STATUSES:
        return _from_settled(db, tx)

    try:
        tx = transactions.begin_verification(db, reference)
    except InvalidTransition as e:
        logger.info("Verify lost the race for %s (current=%s)", reference, e.current)
        return _from_settled(db, transactions.get_transaction(db, reference))
    token = tx.verification_token

    try:
        outcome = gateway.verify(reference)
    except GatewayNotSettled as e:
        logger.info("Gateway has not settled %s yet (%s); back to PENDING", reference, e.gateway_status)
        transactions.rollback_verification(db, reference, token=token)
        return _pending(reference, FailureReason.PAYMENT_PENDING)
    except GatewayUnreachable as e:
        logger.warning("Gateway unreachable while verifying %s: %s; back to PENDING", reference, e)
        transactions.rollback_verification(db, reference, token=token)
        return _pending(reference, FailureReason.GATEWAY_UNREACHABLE)
    except Exception:
        # Release the guard before surfacing the bug, otherwise the reference stays VERIFYING until the lease expires
        logger.exception("Unexpected error while verifying %s", reference)
        transactions.rollback_verification(db, reference, token=token)
        raise

    try:
        if outcome.status == GatewayStatus.PAID and _amount_matches(tx, outcome):
            tx = transactions.mark_paid(db, reference, outcome.amount, raw_response=outcome.raw_response, token=token)
            record_audit(db, "payment_paid", tx.user_id, reference, f"{tx.amount_paid} {tx.currency}")
            return _enroll(db, tx)

        if outcome.status == GatewayStatus.PAID:
            reason = FailureReason.AMOUNT_MISMATCH
            logger.error(
                "Amount mismatch for %s: expected %s %s, gateway reported %s %s",
                reference,
                tx.amount,
                tx.currency,
                outcome.amount,
                outcome.currency,
            )
        else:
            reason = FailureReason.DECLINED
        tx = transactions.mark_failed(db, reference, reason.value, raw_response=outcome.raw_response, token=token)
        record_audit(db, "payment_failed", tx.user_id, reference, f"{reason.value} gateway_status={outcome.gateway_status}")
        return _failed(reference, reason, tx)
    except InvalidTransition as e:
        # Our lease was reclaimed while the gateway call was in flight; whoever holds it now decides
        logger.warning("Lease lost for %s before finishing (current=%s)", reference, e.current)
        return _from_settled(db, transactions.get_transaction(db, reference))


def process_refund(db: Session, reference: str) -> Enrollment | None:
    """
    Gateway refund for a PAID transaction: revoke the access it granted. The transaction itself stays
    PAID (terminal). A refund of an older reference does not touch an enrollment a newer purchase owns.
    """
    try:
        tx = transactions.get_transaction(db, reference)
    except TransactionNotFound:
        logger.warning("Refund for unknown reference: %s", reference)
        return None
    if tx.status != TransactionStatus.PAID.value:
        logger.warning("Refund for %s ignored, transaction is %s", reference, tx.status)
        return None
    # Marked before revoking, so a verify racing the refund cannot re-grant access
    transactions.mark_refunded(db, reference)
    enrollment = enrollments.get_active_enrollment(db, tx.user_id, tx.course_id)
    if enrollment is None or enrollment.transaction_reference != reference:
        logger.info("Refund for %s: no active enrollment granted by this reference", reference)
        return None
    revoked = enrollments.revoke_enrollment(db, tx.user_id, tx.course_id)
    record_audit(db, "payment_refunded", tx.user_id, reference)
    return revoked
