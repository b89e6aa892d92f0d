import json
import logging
import math
import secrets
import time

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from app.api.deps import get_current_user, get_current_user_id, get_payment_gateway
from app.core.config import payment_callback_url
from app.core.database import get_db
from app.core.errors import DuplicateReference, FailureReason, GatewayRequestError, GatewayUnreachable, TransactionNotFound
from app.core.rate_limit import DEFAULT_LIMIT, VERIFY_LIMIT, get_client_ip, limiter
from app.models import Course, SecurityLog, User
from app.schemas import CheckoutOut, EnrollmentOut, InitializePaymentRequest, Pagination, TransactionOut, VerificationOut
from app.services import enrollments, transactions
from app.services.audit import record_audit
from app.services.verification import VerificationResult, VerificationStatus, process_refund, verify_payment

log = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

# Seconds the callback page should wait before asking again
RETRY_AFTER_SECONDS = 5

_PENDING_MESSAGES = {
    FailureReason.VERIFICATION_IN_PROGRESS.value: "Payment verification is already in progress, please check again shortly.",
    FailureReason.GATEWAY_UNREACHABLE.value: "We could not reach the payment provider, please check again shortly.",
    FailureReason.PAYMENT_PENDING.value: "Your payment is still being processed, please check again shortly.",
}
_FAILED_MESSAGES = {
    FailureReason.UNKNOWN_REFERENCE.value: "Transaction not found, please make the payment again.",
    FailureReason.AMOUNT_MISMATCH.value: "The amount paid does not match the course price. Please start a new checkout.",
    FailureReason.DECLINED.value: "Payment was not successful. Please start a new checkout.",
    FailureReason.REFUNDED.value: "This payment was refunded and no longer grants access to the course.",
}


def _new_reference(user_id: int) -> str:
    return f"ENR_{int(time.time() * 1000)}_{user_id}_{secrets.token_hex(4)}"


def _verification_response(result: VerificationResult) -> JSONResponse:
    out = VerificationOut(
        status=result.status.value,
        reference=result.reference,
        reason=result.reason,
        enrolled=result.is_paid,
        enrollment=EnrollmentOut.model_validate(result.enrollment) if result.enrollment is not None else None,
        transaction=TransactionOut.model_validate(result.transaction) if result.transaction is not None else None,
    )
    headers = None
    if result.status == VerificationStatus.PAID:
        status_code, message = 200, "Payment verified and enrollment completed successfully"
    elif result.status == VerificationStatus.PENDING:
        status_code = 202
        message = _PENDING_MESSAGES.get(result.reason or "", "Payment verification pending.")
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    else:
        status_code = 404 if result.reason == FailureReason.UNKNOWN_REFERENCE.value else 400
        message = _FAILED_MESSAGES.get(result.reason or "", "Payment was not successful.")
    return JSONResponse(
        status_code=status_code,
        content={"success": result.is_paid, "message": message, "data": out.model_dump(mode="json")},
        headers=headers,
    )


@router.post("/initialize")
@limiter.limit(DEFAULT_LIMIT)
def initialize_payment(
    request: Request,
    body: InitializePaymentRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """Creates the PENDING transaction, then asks Paystack for the checkout page the student is sent to."""
    course = db.get(Course, body.course_id)
    if not course:
        raise HTTPException(status_code=404, detail="Course not found, try purchasing an existing course.")
    if not course.is_published:
        raise HTTPException(status_code=400, detail="This course is not available for enrollment, please check back later.")
    if enrollments.get_active_enrollment(db, user.id, course.id) is not None:
        raise HTTPException(status_code=400, detail="You are already enrolled in this course.")

    amount = course.discount_price or course.price
    reference = _new_reference(user.id)
    try:
        tx = transactions.create_transaction(
            db,
            reference,
            user.id,
            course.id,
            amount,
            course.currency,
            course_title=course.title,
        )
    except DuplicateReference:
        raise HTTPException(status_code=409, detail="Could not start checkout, please try again.")

    try:
        checkout = gateway.initialize(
            email=user.email,
            amount=amount,
            reference=reference,
            callback_url=payment_callback_url(),
            currency=tx.currency,
            metadata={"user_id": user.id, "course_id": course.id, "course_title": course.title},
        )
    except GatewayUnreachable as e:
        log.warning("Checkout initialize failed, gateway unreachable: reference=%s error=%s", reference, e)
        raise HTTPException(status_code=502, detail="Payment provider connection error, please try again.")
    except GatewayRequestError as e:
        raise HTTPException(status_code=502, detail=f"Failed to initialize payment: {str(e)[:120]}")

    record_audit(db, "payment_initialized", user.id, reference, f"{amount} {tx.currency}", get_client_ip(request))
    return {
        "success": True,
        "message": "Payment initialized successfully",
        "data": CheckoutOut(
            reference=reference,
            authorization_url=checkout.authorization_url,
            access_code=checkout.access_code,
            amount=amount,
            currency=tx.currency,
        ).model_dump(),
    }


@router.get("/verify/{reference}")
@limiter.limit(VERIFY_LIMIT)
def verify(
    request: Request,
    reference: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """Redirect callback path. Repeating it is always safe."""
    return _verification_response(verify_payment(db, reference, gateway=gateway, user_id=user_id))


@router.get("/callback")
@limiter.limit(VERIFY_LIMIT)
def callback(
    request: Request,
    reference: str | None = Query(None),
    trxref: str | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """Same as /verify/{reference}, with the reference as Paystack appends it to the callback URL."""
    ref = (reference or trxref or "").strip()
    if not ref:
        raise HTTPException(status_code=400, detail="Missing payment reference.")
    return _verification_response(verify_payment(db, ref, gateway=gateway, user_id=user_id))


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/webhook/paystack")
def paystack_webhook(
    request: Request,
    body: bytes = Depends(_raw_body),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """
    Paystack webhook. The event body only tells us which reference to look at: charge events go
    through the same verify_payment() as the redirect, so the gateway is asked for the outcome.
    """
    if not gateway.verify_signature(body, request.headers.get("x-paystack-signature")):
        try:
            db.add(SecurityLog(event="bad_webhook_signature", ip=get_client_ip(request) or None, endpoint=request.url.path))
            db.commit()
        except Exception as e:
            db.rollback()
            log.warning("SecurityLog bad_webhook_signature write failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        event = json.loads(body.decode() or "{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    event_type = event.get("event") or ""
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    if event_type in ("charge.success", "charge.failed"):
        reference = str(data.get("reference") or "").strip()
        if reference:
            result = verify_payment(db, reference, gateway=gateway)
            log.info("Webhook %s: reference=%s result=%s reason=%s", event_type, reference, result.status.value, result.reason)
    elif event_type == "refund.processed":
        transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}
        reference = str(data.get("transaction_reference") or transaction.get("reference") or "").strip()
        if reference:
            process_refund(db, reference)
    else:
        log.warning("Unhandled webhook event: %s", event_type)
    return {"status": "success"}


@router.get("/transactions")
def transaction_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    items, total = transactions.list_transactions(db, user_id, status=status, page=page, limit=limit)
    return {
        "success": True,
        "data": [TransactionOut.model_validate(t).model_dump(mode="json") for t in items],
        "pagination": Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)).model_dump(),
    }


@router.get("/transactions/{reference}")
def transaction_details(
    reference: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        tx = transactions.get_transaction(db, reference)
    except TransactionNotFound:
        tx = None
    if tx is None or tx.user_id != user_id:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"success": True, "data": TransactionOut.model_validate(tx).model_dump(mode="json")}
