"""Checkout, verify/callback, webhook, history and enrollment endpoints."""
import hashlib
import hmac
import json

from fastapi.testclient import TestClient
from sqlmodel import select

from app.core.config import settings
from app.core.errors import GatewayRequestError, GatewayUnreachable
from app.main import app
from app.models import Course, SecurityLog
from app.services import enrollments, transactions


def _checkout(client: TestClient, headers: dict, course_id: int) -> str:
    r = client.post("/payments/initialize", json={"course_id": course_id}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()["data"]["reference"]


def _signed(payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    sig = hmac.new(settings.paystack_secret_key.encode(), body, hashlib.sha512).hexdigest()
    return body, {"x-paystack-signature": sig, "Content-Type": "application/json"}


# --- initialize ---


def test_initialize_creates_pending_transaction(client, gateway, db, course, student, auth_headers):
    r = client.post("/payments/initialize", json={"course_id": course.id}, headers=auth_headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["amount"] == 5000
    assert data["currency"] == "NGN"
    assert data["authorization_url"].endswith(data["reference"])
    assert data["reference"].startswith("ENR_")

    tx = transactions.get_transaction(db, data["reference"])
    assert tx.status == "PENDING"
    assert tx.user_id == student.id
    assert tx.course_title == course.title

    call = gateway.initialize_calls[0]
    assert call["email"] == student.email
    assert call["amount"] == 5000
    assert call["callback_url"] == "https://learn.example.com/payment/callback"


def test_initialize_charges_discount_price(client, gateway, db, course, auth_headers):
    course.discount_price = 3500
    db.add(course)
    db.commit()
    reference = _checkout(client, auth_headers, course.id)
    assert transactions.get_transaction(db, reference).amount == 3500
    assert gateway.initialize_calls[0]["amount"] == 3500


def test_initialize_references_are_unique(client, course, auth_headers):
    assert _checkout(client, auth_headers, course.id) != _checkout(client, auth_headers, course.id)


def test_initialize_requires_login(client, course):
    r = client.post("/payments/initialize", json={"course_id": course.id})
    assert r.status_code == 401


def test_initialize_rejects_missing_and_unpublished_course(client, db, course, auth_headers):
    assert client.post("/payments/initialize", json={"course_id": 999}, headers=auth_headers).status_code == 404
    draft = Course(title="Draft", slug="draft", price=1000, is_published=False)
    db.add(draft)
    db.commit()
    db.refresh(draft)
    assert client.post("/payments/initialize", json={"course_id": draft.id}, headers=auth_headers).status_code == 400


def test_initialize_validates_body(client, auth_headers):
    r = client.post("/payments/initialize", json={"course_id": 0}, headers=auth_headers)
    assert r.status_code == 422
    assert r.json()["status_code"] == 422


def test_initialize_rejects_already_enrolled(client, db, course, student, auth_headers):
    enrollments.ensure_enrollment(db, student.id, course.id, "TXN-OLD", 5000, "NGN")
    r = client.post("/payments/initialize", json={"course_id": course.id}, headers=auth_headers)
    assert r.status_code == 400
    assert "already enrolled" in r.json()["error"]


def test_initialize_gateway_errors_are_502(client, gateway, course, auth_headers):
    gateway.initialize_error = GatewayUnreachable("timeout")
    assert client.post("/payments/initialize", json={"course_id": course.id}, headers=auth_headers).status_code == 502
    gateway.initialize_error = GatewayRequestError("Invalid key")
    assert client.post("/payments/initialize", json={"course_id": course.id}, headers=auth_headers).status_code == 502


# --- verify / callback ---


def test_verify_paid_enrolls_and_is_idempotent(client, gateway, course, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))

    r = client.get(f"/payments/verify/{reference}", headers=auth_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["status"] == "PAID"
    assert body["data"]["enrolled"] is True
    enrollment_id = body["data"]["enrollment"]["id"]
    assert body["data"]["transaction"]["amount_paid"] == 5000

    again = client.get(f"/payments/verify/{reference}", headers=auth_headers)
    assert again.status_code == 200
    assert again.json()["data"]["enrollment"]["id"] == enrollment_id
    assert gateway.verify_calls == [reference]


def test_verify_pending_is_202_with_retry_after(client, gateway, course, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, GatewayUnreachable("timeout"))
    r = client.get(f"/payments/verify/{reference}", headers=auth_headers)
    assert r.status_code == 202
    assert r.headers["Retry-After"] == "5"
    assert r.json()["success"] is False
    assert r.json()["data"]["reason"] == "gateway_unreachable"


def test_verify_amount_mismatch_is_400(client, gateway, course, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 100))
    r = client.get(f"/payments/verify/{reference}", headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["data"]["status"] == "FAILED"
    assert r.json()["data"]["reason"] == "amount_mismatch"
    assert r.json()["data"]["enrolled"] is False


def test_verify_unknown_reference_is_404(client, gateway, student, auth_headers):
    r = client.get("/payments/verify/NOPE", headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["data"]["reason"] == "unknown_reference"
    assert gateway.verify_calls == []


def test_verify_someone_elses_reference_is_404(client, gateway, course, auth_headers, other_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))
    r = client.get(f"/payments/verify/{reference}", headers=other_headers)
    assert r.status_code == 404
    assert gateway.verify_calls == []


def test_callback_accepts_paystack_query_names(client, gateway, course, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))
    r = client.get("/payments/callback", params={"trxref": reference, "reference": reference}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "PAID"

    assert client.get("/payments/callback", headers=auth_headers).status_code == 400


# --- webhook ---


def test_webhook_rejects_bad_signature(client, gateway, db, course, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    body = json.dumps({"event": "charge.success", "data": {"reference": reference}}).encode()
    r = client.post("/payments/webhook/paystack", content=body, headers={"x-paystack-signature": "deadbeef"})
    assert r.status_code == 401
    assert gateway.verify_calls == []
    logged = db.exec(select(SecurityLog)).first()
    assert logged is not None
    assert logged.event == "bad_webhook_signature"


def test_webhook_charge_success_verifies_against_gateway(client, gateway, db, course, student, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))
    body, headers = _signed({"event": "charge.success", "data": {"reference": reference, "amount": 5000}})

    r = client.post("/payments/webhook/paystack", content=body, headers=headers)
    assert r.status_code == 200
    assert r.json() == {"status": "success"}
    assert enrollments.get_active_enrollment(db, student.id, course.id) is not None

    # The redirect arriving after the webhook reads the stored outcome
    v = client.get(f"/payments/verify/{reference}", headers=auth_headers)
    assert v.status_code == 200
    assert gateway.verify_calls == [reference]

    # Paystack retries deliveries; a repeat is a no-op
    assert client.post("/payments/webhook/paystack", content=body, headers=headers).status_code == 200
    assert gateway.verify_calls == [reference]


def test_webhook_body_cannot_claim_success(client, gateway, db, course, student, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.declined(reference))
    body, headers = _signed({"event": "charge.success", "data": {"reference": reference, "status": "success"}})
    assert client.post("/payments/webhook/paystack", content=body, headers=headers).status_code == 200
    assert transactions.get_transaction(db, reference).status == "FAILED"
    assert enrollments.get_active_enrollment(db, student.id, course.id) is None


def test_webhook_refund_revokes_access(client, gateway, db, course, student, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))
    client.get(f"/payments/verify/{reference}", headers=auth_headers)

    body, headers = _signed({"event": "refund.processed", "data": {"transaction_reference": reference}})
    assert client.post("/payments/webhook/paystack", content=body, headers=headers).status_code == 200
    assert enrollments.get_active_enrollment(db, student.id, course.id) is None

    listed = client.get("/enrollments", params={"status": "REVOKED"}, headers=auth_headers).json()["data"]
    assert [e["transaction_reference"] for e in listed] == [reference]


def test_webhook_unknown_event_and_bad_payload(client, gateway):
    body, headers = _signed({"event": "transfer.success", "data": {}})
    assert client.post("/payments/webhook/paystack", content=body, headers=headers).status_code == 200

    raw = b"not json"
    sig = hmac.new(settings.paystack_secret_key.encode(), raw, hashlib.sha512).hexdigest()
    r = client.post("/payments/webhook/paystack", content=raw, headers={"x-paystack-signature": sig})
    assert r.status_code == 400


# --- history ---


def test_transaction_history_and_details(client, gateway, course, auth_headers, other_headers):
    first = _checkout(client, auth_headers, course.id)
    second = _checkout(client, auth_headers, course.id)
    gateway.script(first, gateway.paid(first, 5000))
    client.get(f"/payments/verify/{first}", headers=auth_headers)

    r = client.get("/payments/transactions", params={"limit": 1}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert len(r.json()["data"]) == 1

    paid = client.get("/payments/transactions", params={"status": "PAID"}, headers=auth_headers).json()
    assert [t["reference"] for t in paid["data"]] == [first]

    details = client.get(f"/payments/transactions/{second}", headers=auth_headers)
    assert details.status_code == 200
    assert details.json()["data"]["status"] == "PENDING"

    assert client.get(f"/payments/transactions/{second}", headers=other_headers).status_code == 404
    assert client.get("/payments/transactions/NOPE", headers=auth_headers).status_code == 404
    assert client.get("/payments/transactions", headers=other_headers).json()["pagination"]["total"] == 0


def test_enrollments_listing(client, gateway, course, auth_headers, other_headers):
    assert client.get("/enrollments", headers=auth_headers).json()["data"] == []
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))
    client.get(f"/payments/verify/{reference}", headers=auth_headers)

    mine = client.get("/enrollments", headers=auth_headers).json()["data"]
    assert len(mine) == 1
    assert mine[0]["course_id"] == course.id
    assert mine[0]["status"] == "ACTIVE"
    assert client.get("/enrollments", headers=other_headers).json()["data"] == []


def test_replayed_webhook_after_refund_keeps_access_revoked(client, gateway, db, course, student, auth_headers):
    reference = _checkout(client, auth_headers, course.id)
    gateway.script(reference, gateway.paid(reference, 5000))
    charge, charge_headers = _signed({"event": "charge.success", "data": {"reference": reference}})
    assert client.post("/payments/webhook/paystack", content=charge, headers=charge_headers).status_code == 200

    refund, refund_headers = _signed({"event": "refund.processed", "data": {"transaction_reference": reference}})
    assert client.post("/payments/webhook/paystack", content=refund, headers=refund_headers).status_code == 200

    # Paystack redelivers the original charge event
    assert client.post("/payments/webhook/paystack", content=charge, headers=charge_headers).status_code == 200
    assert enrollments.get_active_enrollment(db, student.id, course.id) is None

    r = client.get(f"/payments/verify/{reference}", headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["data"]["reason"] == "refunded"
    assert r.json()["data"]["enrolled"] is False
    assert gateway.verify_calls == [reference]


def test_unhandled_error_uses_error_envelope(gateway, course, auth_headers):
    with TestClient(app, raise_server_exceptions=False) as c:
        reference = _checkout(c, auth_headers, course.id)
        gateway.script(reference, RuntimeError("boom"))
        r = c.get(f"/payments/verify/{reference}", headers={**auth_headers, "X-Request-ID": "req-500"})
    assert r.status_code == 500
    j = r.json()
    assert j["status_code"] == 500
    assert j["error"] == "Something went wrong while processing the payment."
    assert j["request_id"] == "req-500"
