"""Paystack client: initialize a checkout, verify a reference, check webhook signatures. Stateless."""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request as UrlRequest, urlopen

from app.core.config import PAYSTACK_DEFAULT_BASE_URL, settings
from app.core.errors import GatewayNotSettled, GatewayRequestError, GatewayUnreachable

logger = logging.getLogger(__name__)

# Paystack transaction.status values
SUCCESS_STATES = {"success"}
FAILED_STATES = {"failed", "abandoned", "reversed"}
# Captured or in flight but not settled yet: not a negative answer
UNSETTLED_STATES = {"ongoing", "pending", "processing", "queued", "send_otp", "send_pin", "send_phone"}


class GatewayStatus(str, Enum):
    PAID = "PAID"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class GatewayVerification:
    """A determination made by the gateway. Transport failures never produce one (GatewayUnreachable)."""

    reference: str
    status: GatewayStatus
    amount: int | None = None
    currency: str | None = None
    gateway_status: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    reference: str
    authorization_url: str
    access_code: str
    raw_response: dict[str, Any] = field(default_factory=dict)


class PaystackClient:
    def __init__(self, *, secret_key: str, base_url: str = PAYSTACK_DEFAULT_BASE_URL, timeout: float = 20.0) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @classmethod
    def from_settings(cls) -> "PaystackClient":
        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url or PAYSTACK_DEFAULT_BASE_URL,
            timeout=settings.paystack_timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, payload: dict | None = None) -> tuple[int, dict]:
        """Returns (http_status, json_body). Anything short of a readable gateway answer raises GatewayUnreachable."""
        data = json.dumps(payload).encode() if payload is not None else None
        req = UrlRequest(f"{self._base_url}{path}", data=data, method=method, headers=self._headers())
        try:
            with urlopen(req, timeout=self._timeout) as resp:
                status_code, raw = resp.status, resp.read()
        except HTTPError as e:
            status_code, raw = e.code, e.read()
        except (URLError, OSError) as e:
            logger.warning("Paystack %s %s unreachable: %s", method, path, e)
            raise GatewayUnreachable(f"Paystack unreachable: {e}") from e
        try:
            body = json.loads(raw.decode() or "{}")
        except ValueError as e:
            raise GatewayUnreachable(f"Paystack returned a non-JSON body (HTTP {status_code})") from e
        if not isinstance(body, dict):
            raise GatewayUnreachable(f"Paystack returned an unexpected body (HTTP {status_code})")
        return status_code, body

    def verify(self, reference: str) -> GatewayVerification:
        if not reference:
            raise ValueError("reference must be a non-empty string")
        status_code, body = self._request("GET", f"/transaction/verify/{quote(reference, safe='')}")

        if status_code in (400, 404) and not body.get("status"):
            # The gateway has no record of this reference: it did not succeed
            logger.info("Paystack verify %s: unknown reference (%s)", reference, body.get("message"))
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.FAILED,
                gateway_status="not_found",
                raw_response=body,
            )
        if status_code >= 300:
            # 401/403 (bad key), 429, 5xx: no determination was made
            raise GatewayUnreachable(f"Paystack verify {reference}: HTTP {status_code} {body.get('message', '')}".strip())

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        gateway_status = str(data.get("status") or "").lower()
        if gateway_status in UNSETTLED_STATES:
            raise GatewayNotSettled(reference, gateway_status)

        if not body.get("status"):
            status = GatewayStatus.UNKNOWN
        elif gateway_status in SUCCESS_STATES:
            status = GatewayStatus.PAID
        elif gateway_status in FAILED_STATES:
            status = GatewayStatus.FAILED
        else:
            status = GatewayStatus.UNKNOWN

        amount = data.get("amount")
        if amount is not None:
            try:
                amount = int(amount)
            except (TypeError, ValueError) as e:
                raise GatewayUnreachable(f"Paystack verify {reference}: unreadable amount {amount!r}") from e
        currency = data.get("currency")
        return GatewayVerification(
            reference=reference,
            status=status,
            amount=amount,
            currency=str(currency).upper() if currency else None,
            gateway_status=gateway_status,
            raw_response=body,
        )

    def initialize(
        self,
        *,
        email: str,
        amount: int,
        reference: str,
        callback_url: str | None = None,
        currency: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CheckoutSession:
        payload: dict[str, Any] = {"email": email, "amount": amount, "reference": reference}
        if callback_url:
            payload["callback_url"] = callback_url
        if currency:
            payload["currency"] = currency
        if metadata:
            payload["metadata"] = metadata
        status_code, body = self._request("POST", "/transaction/initialize", payload)
        if status_code >= 500:
            raise GatewayUnreachable(f"Paystack initialize {reference}: HTTP {status_code}")
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        if status_code >= 300 or not body.get("status") or not data.get("authorization_url"):
            logger.error("Paystack initialize %s rejected: HTTP %s %s", reference, status_code, body.get("message"))
            raise GatewayRequestError(body.get("message") or "Failed to initialize payment")
        return CheckoutSession(
            reference=str(data.get("reference") or reference),
            authorization_url=str(data["authorization_url"]),
            access_code=str(data.get("access_code") or ""),
            raw_response=body,
        )

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        """x-paystack-signature is HMAC-SHA512 of the raw request body, keyed with the secret key."""
        if not signature or not self._secret_key:
            return False
        expected = hmac.new(self._secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip())
