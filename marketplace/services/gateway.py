"""Payment gateway adapter.

Four operations against an escrow-capable processor: place a hold on the
payer, capture it, transfer platform balance to a payee's connected account,
and refund. No amount math happens here; callers pass final amounts.

Supports two backends:
- Stripe REST API over httpx (production)
- Log-only (development / testing): logs each call and returns ids derived
  from the idempotency key, so replays return the same id like the real API

Set PAYMENT_BACKEND=stripe and STRIPE_SECRET_KEY for production.

Every call takes an idempotency key. Timeouts are reported as retryable
failures: the request may have been applied, and retrying with the same key
is the only safe recovery.
"""

import hashlib
import logging
import uuid
from decimal import Decimal
from typing import Protocol

import httpx

from marketplace.config import settings
from marketplace.services.commission import to_cents

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Processor rejected or failed a call."""

    def __init__(self, message: str, *, retryable: bool, code: str | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class PaymentGateway(Protocol):
    provider: str

    async def authorize_charge(
        self,
        payer: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        payment_method: str | None = None,
        metadata: dict | None = None,
    ) -> str: ...

    async def capture_hold(self, hold_id: str, idempotency_key: str) -> str: ...

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        metadata: dict | None = None,
    ) -> str: ...

    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> str: ...


# --- Idempotency keys ---

def hold_key(job_id: uuid.UUID, amount_cents: int) -> str:
    return f"hold:{job_id}:{amount_cents}"


def capture_key(hold_id: str) -> str:
    return f"capture:{hold_id}"


def payout_key(job_id: uuid.UUID, payee_cents: int) -> str:
    return f"payout:{job_id}:{payee_cents}"


def refund_key(job_id: uuid.UUID) -> str:
    return f"refund:{job_id}"


def extra_time_key(job_id: uuid.UUID, prior_approved_hours: Decimal, total_cents: int) -> str:
    # prior hours keep two equal-sized approvals on the same job from colliding
    return f"extra_time:{job_id}:{to_cents(prior_approved_hours)}:{total_cents}"


class LogPaymentGateway:
    """Development gateway: logs calls instead of moving money."""

    provider = "log"

    @staticmethod
    def _id(prefix: str, idempotency_key: str) -> str:
        return f"{prefix}_{hashlib.sha256(idempotency_key.encode()).hexdigest()[:24]}"

    async def authorize_charge(
        self,
        payer: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        payment_method: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        hold_id = self._id("pi", idempotency_key)
        logger.info("PAYMENT hold %s payer=%s amount=%s key=%s", hold_id, payer, amount, idempotency_key)
        return hold_id

    async def capture_hold(self, hold_id: str, idempotency_key: str) -> str:
        logger.info("PAYMENT capture %s key=%s", hold_id, idempotency_key)
        return self._id("ch", idempotency_key)

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        metadata: dict | None = None,
    ) -> str:
        transfer_id = self._id("tr", idempotency_key)
        logger.info(
            "PAYMENT transfer %s destination=%s amount=%s key=%s",
            transfer_id, destination, amount, idempotency_key,
        )
        return transfer_id

    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> str:
        refund_id = self._id("re", idempotency_key)
        logger.info("PAYMENT refund %s charge=%s amount=%s key=%s", refund_id, charge_id, amount, idempotency_key)
        return refund_id


# Intent states in which the money was never captured; refunding means cancelling
_UNCAPTURED_STATES = {
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
}


class StripePaymentGateway:
    """Production gateway: Stripe PaymentIntents + Connect transfers."""

    provider = "stripe"

    def __init__(
        self,
        secret_key: str,
        api_url: str = "https://api.stripe.com",
        currency: str = "usd",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        data: dict | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.request(method, f"{self.api_url}{path}", data=data, headers=headers)
            except httpx.TimeoutException:
                logger.error("Stripe %s %s timed out (key=%s)", method, path, idempotency_key)
                raise GatewayError("Payment processor timed out", retryable=True, code="timeout")
            except httpx.RequestError as e:
                logger.error("Stripe %s %s request failed: %s", method, path, e)
                raise GatewayError("Failed to reach payment processor", retryable=True, code="network")

        if resp.status_code >= 400:
            try:
                error = resp.json().get("error", {})
            except ValueError:
                error = {}
            message = error.get("message") or f"Payment processor returned {resp.status_code}"
            code = error.get("code") or error.get("type")
            retryable = resp.status_code in (409, 429) or resp.status_code >= 500
            logger.error("Stripe %s %s returned %d: %s", method, path, resp.status_code, message)
            raise GatewayError(message, retryable=retryable, code=code)

        return resp.json()

    @staticmethod
    def _metadata(metadata: dict | None) -> dict:
        return {f"metadata[{k}]": str(v) for k, v in (metadata or {}).items()}

    async def authorize_charge(
        self,
        payer: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        payment_method: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        data = {
            "amount": to_cents(amount),
            "currency": self.currency,
            "customer": payer,
            "capture_method": "manual",
            "confirm": "true",
            "off_session": "true",
            **self._metadata(metadata),
        }
        if payment_method:
            data["payment_method"] = payment_method
        intent = await self._request("POST", "/v1/payment_intents", data, idempotency_key)
        if intent.get("status") != "requires_capture":
            raise GatewayError(
                f"Hold was not authorized (status {intent.get('status')})",
                retryable=False,
                code="authorization_failed",
            )
        return intent["id"]

    async def capture_hold(self, hold_id: str, idempotency_key: str) -> str:
        intent = await self._request(
            "POST", f"/v1/payment_intents/{hold_id}/capture", None, idempotency_key
        )
        return intent.get("latest_charge") or intent["id"]

    async def transfer(
        self,
        destination: str,
        amount: Decimal,
        idempotency_key: str,
        *,
        metadata: dict | None = None,
    ) -> str:
        data = {
            "amount": to_cents(amount),
            "currency": self.currency,
            "destination": destination,
            **self._metadata(metadata),
        }
        transfer = await self._request("POST", "/v1/transfers", data, idempotency_key)
        return transfer["id"]

    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> str:
        intent = await self._request("GET", f"/v1/payment_intents/{charge_id}")
        if intent.get("status") in _UNCAPTURED_STATES:
            cancelled = await self._request(
                "POST", f"/v1/payment_intents/{charge_id}/cancel", None, idempotency_key
            )
            return cancelled["id"]
        if intent.get("status") == "canceled":
            return intent["id"]

        refund = await self._request(
            "POST",
            "/v1/refunds",
            {"payment_intent": charge_id, "amount": to_cents(amount)},
            idempotency_key,
        )
        return refund["id"]


def get_payment_gateway() -> PaymentGateway:
    if settings.payment_backend == "stripe":
        return StripePaymentGateway(
            secret_key=settings.stripe_secret_key,
            api_url=settings.stripe_api_url,
            currency=settings.currency,
            timeout=settings.gateway_timeout_seconds,
        )
    return LogPaymentGateway()
