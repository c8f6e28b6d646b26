"""
Thin Stripe REST API client (no SDK dependency).

Form-encoded requests authenticated with the secret key. Every mutating call
carries an ``Idempotency-Key`` derived from a stable request identifier, so a
retried request can never double-charge or double-refund. Timeouts, transport
errors, 429 and 5xx responses are retried with exponential backoff.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from orderflow.config import Settings
from orderflow.errors import GatewayError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {409, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class Intent:
    intent_id: str
    client_secret: Optional[str]
    status: str
    amount: int
    amount_received: int
    currency: str
    metadata: Dict[str, str]

    @classmethod
    def from_api(cls, body: Mapping[str, Any]) -> "Intent":
        return cls(
            intent_id=body["id"],
            client_secret=body.get("client_secret"),
            status=body.get("status", ""),
            amount=int(body.get("amount") or 0),
            amount_received=int(body.get("amount_received") or 0),
            currency=str(body.get("currency", "")).upper(),
            metadata=dict(body.get("metadata") or {}),
        )


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    status: str
    amount: int


def _form(data: Mapping[str, Any], prefix: str = "") -> Dict[str, str]:
    """Flatten nested dicts into Stripe's ``metadata[key]=value`` form keys."""
    flat: Dict[str, str] = {}
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            flat.update(_form(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class StripeGateway:
    def __init__(
        self,
        secret_key: str,
        *,
        api_base: str = "https://api.stripe.com/v1",
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._secret_key = secret_key
        self._api_base = api_base.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._retry_base = retry_base_seconds
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            max_retries=settings.gateway_max_retries,
            retry_base_seconds=settings.gateway_retry_base_seconds,
            timeout_seconds=settings.gateway_timeout_seconds,
        )

    # ── Transport ────────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._api_base,
            headers={"Authorization": f"Bearer {self._secret_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        form = _form(data) if data else None
        last_error = ""

        async with self._client() as client:
            for attempt in range(1, self._max_retries + 1):
                try:
                    resp = await client.request(method, path, data=form, headers=headers)
                except (httpx.TimeoutException, httpx.TransportError) as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                    logger.warning(
                        "Stripe %s %s attempt=%d/%d failed: %s",
                        method, path, attempt, self._max_retries, last_error,
                    )
                else:
                    if resp.is_success:
                        return resp.json()

                    error = _error_body(resp)
                    if resp.status_code not in _RETRYABLE_STATUS:
                        logger.error(
                            "Stripe %s %s rejected status=%d code=%s",
                            method, path, resp.status_code, error.get("code"),
                        )
                        raise GatewayError(
                            error.get("message") or f"Stripe returned {resp.status_code}",
                            retryable=False,
                            gateway_code=error.get("code"),
                        )
                    last_error = f"status {resp.status_code}"
                    logger.warning(
                        "Stripe %s %s attempt=%d/%d status=%d",
                        method, path, attempt, self._max_retries, resp.status_code,
                    )

                if attempt < self._max_retries:
                    await asyncio.sleep(self._retry_base * (2 ** (attempt - 1)))

        logger.error(
            "Stripe %s %s failed after %d attempts: %s",
            method, path, self._max_retries, last_error,
        )
        raise GatewayError(
            f"Payment processor unavailable ({last_error})", retryable=True
        )

    # ── Operations ───────────────────────────────────────────────────────────

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> Intent:
        body = await self._request(
            "POST",
            "/payment_intents",
            {
                "amount": amount,
                "currency": currency.lower(),
                "automatic_payment_methods": {"enabled": True},
                "metadata": dict(metadata),
            },
            idempotency_key=idempotency_key,
        )
        return Intent.from_api(body)

    async def retrieve_intent(self, intent_id: str) -> Intent:
        return Intent.from_api(await self._request("GET", f"/payment_intents/{intent_id}"))

    async def cancel_intent(self, intent_id: str, idempotency_key: str) -> Intent:
        body = await self._request(
            "POST",
            f"/payment_intents/{intent_id}/cancel",
            {"cancellation_reason": "abandoned"},
            idempotency_key=idempotency_key,
        )
        return Intent.from_api(body)

    async def refund(
        self,
        intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        body = await self._request(
            "POST",
            "/refunds",
            {
                "payment_intent": intent_id,
                "amount": amount,
                "reason": "requested_by_customer",
                "metadata": dict(metadata or {}),
            },
            idempotency_key=idempotency_key,
        )
        return GatewayRefund(
            refund_id=body["id"], status=body.get("status", "pending"), amount=int(body["amount"])
        )


def _error_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        return dict(resp.json().get("error") or {})
    except (ValueError, AttributeError):
        return {"message": resp.text[:300]}


# ── Webhook signatures ───────────────────────────────────────────────────────

def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a ``Stripe-Signature`` header value (also used by tests)."""
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Check a ``Stripe-Signature`` header: ``t=<ts>,v1=<hex>[,v1=...]``."""
    timestamp: Optional[int] = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return False
        elif key == "v1":
            candidates.append(value)

    if timestamp is None or not candidates:
        return False

    current = time.time() if now is None else now
    if tolerance_seconds and abs(current - timestamp) > tolerance_seconds:
        return False

    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, c) for c in candidates)
