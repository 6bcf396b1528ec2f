from __future__ import annotations

import hashlib
import hmac
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any


class StripeError(RuntimeError):
    pass


class StripeSignatureError(StripeError):
    pass


SIGNATURE_TOLERANCE_SECONDS = 300


def _flatten(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Stripe's bracketed form encoding: {"metadata": {"kind": "order"}} -> metadata[kind]=order."""
    out: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            out.extend(_flatten(value, name))
        elif isinstance(value, (list, tuple)):
            for i, v in enumerate(value):
                if isinstance(v, dict):
                    out.extend(_flatten(v, f"{name}[{i}]"))
                else:
                    out.append((f"{name}[{i}]", str(v)))
        elif isinstance(value, bool):
            out.append((name, "true" if value else "false"))
        else:
            out.append((name, str(value)))
    return out


@dataclass(frozen=True)
class StripeClient:
    secret_key: str
    base_url: str = "https://api.stripe.com/v1"
    timeout_seconds: int = 30

    def request_json(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        retries: int = 3,
    ) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        encoded = urllib.parse.urlencode(_flatten(params or {}))
        data = None
        if method == "GET":
            if encoded:
                url = url + "?" + encoded
        else:
            data = encoded.encode("utf-8")

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method=method)
                req.add_header("Authorization", f"Bearer {self.secret_key}")
                req.add_header("Content-Type", "application/x-www-form-urlencoded")
                if idempotency_key:
                    req.add_header("Idempotency-Key", idempotency_key)
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    try:
                        return json.loads(raw.decode("utf-8")) if raw else {}
                    except ValueError as e:
                        raise StripeError(f"Invalid JSON from Stripe ({path})") from e
            except urllib.error.HTTPError as e:
                if e.code == 429 or e.code >= 500:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = StripeError(f"HTTP {e.code} from Stripe")
                    continue
                body_text = e.read().decode("utf-8", errors="ignore")
                message = body_text[:300]
                try:
                    message = json.loads(body_text)["error"]["message"]
                except (ValueError, KeyError, TypeError):
                    pass
                err = StripeError(message)
                err.status_code = e.code  # type: ignore[attr-defined]
                raise err from e
            except urllib.error.URLError as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise StripeError(f"Stripe request failed after retries: {last_err}")

    # Customers
    def create_customer(self, *, email: str, name: str | None = None, metadata: dict[str, str] | None = None) -> dict[str, Any]:
        return self.request_json("POST", "/customers", {"email": email, "name": name, "metadata": metadata or {}})

    # PaymentIntents
    def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str = "usd",
        customer: str | None = None,
        metadata: dict[str, Any] | None = None,
        setup_future_usage: str | None = None,
        receipt_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if amount_cents < 50:
            raise StripeError("Amount must be at least $0.50.")
        params = {
            "amount": amount_cents,
            "currency": currency,
            "customer": customer,
            "metadata": metadata or {},
            "setup_future_usage": setup_future_usage,
            "receipt_email": receipt_email,
            "automatic_payment_methods": {"enabled": True},
        }
        return self.request_json("POST", "/payment_intents", params, idempotency_key=idempotency_key)

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        return self.request_json("GET", f"/payment_intents/{urllib.parse.quote(payment_intent_id)}")

    # SetupIntents and payment methods
    def create_setup_intent(self, *, customer: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request_json(
            "POST",
            "/setup_intents",
            {"customer": customer, "usage": "off_session", "metadata": metadata or {}, "payment_method_types": ["card"]},
        )

    def retrieve_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return self.request_json("GET", f"/payment_methods/{urllib.parse.quote(payment_method_id)}")

    def detach_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return self.request_json("POST", f"/payment_methods/{urllib.parse.quote(payment_method_id)}/detach")

    # Refunds
    def create_refund(self, *, payment_intent: str, amount_cents: int | None = None, reason: str | None = None) -> dict[str, Any]:
        return self.request_json(
            "POST", "/refunds", {"payment_intent": payment_intent, "amount": amount_cents, "reason": reason}
        )


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def construct_event(
    payload: bytes,
    sig_header: str | None,
    secret: str,
    *,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: int | None = None,
) -> dict[str, Any]:
    """Verify a Stripe-Signature header (t=..., v1=...) and return the parsed event."""
    if not secret:
        raise StripeSignatureError("Webhook secret is not configured.")
    if not sig_header:
        raise StripeSignatureError("Missing Stripe-Signature header.")
    timestamp = None
    signatures = []
    for part in sig_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise StripeSignatureError("Malformed signature timestamp.") from e
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise StripeSignatureError("Malformed Stripe-Signature header.")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise StripeSignatureError("Signature mismatch.")
    now = int(time.time()) if now is None else now
    if abs(now - timestamp) > tolerance:
        raise StripeSignatureError("Signature timestamp outside tolerance.")
    try:
        return json.loads(payload.decode("utf-8"))
    except ValueError as e:
        raise StripeSignatureError("Invalid webhook payload.") from e


def stripe_from_config(config: dict) -> StripeClient | None:
    secret_key = (config.get("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        return None
    return StripeClient(secret_key=secret_key)
