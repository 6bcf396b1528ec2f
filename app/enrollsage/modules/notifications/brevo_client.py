from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any


class BrevoError(RuntimeError):
    pass


class BrevoRateLimited(BrevoError):
    pass


TEMPLATES = {
    "WELCOME": 1,
    "APPLICATION_RECEIVED": 2,
    "APPLICATION_STATUS": 3,
    "ENROLLMENT_CONFIRMED": 4,
    "PAYMENT_RECEIVED": 5,
    "PAYMENT_REMINDER": 6,
    "ENROLLMENT_TIPS": 7,
    "STAFF_INVITATION": 8,
}

LISTS = {
    "ALL_FAMILIES": 1,
    "NEWSLETTER": 2,
    "SCHOOL_LEADS": 3,
}


@dataclass(frozen=True)
class BrevoClient:
    api_key: str
    sender_name: str
    sender_email: str
    base_url: str = "https://api.brevo.com/v3"
    timeout_seconds: int = 30

    def request_json(self, path: str, body: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8")

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method="POST")
                req.add_header("api-key", self.api_key)
                req.add_header("Content-Type", "application/json")
                req.add_header("Accept", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                    if not raw:
                        return {}
                    try:
                        return json.loads(raw.decode("utf-8"))
                    except ValueError as e:
                        raise BrevoError(f"Invalid JSON from Brevo ({path})") from e
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = BrevoRateLimited("Rate limited (429)")
                    continue
                body_text = e.read().decode("utf-8", errors="ignore")
                err = BrevoError(f"HTTP {e.code} from Brevo: {body_text[:300]}")
                err.status_code = e.code  # type: ignore[attr-defined]
                raise err from e
            except urllib.error.URLError as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise BrevoError(f"Brevo request failed after retries: {last_err}")

    def _sender(self) -> dict[str, str]:
        return {"name": self.sender_name, "email": self.sender_email}

    def send_transactional(
        self,
        *,
        to_email: str,
        to_name: str | None,
        template_id: int,
        params: dict[str, Any],
        subject: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "to": [{"email": to_email, **({"name": to_name} if to_name else {})}],
            "templateId": template_id,
            "params": params,
            "sender": self._sender(),
        }
        if subject:
            body["subject"] = subject
        j = self.request_json("/smtp/email", body)
        return str(j.get("messageId") or "unknown")

    def send_email(
        self,
        *,
        to_email: str,
        to_name: str | None,
        subject: str,
        html: str,
        text: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "to": [{"email": to_email, **({"name": to_name} if to_name else {})}],
            "subject": subject,
            "htmlContent": html,
            "sender": self._sender(),
        }
        if text:
            body["textContent"] = text
        j = self.request_json("/smtp/email", body)
        return str(j.get("messageId") or "unknown")

    def upsert_contact(self, *, email: str, list_ids: list[int] | None = None, attributes: dict[str, Any] | None = None) -> None:
        body: dict[str, Any] = {"email": email, "updateEnabled": True}
        if list_ids:
            body["listIds"] = list_ids
        if attributes:
            body["attributes"] = {k: v for k, v in attributes.items() if v is not None}
        try:
            self.request_json("/contacts", body)
        except BrevoError as e:
            # 400 here means the contact already exists.
            if getattr(e, "status_code", None) != 400:
                raise


def brevo_from_config(config: dict) -> BrevoClient | None:
    api_key = (config.get("BREVO_API_KEY") or "").strip()
    if not api_key:
        return None
    return BrevoClient(
        api_key=api_key,
        sender_name=config.get("EMAIL_SENDER_NAME") or "EnrollSage",
        sender_email=config.get("EMAIL_SENDER_EMAIL") or "hello@enrollsage.com",
    )
