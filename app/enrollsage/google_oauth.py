from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleOAuthError(RuntimeError):
    pass


@dataclass(frozen=True)
class GoogleOAuthClient:
    client_id: str
    client_secret: str
    timeout_seconds: int = 20

    def auth_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urllib.parse.urlencode(params)}"

    def _request_json(self, req: urllib.request.Request, *, retries: int = 2) -> dict[str, Any]:
        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    return json.loads(resp.read().decode("utf-8"))
            except urllib.error.HTTPError as e:
                body = e.read().decode("utf-8", errors="ignore")
                if e.code >= 500:
                    last_err = GoogleOAuthError(f"HTTP {e.code} from Google")
                    time.sleep(min(attempt + 1, 3))
                    continue
                raise GoogleOAuthError(f"HTTP {e.code} from Google: {body[:300]}") from e
            except urllib.error.URLError as e:
                last_err = e
                time.sleep(min(attempt + 1, 3))
        raise GoogleOAuthError(f"Google request failed after retries: {last_err}")

    def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        data = urllib.parse.urlencode(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            }
        ).encode("utf-8")
        req = urllib.request.Request(GOOGLE_TOKEN_URL, data=data, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        tokens = self._request_json(req)
        if not tokens.get("access_token"):
            raise GoogleOAuthError("Failed to exchange code for tokens")
        return tokens

    def userinfo(self, access_token: str) -> dict[str, Any]:
        req = urllib.request.Request(GOOGLE_USERINFO_URL, method="GET")
        req.add_header("Authorization", f"Bearer {access_token}")
        return self._request_json(req)


def google_client_for(config: dict, school=None) -> GoogleOAuthClient | None:
    """School credentials win over platform credentials; None when neither is configured."""
    if school is not None and school.google_client_id and school.google_client_secret:
        return GoogleOAuthClient(client_id=school.google_client_id, client_secret=school.google_client_secret)
    client_id = (config.get("GOOGLE_CLIENT_ID") or "").strip()
    client_secret = (config.get("GOOGLE_CLIENT_SECRET") or "").strip()
    if not client_id or not client_secret:
        return None
    return GoogleOAuthClient(client_id=client_id, client_secret=client_secret)
