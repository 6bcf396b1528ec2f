"""
Environment variable checks behind the /install wizard.

Checks are presence/prefix/suffix/length only; values are never echoed back to templates.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class EnvVarSpec:
    key: str
    required: bool
    description: str
    prefix: str | None = None
    alt_prefix: str | None = None
    suffix: str | None = None
    min_length: int | None = None
    help_url: str | None = None
    sensitive: bool = False


ENV_CONFIG: dict[str, EnvVarSpec] = {
    "STRIPE_PUBLIC_KEY": EnvVarSpec(
        key="STRIPE_PUBLIC_KEY",
        required=True,
        prefix="pk_",
        description="Stripe publishable key for client-side payment forms",
        help_url="https://dashboard.stripe.com/apikeys",
    ),
    "STRIPE_SECRET_KEY": EnvVarSpec(
        key="STRIPE_SECRET_KEY",
        required=True,
        prefix="sk_",
        description="Stripe secret key for server-side operations",
        help_url="https://dashboard.stripe.com/apikeys",
        sensitive=True,
    ),
    "STRIPE_WEBHOOK_SECRET": EnvVarSpec(
        key="STRIPE_WEBHOOK_SECRET",
        required=True,
        prefix="whsec_",
        description="Stripe webhook signing secret",
        help_url="https://dashboard.stripe.com/webhooks",
        sensitive=True,
    ),
    "DATABASE_URL": EnvVarSpec(
        key="DATABASE_URL",
        required=True,
        prefix="postgresql",
        alt_prefix="sqlite:",
        description="Database URL (Postgres in production, sqlite for local dev)",
        sensitive=True,
    ),
    "BREVO_API_KEY": EnvVarSpec(
        key="BREVO_API_KEY",
        required=True,
        prefix="xkeysib-",
        description="Brevo API key for transactional emails",
        help_url="https://app.brevo.com/settings/keys/api",
        sensitive=True,
    ),
    "INNGEST_SIGNING_KEY": EnvVarSpec(
        key="INNGEST_SIGNING_KEY",
        required=False,
        prefix="signkey-",
        description="Background job signing key",
        help_url="https://app.inngest.com/env/production/manage/signing-key",
        sensitive=True,
    ),
    "INNGEST_EVENT_KEY": EnvVarSpec(
        key="INNGEST_EVENT_KEY",
        required=False,
        description="Background job event key",
        help_url="https://app.inngest.com/env/production/manage/signing-key",
        sensitive=True,
    ),
    "SESSION_SECRET": EnvVarSpec(
        key="SESSION_SECRET",
        required=True,
        min_length=32,
        description="Secret for session cookie signing (32+ characters)",
        sensitive=True,
    ),
    "GOOGLE_CLIENT_ID": EnvVarSpec(
        key="GOOGLE_CLIENT_ID",
        required=False,
        suffix=".apps.googleusercontent.com",
        description='Google OAuth client ID for "Sign in with Google"',
        help_url="https://console.cloud.google.com/apis/credentials",
    ),
    "GOOGLE_CLIENT_SECRET": EnvVarSpec(
        key="GOOGLE_CLIENT_SECRET",
        required=False,
        prefix="GOCSPX-",
        description="Google OAuth client secret",
        help_url="https://console.cloud.google.com/apis/credentials",
        sensitive=True,
    ),
}


@dataclass(frozen=True)
class EnvCheck:
    key: str
    present: bool
    valid: bool
    error: str | None = None


@dataclass
class EnvStatus:
    all_present: bool
    all_valid: bool
    checks: list[EnvCheck] = field(default_factory=list)
    missing_required: list[str] = field(default_factory=list)
    invalid_keys: list[str] = field(default_factory=list)

    @property
    def configured(self) -> bool:
        return self.all_present and self.all_valid


def check_env_var(key: str, value: str | None) -> EnvCheck:
    spec = ENV_CONFIG[key]
    value = (value or "").strip()

    if not value:
        # Optional keys are fine when absent.
        return EnvCheck(key=key, present=False, valid=not spec.required, error=f"{key} is not set")

    if spec.prefix:
        ok = value.startswith(spec.prefix) or bool(spec.alt_prefix and value.startswith(spec.alt_prefix))
        if not ok:
            return EnvCheck(key=key, present=True, valid=False, error=f'{key} should start with "{spec.prefix}"')

    if spec.suffix and not value.endswith(spec.suffix):
        return EnvCheck(key=key, present=True, valid=False, error=f'{key} should end with "{spec.suffix}"')

    if spec.min_length and len(value) < spec.min_length:
        return EnvCheck(
            key=key,
            present=True,
            valid=False,
            error=f"{key} must be at least {spec.min_length} characters",
        )

    return EnvCheck(key=key, present=True, valid=True)


def check_all_env_vars(env: Mapping[str, str] | None = None) -> EnvStatus:
    env = os.environ if env is None else env
    checks: list[EnvCheck] = []
    missing: list[str] = []
    invalid: list[str] = []
    for key, spec in ENV_CONFIG.items():
        result = check_env_var(key, env.get(key))
        checks.append(result)
        if spec.required and not result.present:
            missing.append(key)
        if result.present and not result.valid:
            invalid.append(key)
    return EnvStatus(
        all_present=not missing,
        all_valid=not invalid,
        checks=checks,
        missing_required=missing,
        invalid_keys=invalid,
    )


def is_env_configured(env: Mapping[str, str] | None = None) -> bool:
    return check_all_env_vars(env).configured


def env_status_for_client(env: Mapping[str, str] | None = None) -> dict:
    """Booleans and key names only; safe to render."""
    status = check_all_env_vars(env)
    return {
        "configured": status.configured,
        "missing_keys": list(status.missing_required),
        "invalid_keys": list(status.invalid_keys),
    }
