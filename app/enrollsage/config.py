import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    app_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    stripe_public_key: str
    stripe_secret_key: str
    stripe_webhook_secret: str

    brevo_api_key: str
    email_sender_name: str
    email_sender_email: str
    contact_email: str

    google_client_id: str
    google_client_secret: str

    session_secret: str
    inngest_event_key: str
    inngest_signing_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///enrollsage.db"),
        app_url=_getenv("APP_URL", "http://localhost:5000"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        stripe_public_key=_getenv("STRIPE_PUBLIC_KEY", ""),
        stripe_secret_key=_getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=_getenv("STRIPE_WEBHOOK_SECRET", ""),
        brevo_api_key=_getenv("BREVO_API_KEY", ""),
        email_sender_name=_getenv("EMAIL_SENDER_NAME", "EnrollSage"),
        email_sender_email=_getenv("EMAIL_SENDER_EMAIL", "hello@enrollsage.com"),
        contact_email=_getenv("CONTACT_EMAIL", "support@enrollsage.com"),
        google_client_id=_getenv("GOOGLE_CLIENT_ID", ""),
        google_client_secret=_getenv("GOOGLE_CLIENT_SECRET", ""),
        session_secret=_getenv("SESSION_SECRET", ""),
        inngest_event_key=_getenv("INNGEST_EVENT_KEY", ""),
        inngest_signing_key=_getenv("INNGEST_SIGNING_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "APP_URL": s.app_url.rstrip("/"),
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "STRIPE_PUBLIC_KEY": s.stripe_public_key,
        "STRIPE_SECRET_KEY": s.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": s.stripe_webhook_secret,
        "BREVO_API_KEY": s.brevo_api_key,
        "EMAIL_SENDER_NAME": s.email_sender_name,
        "EMAIL_SENDER_EMAIL": s.email_sender_email,
        "CONTACT_EMAIL": s.contact_email,
        "GOOGLE_CLIENT_ID": s.google_client_id,
        "GOOGLE_CLIENT_SECRET": s.google_client_secret,
        "SESSION_SECRET": s.session_secret,
        "INNGEST_EVENT_KEY": s.inngest_event_key,
        "INNGEST_SIGNING_KEY": s.inngest_signing_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # application document uploads (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
