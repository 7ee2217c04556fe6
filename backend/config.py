# config.py
# ============================================================================
# CREATOR BUNDLES BACKEND — SETTINGS
# ============================================================================
# Environment-driven configuration, loaded once at startup and handed to
# AppContext. Nothing else in the codebase reads os.environ directly.
# ============================================================================

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the fulfillment service."""

    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""

    # Firebase (service account file OR inline credentials)
    firebase_credentials_path: Optional[str] = None
    firebase_project_id: Optional[str] = None
    firebase_client_email: Optional[str] = None
    firebase_private_key: Optional[str] = None

    # Email
    sendgrid_api_key: Optional[str] = None
    email_from: str = "no-reply@example.com"
    app_url: str = "http://localhost:3000"
    support_email: str = "support@example.com"

    # Bundle jobs
    job_max_retries: int = Field(default=3, ge=0)
    job_backoff_base_seconds: float = Field(default=1.0, ge=0)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def login_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/dashboard/purchases"

    @property
    def firebase_configured(self) -> bool:
        if self.firebase_credentials_path:
            return True
        return bool(
            self.firebase_project_id
            and self.firebase_client_email
            and self.firebase_private_key
        )

    def firebase_service_account(self) -> dict:
        """Inline service-account dict for firebase_admin.credentials.Certificate."""
        return {
            "type": "service_account",
            "project_id": self.firebase_project_id,
            "client_email": self.firebase_client_email,
            # Env vars carry the key with escaped newlines
            "private_key": (self.firebase_private_key or "").replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ENV", "development"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH") or None,
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID") or None,
            firebase_client_email=os.getenv("FIREBASE_CLIENT_EMAIL") or None,
            firebase_private_key=os.getenv("FIREBASE_PRIVATE_KEY") or None,
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY") or None,
            email_from=os.getenv("EMAIL_FROM", "no-reply@example.com"),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
            support_email=os.getenv("SUPPORT_EMAIL", "support@example.com"),
            job_max_retries=int(os.getenv("JOB_MAX_RETRIES", "3")),
            job_backoff_base_seconds=float(os.getenv("JOB_BACKOFF_BASE_SECONDS", "1.0")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )
