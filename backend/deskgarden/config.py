from __future__ import annotations

from dataclasses import dataclass

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


class Settings(BaseSettings):
    model_config = {
        "env_file": "../.env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # Gemini
    google_ai_api_key: str = ""
    consultation_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image-preview"
    consultation_max_output_tokens: int = 1024
    consultation_temperature: float = 0.25
    consultation_top_p: float = 0.9
    critique_temperature: float = 0.2
    image_temperature: float = 0.15

    # Coupang Partners
    coupang_access_key: str = ""
    coupang_secret_key: str = ""
    coupang_partner_id: str | None = None
    coupang_api_host: str = "https://api-gateway.coupang.com"

    # Recommendations stay hidden unless explicitly enabled
    disable_reco: bool = True

    # Timeouts (seconds)
    model_timeout_seconds: float = 60.0
    provider_timeout_seconds: float = 10.0
    affiliate_timeout_seconds: float = 10.0

    # Images
    image_max_size: int = 1280
    after_image_max_retries: int = 2

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""

    @field_validator("disable_reco", mode="before")
    @classmethod
    def _parse_flag(cls, value: object) -> object:
        """Accept loose truthy/falsy strings; anything unrecognized keeps the default."""
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in _TRUTHY:
                return True
            if normalized in _FALSY:
                return False
            return True
        return value

    @property
    def recommendations_enabled(self) -> bool:
        return not self.disable_reco


settings = Settings()


class AffiliateCredentialsMissing(RuntimeError):
    """Raised when the Coupang Partners access/secret keys are not configured."""


@dataclass(frozen=True)
class AffiliateCredentials:
    access_key: str
    secret_key: str
    partner_id: str | None = None


def resolve_affiliate_credentials(config: Settings | None = None) -> AffiliateCredentials:
    """Build affiliate credentials from settings.

    Called once while wiring the pipeline; the result is handed to the
    affiliate provider so no call site re-reads the environment.
    """
    config = config or settings
    access_key = config.coupang_access_key.strip()
    secret_key = config.coupang_secret_key.strip()
    if not access_key or not secret_key:
        message = (
            "Coupang Partners API credentials missing. "
            "Set COUPANG_ACCESS_KEY and COUPANG_SECRET_KEY in your environment."
        )
        structlog.get_logger().warning("affiliate_env_missing", message=message)
        raise AffiliateCredentialsMissing(message)

    partner_id = (config.coupang_partner_id or "").strip() or None
    credentials = AffiliateCredentials(
        access_key=access_key,
        secret_key=secret_key,
        partner_id=partner_id,
    )
    structlog.get_logger().info("affiliate_env_resolved", partner_id=partner_id or "none")
    return credentials
