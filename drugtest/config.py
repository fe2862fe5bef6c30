"""Application settings resolved from the environment.

A ``.env`` file in the working directory is loaded once on import so local
runs pick up e-mail credentials without exporting them by hand.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppSettings:
    """Runtime configuration for logging, notifications and branding."""

    environment: str = "development"
    log_level: str = "INFO"
    email_test_mode: bool = False
    email_test_address: str = "test@example.com"
    email_from_address: str = "results@example.com"
    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_timeout: float = 10.0
    clinic_name: str = "Drug Testing Clinic"

    @property
    def is_production(self) -> bool:
        return self.environment in {"prod", "production"}


def _get_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    """Return the active application settings derived from the environment."""

    defaults = AppSettings()
    return AppSettings(
        environment=os.getenv("ENVIRONMENT", defaults.environment).strip().lower(),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).strip().upper(),
        email_test_mode=_get_bool_env("EMAIL_TEST_MODE"),
        email_test_address=os.getenv("EMAIL_TEST_ADDRESS") or defaults.email_test_address,
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS") or defaults.email_from_address,
        email_api_url=os.getenv("EMAIL_API_URL") or None,
        email_api_key=os.getenv("EMAIL_API_KEY") or None,
        email_timeout=_get_float_env("EMAIL_TIMEOUT", defaults.email_timeout),
        clinic_name=os.getenv("CLINIC_NAME") or defaults.clinic_name,
    )


__all__ = ["AppSettings", "get_app_settings"]
