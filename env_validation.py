"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

DUE_POLICIES = ("mastery", "date")


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "DUE_POLICY": os.getenv("DUE_POLICY") or "mastery",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    policy = os.environ["DUE_POLICY"].strip().lower()
    if policy not in DUE_POLICIES:
        raise EnvironmentError(
            f"Invalid DUE_POLICY: {policy} (expected one of {', '.join(DUE_POLICIES)})"
        )

    for var in ("AUTH_CODE_TTL_SECONDS", "SESSION_TTL_DAYS", "SMTP_PORT"):
        value = os.getenv(var)
        if value is None:
            continue
        try:
            parsed = int(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer, got: {value}") from None
        if parsed <= 0:
            raise EnvironmentError(f"{var} must be positive, got: {value}")

    url_vars = {"SMS_API_URL", "BOT_API_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    optional_vars: Dict[str, str] = {
        "SMTP_HOST": "SMTP server for email login codes",
        "SMS_API_ID": "sms.ru API id for SMS login codes",
        "BOT_TOKEN": "Telegram bot token for bot login codes",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer value for %s; using %s", name, default)
        return default
