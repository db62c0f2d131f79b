"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 4


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "QUIZ_DEFAULT_MAX_ATTEMPTS": str(DEFAULT_MAX_ATTEMPTS),
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LRS_URL": "Learning Record Store URL",
        "LRS_AUTH": "Learning Record Store authentication",
        "APP_BASE_URL": "Home page used for xAPI actor accounts",
    }

    try:
        max_attempts = int(os.environ["QUIZ_DEFAULT_MAX_ATTEMPTS"])
    except ValueError as exc:
        raise EnvironmentError(
            f"QUIZ_DEFAULT_MAX_ATTEMPTS must be an integer: {os.environ['QUIZ_DEFAULT_MAX_ATTEMPTS']}"
        ) from exc
    if max_attempts < 1:
        raise EnvironmentError("QUIZ_DEFAULT_MAX_ATTEMPTS must be at least 1")

    url_vars = {"LRS_URL", "APP_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default


def default_max_attempts() -> int:
    return max(1, get_env_int("QUIZ_DEFAULT_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))


def describe_configuration() -> Dict[str, str]:
    """Effective configuration snapshot for startup logging (secrets masked)."""
    return {
        "DB_PATH": os.getenv("DB_PATH", "data.db"),
        "QUIZ_DEFAULT_MAX_ATTEMPTS": str(default_max_attempts()),
        "XAPI_ENABLED": str(get_env_bool("XAPI_ENABLED", True)),
        "LRS_URL": os.getenv("LRS_URL") or "-",
        "LRS_AUTH": "***" if os.getenv("LRS_AUTH") else "-",
    }
