"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate the configuration read from the environment.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "BASE_URL": os.getenv("BASE_URL") or "https://questionpro.ai",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LRS_ENDPOINT": "Learning Record Store base URL",
        "LRS_USERNAME": "Learning Record Store Basic auth user",
        "LRS_PASSWORD": "Learning Record Store Basic auth password",
    }

    url_vars = {"BASE_URL", "LRS_ENDPOINT"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    # Credentials only make sense together with an endpoint
    if os.getenv("LRS_ENDPOINT"):
        missing = [var for var in ("LRS_USERNAME", "LRS_PASSWORD") if not os.getenv(var)]
        if missing:
            raise EnvironmentError(
                f"LRS_ENDPOINT is set but missing: {', '.join(missing)}"
            )

    numeric_vars: Dict[str, type] = {
        "LRS_TIMEOUT": float,
        "LRS_MAX_ATTEMPTS": int,
        "SCORM_HISTORY_LIMIT": int,
        "CACHE_TTL_SECONDS": int,
    }
    for var, kind in numeric_vars.items():
        value = os.getenv(var)
        if value is None or value == "":
            continue
        try:
            parsed = kind(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be a {kind.__name__}: {value}") from None
        if parsed < 0:
            raise EnvironmentError(f"{var} must not be negative: {value}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, value, default)
        return default

def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default
