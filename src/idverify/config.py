"""
Configuration management for the IDVERIFY system.

This module handles all configuration loading from environment variables
and .env files. Every tunable of the decision core (ensemble weights,
adaptive threshold coefficients, timeouts, storage locations) can be
overridden through an ``IDVERIFY_*`` variable; defaults come from
``idverify.constants``.
"""

import os
from pathlib import Path
from typing import Dict, Optional
from dotenv import load_dotenv

from . import constants
from .exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be a number", config_key=name, config_value=raw
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{name} must be an integer", config_key=name, config_value=raw
        )


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default).lower()).lower() == "true"


# =============================================================================
# Storage Paths
# =============================================================================
# Base directory for local session cache and JSON audit store
DATA_DIR: Path = Path(os.getenv("IDVERIFY_DATA_DIR", str(Path.cwd() / ".idverify")))

# Local session cache (stands in for browser local storage)
SESSION_CACHE_PATH: Path = Path(
    os.getenv(
        "IDVERIFY_SESSION_CACHE_PATH",
        str(DATA_DIR / constants.DEFAULT_SESSION_CACHE_FILE),
    )
)

# Durable audit store used by the JSON file gateway
AUDIT_STORE_PATH: Path = Path(
    os.getenv("IDVERIFY_AUDIT_STORE_PATH", str(DATA_DIR / constants.DEFAULT_AUDIT_FILE))
)

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("IDVERIFY_LOG_LEVEL", "INFO").upper()

# Render log events as JSON instead of console key/value output
STRUCTURED_LOGGING: bool = _env_bool("IDVERIFY_STRUCTURED_LOGGING", False)

# =============================================================================
# Quality Gate
# =============================================================================
ACCEPTANCE_FLOOR: float = _env_float(
    "IDVERIFY_ACCEPTANCE_FLOOR", constants.QUALITY_ACCEPTANCE_FLOOR
)

# =============================================================================
# Ensemble Consensus
# =============================================================================
ENSEMBLE_WEIGHTS: Dict[str, float] = {
    name: _env_float(f"IDVERIFY_WEIGHT_{name.upper()}", weight)
    for name, weight in constants.DEFAULT_ENSEMBLE_WEIGHTS.items()
}

EMBEDDING_BLEND: float = _env_float("IDVERIFY_EMBEDDING_BLEND", constants.EMBEDDING_BLEND)

BASELINE_THRESHOLD: float = _env_float(
    "IDVERIFY_BASELINE_THRESHOLD", constants.BASELINE_THRESHOLD
)
QUALITY_PENALTY: float = _env_float("IDVERIFY_QUALITY_PENALTY", constants.QUALITY_PENALTY)
DISPERSION_PENALTY: float = _env_float(
    "IDVERIFY_DISPERSION_PENALTY", constants.DISPERSION_PENALTY
)
THRESHOLD_MIN: float = _env_float("IDVERIFY_THRESHOLD_MIN", constants.THRESHOLD_MIN)
THRESHOLD_MAX: float = _env_float("IDVERIFY_THRESHOLD_MAX", constants.THRESHOLD_MAX)

# =============================================================================
# Scorer Pool
# =============================================================================
SCORER_TIMEOUT_SECONDS: float = _env_float(
    "IDVERIFY_SCORER_TIMEOUT_SECONDS", constants.SCORER_TIMEOUT_SECONDS
)

# Worker threads shared by the embedding scorers and classical comparators
MAX_WORKERS: int = _env_int("IDVERIFY_MAX_WORKERS", constants.MAX_SCORER_WORKERS)

# =============================================================================
# Audit Persistence
# =============================================================================
AUDIT_RETRY_ATTEMPTS: int = _env_int(
    "IDVERIFY_AUDIT_RETRY_ATTEMPTS", constants.AUDIT_RETRY_ATTEMPTS
)
AUDIT_RETRY_DELAY: float = _env_float(
    "IDVERIFY_AUDIT_RETRY_DELAY", constants.AUDIT_RETRY_DELAY
)
AUDIT_RETRY_BACKOFF: float = _env_float(
    "IDVERIFY_AUDIT_RETRY_BACKOFF", constants.AUDIT_RETRY_BACKOFF
)

# Device description recorded with audit rows when the caller supplies none
DEFAULT_DEVICE_INFO: Optional[str] = os.getenv("IDVERIFY_DEVICE_INFO")

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Skip configuration validation on import
DEBUG_MODE: bool = _env_bool("IDVERIFY_DEBUG_MODE", False)


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current configuration settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ConfigurationError
        If any configuration parameter is invalid.
    """
    errors = []

    if not 0.0 <= ACCEPTANCE_FLOOR <= 100.0:
        errors.append("IDVERIFY_ACCEPTANCE_FLOOR must be between 0 and 100")

    for name, weight in ENSEMBLE_WEIGHTS.items():
        if weight < 0:
            errors.append(f"IDVERIFY_WEIGHT_{name.upper()} cannot be negative")
    if sum(ENSEMBLE_WEIGHTS.values()) <= 0:
        errors.append("Ensemble weights cannot all be zero")

    if not 0.0 <= EMBEDDING_BLEND <= 1.0:
        errors.append("IDVERIFY_EMBEDDING_BLEND must be between 0 and 1")

    if THRESHOLD_MIN > THRESHOLD_MAX:
        errors.append("IDVERIFY_THRESHOLD_MIN cannot exceed IDVERIFY_THRESHOLD_MAX")

    if QUALITY_PENALTY < 0 or DISPERSION_PENALTY < 0:
        errors.append("Threshold penalties cannot be negative")

    if SCORER_TIMEOUT_SECONDS <= 0:
        errors.append("IDVERIFY_SCORER_TIMEOUT_SECONDS must be positive")

    if MAX_WORKERS < 1:
        errors.append("IDVERIFY_MAX_WORKERS must be at least 1")

    if AUDIT_RETRY_ATTEMPTS < 1:
        errors.append("IDVERIFY_AUDIT_RETRY_ATTEMPTS must be at least 1")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"IDVERIFY_LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors),
            context={"errors": len(errors)},
        )

    return True


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "storage": {
            "session_cache": str(SESSION_CACHE_PATH),
            "audit_store": str(AUDIT_STORE_PATH),
        },
        "quality_gate": {"acceptance_floor": ACCEPTANCE_FLOOR},
        "consensus": {
            "weights": dict(ENSEMBLE_WEIGHTS),
            "embedding_blend": EMBEDDING_BLEND,
            "baseline_threshold": BASELINE_THRESHOLD,
            "quality_penalty": QUALITY_PENALTY,
            "dispersion_penalty": DISPERSION_PENALTY,
            "threshold_range": (THRESHOLD_MIN, THRESHOLD_MAX),
        },
        "scorer_pool": {
            "timeout_seconds": SCORER_TIMEOUT_SECONDS,
            "max_workers": MAX_WORKERS,
        },
        "logging": {"level": LOG_LEVEL, "structured": STRUCTURED_LOGGING},
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
