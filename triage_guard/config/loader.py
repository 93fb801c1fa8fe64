"""
Configuration management and loading.

Settings come from the environment (optionally a ``.env`` file) and an
optional YAML tuning file that overrides the heuristic constants.
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from ..core.estimator import ESTIMATE_BUFFER_MULTIPLIER
from ..core.retry import MAX_ATTEMPTS, RATE_LIMIT_BACKOFF_SECONDS
from ..providers.base import DEFAULT_TIMEOUT_SECONDS
from ..storage.db import DEFAULT_DB_PATH
from ..storage.ledger import CREDIT_CONVERSION_RATE
from ..storage.repository import DEFAULT_RUN_HISTORY_LIMIT


TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class TuningConfig:
    """Heuristic constants that may be overridden per deployment."""
    max_attempts: int = MAX_ATTEMPTS
    rate_limit_backoff_seconds: float = RATE_LIMIT_BACKOFF_SECONDS
    estimate_buffer_multiplier: Decimal = ESTIMATE_BUFFER_MULTIPLIER
    credit_conversion_rate: Decimal = CREDIT_CONVERSION_RATE
    provider_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    run_history_limit: int = DEFAULT_RUN_HISTORY_LIMIT

    def __post_init__(self):
        """Validate tuning values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.rate_limit_backoff_seconds < 0:
            raise ValueError("rate_limit_backoff_seconds must be >= 0")
        if self.estimate_buffer_multiplier < 1:
            raise ValueError("estimate_buffer_multiplier must be >= 1")
        if not 0 < self.credit_conversion_rate <= 1:
            raise ValueError("credit_conversion_rate must be in (0, 1]")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be > 0")
        if self.run_history_limit < 1:
            raise ValueError("run_history_limit must be >= 1")


@dataclass(frozen=True)
class Settings:
    """Complete runtime configuration."""
    openrouter_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    openrouter_data_policy: Optional[str] = None
    webhook_secret: Optional[str] = None
    currency: str = "usd"
    ledger_disabled: bool = False
    db_path: str = DEFAULT_DB_PATH
    log_level: str = "INFO"
    tuning: TuningConfig = field(default_factory=TuningConfig)

    def __post_init__(self):
        """Validate settings values."""
        if not self.currency or not self.currency.isalpha() or len(self.currency) != 3:
            raise ValueError(f"currency must be a 3-letter code, got: {self.currency!r}")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of: {sorted(LOG_LEVELS)}")

    @property
    def managed_credentials(self) -> Dict[str, str]:
        """Server-side provider keys used for metered calls."""
        credentials = {}
        if self.openrouter_api_key:
            credentials["openrouter"] = self.openrouter_api_key
        if self.gemini_api_key:
            credentials["gemini"] = self.gemini_api_key
        return credentials


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    config_path: Optional[str] = None,
) -> Settings:
    """Build settings from the environment and an optional tuning file.

    Args:
        env: Environment mapping; ``os.environ`` after loading ``.env`` when None
        config_path: YAML tuning file; falls back to ``TRIAGE_GUARD_CONFIG``

    Returns:
        Validated Settings

    Raises:
        FileNotFoundError: If the tuning file doesn't exist
        ValueError: If any value is invalid
    """
    if env is None:
        load_dotenv(override=False)
        env = os.environ

    tuning_path = config_path or _clean(env.get("TRIAGE_GUARD_CONFIG"))
    tuning = load_tuning_config(tuning_path) if tuning_path else TuningConfig()

    return Settings(
        openrouter_api_key=_clean(env.get("OPENROUTER_API_KEY")),
        gemini_api_key=_clean(env.get("GEMINI_API_KEY")),
        openrouter_data_policy=_clean(env.get("OPENROUTER_DATA_POLICY")),
        webhook_secret=_clean(env.get("STRIPE_WEBHOOK_SECRET")),
        currency=(_clean(env.get("TRIAGE_GUARD_CURRENCY")) or "usd").lower(),
        ledger_disabled=parse_bool(env.get("TRIAGE_GUARD_LEDGER_DISABLED"), "TRIAGE_GUARD_LEDGER_DISABLED"),
        db_path=_clean(env.get("TRIAGE_GUARD_DB_PATH")) or DEFAULT_DB_PATH,
        log_level=(_clean(env.get("TRIAGE_GUARD_LOG_LEVEL")) or "INFO").upper(),
        tuning=tuning,
    )


def load_tuning_config(path: str) -> TuningConfig:
    """Load and validate the YAML tuning file.

    Unknown keys are rejected so a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated TuningConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Tuning config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return TuningConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Tuning config must be a mapping")

    allowed_keys = set(TuningConfig.__dataclass_fields__)
    unknown_keys = set(raw_config.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key in ('max_attempts', 'run_history_limit'):
        if key in raw_config:
            values[key] = _parse_int(raw_config[key], key)
    for key in ('rate_limit_backoff_seconds', 'provider_timeout_seconds'):
        if key in raw_config:
            values[key] = _parse_float(raw_config[key], key)
    for key in ('estimate_buffer_multiplier', 'credit_conversion_rate'):
        if key in raw_config:
            values[key] = _parse_decimal(raw_config[key], key)

    return TuningConfig(**values)


def parse_bool(value: Optional[str], name: str = "value") -> bool:
    if value is None:
        return False
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got: {value!r}")


def configure_logging(level: str = "INFO") -> None:
    """Route standard-library logging to stderr at ``level``."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer")
    return value


def _parse_float(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    return float(value)


def _parse_decimal(value: Any, key: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' must be a number")
