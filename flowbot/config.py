"""
Centralized configuration with environment variable overrides.

Session timing, language detection, payment link and scheduling settings
are all configurable here. Nothing is hardcoded in the flow logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "es")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_bool(env_var: str, default: str) -> bool:
    raw = os.getenv(env_var, default)
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _safe_hours(env_var: str, default: str) -> tuple[int, ...]:
    """Parse a comma separated list of hours of the day."""
    raw = os.getenv(env_var, default)
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid hour list for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class BotConfig:
    """Assistant identity and session lifetime."""

    name: str = os.getenv("BOT_NAME", "FlowBot")
    default_language: str = os.getenv("DEFAULT_LANGUAGE", "en")
    session_timeout_minutes: int = _safe_int("SESSION_TIMEOUT_MINUTES", "30")
    max_input_length: int = _safe_int("MAX_INPUT_LENGTH", "1000")


@dataclass(frozen=True)
class LanguageConfig:
    """Language detection settings, including the optional LLM fallback."""

    llm_fallback_enabled: bool = _safe_bool("LANGUAGE_LLM_FALLBACK", "false")
    llm_model: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    llm_temperature: float = _safe_float("LLM_TEMPERATURE", "0.0")
    llm_min_length: int = _safe_int("LANGUAGE_LLM_MIN_LENGTH", "20")


@dataclass(frozen=True)
class PaymentConfig:
    """Payment link issuance and history pagination."""

    root_domain: str = os.getenv("PAYMENT_ROOT_DOMAIN", "flowcast.chat")
    link_route_prefix: str = os.getenv("PAYMENT_LINK_ROUTE_PREFIX", "/pay")
    token_length: int = _safe_int("PAYMENT_TOKEN_LENGTH", "24")
    history_page_size: int = _safe_int("PAYMENT_HISTORY_PAGE_SIZE", "5")


@dataclass(frozen=True)
class SchedulingConfig:
    """Appointment slot generation and session persistence location."""

    slot_hours: tuple[int, ...] = _safe_hours("SLOT_HOURS", "9,10,11,14,15,16")
    max_slots_shown: int = _safe_int("MAX_SLOTS_SHOWN", "6")
    metadata_store_path: str = os.getenv("METADATA_STORE_PATH", "")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    bot: BotConfig = field(default_factory=BotConfig)
    language: LanguageConfig = field(default_factory=LanguageConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if config.bot.default_language not in SUPPORTED_LANGUAGES:
        raise ValueError(
            f"DEFAULT_LANGUAGE must be one of {SUPPORTED_LANGUAGES}, "
            f"got {config.bot.default_language!r}"
        )
    if config.bot.session_timeout_minutes < 1:
        raise ValueError(
            f"SESSION_TIMEOUT_MINUTES must be >= 1, got {config.bot.session_timeout_minutes}"
        )
    if config.bot.max_input_length < 1:
        raise ValueError(
            f"MAX_INPUT_LENGTH must be >= 1, got {config.bot.max_input_length}"
        )
    if not 0.0 <= config.language.llm_temperature <= 2.0:
        raise ValueError(
            f"LLM_TEMPERATURE must be between 0.0 and 2.0, got {config.language.llm_temperature}"
        )
    if config.language.llm_min_length < 1:
        raise ValueError(
            f"LANGUAGE_LLM_MIN_LENGTH must be >= 1, got {config.language.llm_min_length}"
        )
    if config.payments.token_length < 16:
        raise ValueError(
            f"PAYMENT_TOKEN_LENGTH must be >= 16, got {config.payments.token_length}"
        )
    if config.payments.history_page_size < 1:
        raise ValueError(
            "PAYMENT_HISTORY_PAGE_SIZE must be >= 1, "
            f"got {config.payments.history_page_size}"
        )
    if not config.payments.root_domain or "://" in config.payments.root_domain:
        raise ValueError(
            "PAYMENT_ROOT_DOMAIN must be a bare domain without scheme, "
            f"got {config.payments.root_domain!r}"
        )
    if not config.payments.link_route_prefix.startswith("/"):
        raise ValueError(
            "PAYMENT_LINK_ROUTE_PREFIX must start with '/', "
            f"got {config.payments.link_route_prefix!r}"
        )
    if not config.scheduling.slot_hours:
        raise ValueError("SLOT_HOURS must list at least one hour")
    for hour in config.scheduling.slot_hours:
        if not 0 <= hour <= 23:
            raise ValueError(f"SLOT_HOURS entries must be between 0 and 23, got {hour}")
    if config.scheduling.max_slots_shown < 1:
        raise ValueError(
            f"MAX_SLOTS_SHOWN must be >= 1, got {config.scheduling.max_slots_shown}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.bot.name)
    return config


# Singleton instance
settings = load_config()
