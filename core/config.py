"""Runtime configuration.

Values come from environment variables (see `from_env`). Secrets such as the
legacy wallet key, bot token and database URL must never be logged.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Optional

from core.types import Chain


class ConfigError(ValueError):
    """Raised when configuration is missing or malformed."""


_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

PBKDF2_ITERATIONS_DEFAULT = 310_000

DEFAULT_TRANSFER_LIMITS: Mapping[Chain, Decimal] = {
    Chain.SOLANA: Decimal("1.0"),
    Chain.BASE: Decimal("0.1"),
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc


@dataclass(frozen=True)
class CustodyConfig:
    """Key custody settings."""

    legacy_key_hex: Optional[str] = None  # WALLET_ENCRYPTION_KEY, decrypt-only
    min_password_length: int = 6
    max_failed_attempts: int = 5
    lockout_minutes: int = 15
    login_attempt_retention_hours: int = 24
    pbkdf2_iterations: int = PBKDF2_ITERATIONS_DEFAULT
    session_timeout_seconds: int = 30 * 60
    max_sessions: int = 10_000
    session_cleanup_interval_seconds: int = 60
    default_transfer_limits: Mapping[Chain, Decimal] = field(
        default_factory=lambda: dict(DEFAULT_TRANSFER_LIMITS)
    )

    @classmethod
    def from_env(cls) -> CustodyConfig:
        return cls(
            legacy_key_hex=os.environ.get("WALLET_ENCRYPTION_KEY") or None,
            pbkdf2_iterations=_env_int("PBKDF2_ITERATIONS", PBKDF2_ITERATIONS_DEFAULT),
            session_timeout_seconds=_env_int("SESSION_TIMEOUT_SECONDS", 30 * 60),
        )

    def validate(self) -> None:
        if self.legacy_key_hex is not None and not _HEX_KEY_RE.match(self.legacy_key_hex):
            raise ConfigError("WALLET_ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        if self.pbkdf2_iterations < 1:
            raise ConfigError("PBKDF2_ITERATIONS must be positive")
        if self.session_timeout_seconds <= 0:
            raise ConfigError("SESSION_TIMEOUT_SECONDS must be positive")


@dataclass(frozen=True)
class SchedulerConfig:
    """Trigger scheduler polling and timeout settings (seconds)."""

    poll_interval_seconds: float = 12.0
    jitter_seconds: float = 3.0
    price_request_delay_seconds: float = 0.2
    price_timeout_seconds: float = 10.0
    execution_timeout_seconds: float = 120.0
    notification_timeout_seconds: float = 10.0

    # Stop after N cycles (None = run forever)
    max_iterations: Optional[int] = None

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            poll_interval_seconds=_env_float("TRIGGER_POLL_INTERVAL_SECONDS", 12.0),
            jitter_seconds=_env_float("TRIGGER_POLL_JITTER_SECONDS", 3.0),
            execution_timeout_seconds=_env_float("TRIGGER_EXECUTION_TIMEOUT_SECONDS", 120.0),
        )


@dataclass(frozen=True)
class AppConfig:
    """Top-level process configuration."""

    database_url: str = "sqlite:///./data/custody.db"
    telegram_bot_token: Optional[str] = None
    dexscreener_base_url: str = "https://api.dexscreener.com"
    custody: CustodyConfig = field(default_factory=CustodyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        return cls(
            database_url=os.environ.get("DATABASE_URL") or "sqlite:///./data/custody.db",
            telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN") or None,
            dexscreener_base_url=os.environ.get("DEXSCREENER_API_URL") or "https://api.dexscreener.com",
            custody=CustodyConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
        )

    def validate(self) -> None:
        self.custody.validate()
