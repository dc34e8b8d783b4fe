"""
Module: arbiter/config.py
Description: Configuration for the dispute engine

Settings are read once from the environment (or a .env file) through
pydantic-settings. Escalation rules are derived from them into a frozen
object; a reload builds a new rules object instead of mutating the old one.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class ArbiterConfig(BaseSettings):
    """Process-wide settings for the arbiter service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ARBITER_",
        case_sensitive=True,
        extra="ignore",
    )

    # Escalation rules (percentages and hours)
    AUTO_RESOLVE_THRESHOLD: float = 90.0
    COMMUNITY_VOTE_THRESHOLD: float = 70.0
    VOTING_DURATION_HOURS: float = 72.0  # 3 days
    QUORUM_PERCENT: float = 25.0
    ESCALATION_TIMEOUT_HOURS: float = 168.0  # 7 days
    APPEAL_WINDOW_HOURS: float = 48.0  # 2 days

    # Background sweep
    SWEEP_INTERVAL_SECONDS: float = 60.0

    # Decision delivery to escrow
    DELIVERY_MAX_ATTEMPTS: int = 5
    DELIVERY_BASE_DELAY_SECONDS: float = 1.0
    DELIVERY_MAX_DELAY_SECONDS: float = 60.0
    ESCROW_URL: str = Field(default="http://localhost:8100")
    ESCROW_TIMEOUT_SECONDS: float = 5.0

    # Storage
    STORE_BACKEND: str = Field(default="memory")  # "memory" or "redis"
    REDIS_URL: str = Field(default="redis://localhost:6379")

    # Network
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)
    LOG_LEVEL: str = Field(default="INFO")


@dataclass(frozen=True)
class EscalationRules:
    """Immutable escalation rules shared by every dispute."""
    auto_resolve_threshold: float = 90.0
    community_vote_threshold: float = 70.0
    voting_duration: timedelta = timedelta(hours=72)
    quorum_percent: float = 25.0
    escalation_timeout: timedelta = timedelta(hours=168)
    appeal_window: timedelta = timedelta(hours=48)

    def __post_init__(self):
        for name in ("auto_resolve_threshold", "community_vote_threshold", "quorum_percent"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ConfigurationError(f"{name} must be within [0, 100], got {value}")

        if self.community_vote_threshold > self.auto_resolve_threshold:
            raise ConfigurationError(
                "community_vote_threshold cannot exceed auto_resolve_threshold"
            )

        for name in ("voting_duration", "escalation_timeout"):
            if getattr(self, name) <= timedelta(0):
                raise ConfigurationError(f"{name} must be positive")

        if self.appeal_window < timedelta(0):
            raise ConfigurationError("appeal_window cannot be negative")

    @classmethod
    def from_config(cls, config: ArbiterConfig) -> "EscalationRules":
        """Build rules from loaded settings."""
        return cls(
            auto_resolve_threshold=config.AUTO_RESOLVE_THRESHOLD,
            community_vote_threshold=config.COMMUNITY_VOTE_THRESHOLD,
            voting_duration=timedelta(hours=config.VOTING_DURATION_HOURS),
            quorum_percent=config.QUORUM_PERCENT,
            escalation_timeout=timedelta(hours=config.ESCALATION_TIMEOUT_HOURS),
            appeal_window=timedelta(hours=config.APPEAL_WINDOW_HOURS),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auto_resolve_threshold": self.auto_resolve_threshold,
            "community_vote_threshold": self.community_vote_threshold,
            "voting_duration_hours": self.voting_duration.total_seconds() / 3600,
            "quorum_percent": self.quorum_percent,
            "escalation_timeout_hours": self.escalation_timeout.total_seconds() / 3600,
            "appeal_window_hours": self.appeal_window.total_seconds() / 3600,
        }


DEFAULT_ESCALATION_RULES = EscalationRules()


@lru_cache(maxsize=1)
def get_config() -> ArbiterConfig:
    """Load settings once per process."""
    config = ArbiterConfig()
    logger.info(
        f"Configuration loaded: store={config.STORE_BACKEND}, "
        f"sweep_interval={config.SWEEP_INTERVAL_SECONDS}s"
    )
    return config


def load_rules(config: Optional[ArbiterConfig] = None) -> EscalationRules:
    """Build a fresh rules object from settings."""
    return EscalationRules.from_config(config or get_config())
