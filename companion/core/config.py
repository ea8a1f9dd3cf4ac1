"""Application settings for the companion insights backend."""
from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class WindowConfig:
    """Context window sizes.

    ``short_term``, ``medium_term`` and ``long_term`` count turn pairs
    (user + assistant); ``summarization_threshold`` is compared to the raw
    number of stored turns.
    """

    short_term: int = 5
    medium_term: int = 10
    long_term: int = 20
    summarization_threshold: int = 15

    def __post_init__(self) -> None:
        for name in ("short_term", "medium_term", "long_term", "summarization_threshold"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not self.short_term <= self.medium_term <= self.long_term:
            raise ValueError("window sizes must satisfy short_term <= medium_term <= long_term")

    def tier_count(self, tier: str) -> int:
        try:
            return {"short": self.short_term, "medium": self.medium_term, "long": self.long_term}[tier]
        except KeyError:
            raise ValueError(f"unknown tier {tier!r}; expected short, medium or long") from None

    @property
    def max_turns(self) -> int:
        return self.long_term * 2


@dataclass(frozen=True)
class Settings:
    app_name: str = "Companion Insights API"
    allow_origins: tuple[str, ...] = ("*",)  # demo; lock down in production
    window: WindowConfig = field(default_factory=WindowConfig)
    summary_timeout: float = 5.0
    model_call_cost: float = 0.002
    moderation_buffer: int = 1000
    feedback_buffer: int = 5000
    event_log_limit: int = 500


def load_settings() -> Settings:
    origins = tuple(o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip())
    return Settings(
        app_name=os.getenv("APP_NAME", Settings.app_name),
        allow_origins=origins or ("*",),
        window=WindowConfig(
            short_term=_env_int("SHORT_TERM_PAIRS", 5),
            medium_term=_env_int("MEDIUM_TERM_PAIRS", 10),
            long_term=_env_int("LONG_TERM_PAIRS", 20),
            summarization_threshold=_env_int("SUMMARIZATION_THRESHOLD", 15),
        ),
        summary_timeout=_env_float("SUMMARY_TIMEOUT_SECONDS", 5.0),
        model_call_cost=_env_float("MODEL_CALL_COST", 0.002),
        moderation_buffer=_env_int("MODERATION_BUFFER", 1000),
        feedback_buffer=_env_int("FEEDBACK_BUFFER", 5000),
        event_log_limit=_env_int("EVENT_LOG_LIMIT", 500),
    )


settings = load_settings()
