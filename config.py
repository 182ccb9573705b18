# config.py
"""Configuration settings for the Folio book generation system.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os
from typing import Any

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()


class FolioSettings(BaseSettings):
    """Full configuration for the Folio system."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"

    # Base Model Definitions
    LARGE_MODEL: str = "gpt-4o"
    MEDIUM_MODEL: str = "gpt-4o-mini"

    # Dynamic Model Assignments (set from base models if not specified in env)
    PLANNING_MODEL: str | None = None
    DRAFTING_MODEL: str | None = None
    CONTINUITY_MODEL: str | None = None
    SUPERVISION_MODEL: str | None = None
    POLISH_MODEL: str | None = None

    # Temperature Settings
    TEMPERATURE_PLANNING: float = 0.7
    TEMPERATURE_DRAFTING: float = 0.8
    TEMPERATURE_CONTINUITY: float = 0.2
    TEMPERATURE_SUPERVISION: float = 0.3
    TEMPERATURE_POLISH: float = 0.4
    TEMPERATURE_DEFAULT: float = 0.6

    # Token limits per call
    MAX_GENERATION_TOKENS: int = 4096
    MAX_CONTINUITY_TOKENS: int = 2000
    MAX_PLANNING_TOKENS: int = 8192
    CONTINUITY_MAX_CONTENT_CHARS: int = 12000

    # LLM Call Settings
    LLM_RETRY_ATTEMPTS: int = 3
    LLM_RETRY_DELAY_SECONDS: float = 3.0
    LLM_RETRY_MAX_DELAY_SECONDS: float = 60.0
    HTTPX_TIMEOUT: float = 600.0
    UNIT_GENERATION_TIMEOUT: float = 300.0
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10
    LLM_TOP_P: float = 0.9

    # Concurrency and Rate Limiting
    MAX_CONCURRENT_LLM_CALLS: int = 4
    MAX_CONCURRENT_UNITS: int = 3
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_POLL_INTERVAL: float = 1.0
    RATE_LIMIT_REQUEST_BUFFER_TOKENS: int = 100
    RATE_LIMITS: dict[str, dict[str, int]] = {
        "gpt-4o": {"requests_per_window": 60, "tokens_per_window": 30000},
        "gpt-4o-mini": {"requests_per_window": 100, "tokens_per_window": 60000},
        "gpt-3.5-turbo": {"requests_per_window": 120, "tokens_per_window": 90000},
    }
    DEFAULT_RATE_LIMIT: dict[str, int] | None = None
    # USD per 1K tokens
    MODEL_PRICING: dict[str, dict[str, float]] = {
        "gpt-4o": {"input": 0.005, "output": 0.015},
        "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
        "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    }

    # Chapter and Unit Sizing
    IDEAL_UNIT_WORDS: int = 1000
    MIN_UNIT_WORDS: int = 800
    MAX_UNIT_WORDS: int = 1200
    MIN_UNITS_PER_CHAPTER: int = 1
    MAX_UNITS_PER_CHAPTER: int = 5
    OPENING_CHAPTER_MULTIPLIER: float = 1.10
    CLIMAX_CHAPTER_MULTIPLIER: float = 1.15
    FINAL_CHAPTER_MULTIPLIER: float = 1.05

    # Quality Gate
    LOW_QUALITY_THRESHOLD: float = 60.0
    POLISH_THRESHOLD: float = 80.0
    SUPERVISION_FALLBACK_SCORE: float = 85.0
    ENABLE_POLISH: bool = True

    # Continuity
    CONTINUITY_PARSING_RETRIES: int = 3
    CONTINUITY_LENGTH_NORMALIZATION_CHARS: int = 5000
    CONTINUITY_TIMELINE_WINDOW: int = 5
    CONTINUITY_WORLD_WINDOW: int = 10
    # Categories whose malformed output fails the whole unit check.
    # "extraction" marks the tracker-update step as critical as well.
    CRITICAL_CONTINUITY_CATEGORIES: set[str] = Field(
        default_factory=lambda: {"character"}
    )

    # Failed-Unit Queue
    MAX_UNIT_RETRIES: int = 3
    FAILED_QUEUE_RETRY_BASE_DELAY: float = 2.0

    # Output and File Paths
    BASE_OUTPUT_DIR: str = "folio_output"
    CHECKPOINT_DIR: str = "checkpoints"
    BOOKS_DIR: str = "books"
    CHECKPOINT_MAX_AGE_DAYS: int = 30

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="FOLIO_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "folio_run.log"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def set_dynamic_model_defaults(self) -> FolioSettings:
        if self.PLANNING_MODEL is None:
            self.PLANNING_MODEL = self.LARGE_MODEL
        if self.DRAFTING_MODEL is None:
            self.DRAFTING_MODEL = self.LARGE_MODEL
        if self.CONTINUITY_MODEL is None:
            self.CONTINUITY_MODEL = self.MEDIUM_MODEL
        if self.SUPERVISION_MODEL is None:
            self.SUPERVISION_MODEL = self.MEDIUM_MODEL
        if self.POLISH_MODEL is None:
            self.POLISH_MODEL = self.MEDIUM_MODEL
        return self

    @model_validator(mode="after")
    def check_thresholds(self) -> FolioSettings:
        if self.LOW_QUALITY_THRESHOLD > self.POLISH_THRESHOLD:
            raise ValueError(
                "LOW_QUALITY_THRESHOLD must not exceed POLISH_THRESHOLD"
            )
        if self.MIN_UNITS_PER_CHAPTER < 1:
            raise ValueError("MIN_UNITS_PER_CHAPTER must be at least 1")
        if self.MIN_UNITS_PER_CHAPTER > self.MAX_UNITS_PER_CHAPTER:
            raise ValueError(
                "MIN_UNITS_PER_CHAPTER must not exceed MAX_UNITS_PER_CHAPTER"
            )
        if not self.MIN_UNIT_WORDS <= self.IDEAL_UNIT_WORDS <= self.MAX_UNIT_WORDS:
            raise ValueError(
                "IDEAL_UNIT_WORDS must lie within [MIN_UNIT_WORDS, MAX_UNIT_WORDS]"
            )
        if self.OPENAI_API_KEY == "nope":
            logger.warning(
                "OPENAI_API_KEY is unset. Generation calls will be rejected by real providers."
            )
        return self

    def rate_limit_for(self, model_class: str) -> dict[str, Any] | None:
        """Return the configured budget for ``model_class`` if any."""
        return self.RATE_LIMITS.get(model_class, self.DEFAULT_RATE_LIMIT)

    model_config = SettingsConfigDict(env_prefix="", env_file=".env")


settings = FolioSettings()


CHECKPOINT_DIR = os.path.join(settings.BASE_OUTPUT_DIR, settings.CHECKPOINT_DIR)
BOOKS_DIR = os.path.join(settings.BASE_OUTPUT_DIR, settings.BOOKS_DIR)
