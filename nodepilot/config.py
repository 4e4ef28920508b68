from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Config(BaseSettings):
    """Application configuration with validation."""

    # --- Probing ---
    NODE_TEST_TIMEOUT: float = Field(default=5.0, gt=0)
    PROBE_CACHE_TTL: float = Field(default=60.0, gt=0)
    PROBE_SAMPLE_BYTES: int = Field(default=64 * 1024, gt=0)
    TCP_PROBE_ENABLED: bool = Field(default=True)
    PREHEAT_NODE_COUNT: int = Field(default=10, ge=0)

    # --- Cache ---
    LRU_CACHE_MAX_SIZE: int = Field(default=1000, ge=1)
    LRU_CACHE_TTL: float = Field(default=3600.0, gt=0)
    CACHE_CLEANUP_THRESHOLD: float = Field(default=0.1, ge=0.0, le=1.0)
    CACHE_CLEANUP_BATCH_SIZE: int = Field(default=50, ge=1)
    STORAGE_KEY: str = Field(default="nodepilot_central_data", min_length=1)
    STORAGE_FILE: Path = Field(default=Path("output") / "storage.json")

    # --- Concurrency & Retry ---
    CONCURRENCY_LIMIT: int = Field(default=3, ge=1, le=50)
    MAX_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    RETRY_DELAY_BASE: float = Field(default=0.2, ge=0.0, le=5.0)
    MAX_RETRY_BACKOFF: float = Field(default=5.0, gt=0)

    # --- Scoring ---
    QUALITY_WEIGHT: float = Field(default=0.5, ge=0.0)
    METRIC_WEIGHT: float = Field(default=0.35, ge=0.0)
    SUCCESS_WEIGHT: float = Field(default=0.15, ge=0.0)
    QUALITY_SCORE_THRESHOLD: int = Field(default=30, ge=0, le=100)
    AVAILABILITY_MIN_RATE: float = Field(default=0.75, ge=0.0, le=1.0)
    AVAILABILITY_PENALTY: float = Field(default=30.0, ge=0.0)
    AVAILABILITY_EMERGENCY_FAILS: int = Field(default=2, ge=1)
    MAX_HISTORY_RECORDS: int = Field(default=100, ge=1)
    FEATURE_WINDOW_SIZE: int = Field(default=50, ge=1)
    INITIAL_QUALITY: int = Field(default=50, ge=0, le=100)

    # --- Switch Cooldown (seconds) ---
    BASE_SWITCH_COOLDOWN: float = Field(default=30 * 60.0, gt=0)
    MIN_SWITCH_COOLDOWN: float = Field(default=5 * 60.0, gt=0)
    MAX_SWITCH_COOLDOWN: float = Field(default=120 * 60.0, gt=0)

    # --- Geo ---
    GEO_EXTERNAL_LOOKUP: bool = Field(default=True)
    GEO_INFO_TIMEOUT: float = Field(default=3.0, gt=0)
    GEO_CACHE_TTL: float = Field(default=30 * 60.0, gt=0)
    GEO_FALLBACK_TTL: float = Field(default=60 * 60.0, gt=0)
    GEO_PRIMARY_URL: str = Field(default="https://ipapi.co/{ip}/json/")
    GEO_FALLBACK_URL: str = Field(default="https://ipinfo.io/{ip}/json")

    # --- Mirrors ---
    GH_MIRRORS: List[str] = Field(
        default=[
            "https://mirror.ghproxy.com/",
            "https://github.moeyy.xyz/",
            "https://ghproxy.com/",
            "",
        ]
    )
    GH_TEST_TARGETS: List[str] = Field(
        default=[
            "https://raw.githubusercontent.com/github/gitignore/main/Node.gitignore",
            "https://raw.githubusercontent.com/MetaCubeX/meta-rules-dat/main/README.md",
            "https://raw.githubusercontent.com/cli/cli/trunk/README.md",
        ]
    )
    ACCELERATED_HOSTS: List[str] = Field(
        default=["https://raw.githubusercontent.com/", "https://github.com/"]
    )
    MIRROR_PROBE_TTL: float = Field(default=10 * 60.0, gt=0)

    # --- Process ---
    NODES_FILE: Path = Field(default=Path("nodes.txt"))
    SUBSCRIPTION_SOURCES: List[str] = Field(default=[])
    RUN_INTERVAL_MINUTES: int = Field(default=180, ge=0)
    HEALTH_CHECK_PORT: int = Field(default=8080, gt=0, lt=65536)
    LOG_LEVEL: str = Field(default="INFO")
    DEBUG: bool = Field(default=False)
    OUTPUT_DIR: Path = Field(default=Path("output"))
    USER_AGENT: str = Field(
        default="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("GH_TEST_TARGETS", "ACCELERATED_HOSTS", "SUBSCRIPTION_SOURCES")
    @classmethod
    def validate_urls(cls, v: List[str]) -> List[str]:
        """Validate that URLs are properly formatted."""
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"URL must start with http:// or https://: {url!r}")
        return v

    @field_validator("GH_MIRRORS")
    @classmethod
    def validate_mirrors(cls, v: List[str]) -> List[str]:
        """Mirror prefixes are URLs or the empty direct prefix."""
        if not v:
            raise ValueError("GH_MIRRORS must contain at least one entry")
        for prefix in v:
            if prefix and not prefix.startswith(("http://", "https://")):
                raise ValueError(f"Mirror prefix must be empty or an http(s) URL: {prefix!r}")
        return v

    @model_validator(mode="after")
    def validate_cooldown_and_weights(self) -> "Config":
        if not (
            self.MIN_SWITCH_COOLDOWN <= self.BASE_SWITCH_COOLDOWN <= self.MAX_SWITCH_COOLDOWN
        ):
            raise ValueError(
                "Cooldown bounds must satisfy MIN_SWITCH_COOLDOWN <= "
                "BASE_SWITCH_COOLDOWN <= MAX_SWITCH_COOLDOWN"
            )
        if self.QUALITY_WEIGHT + self.METRIC_WEIGHT + self.SUCCESS_WEIGHT <= 0:
            raise ValueError("Scoring weights must sum to a positive value")
        return self

    @property
    def OUTPUT_REPORT_PATH(self) -> Path:
        return self.OUTPUT_DIR / "report.md"


def load_config(**overrides) -> Config:
    """Build a validated `Config`, turning validation failures into `ConfigurationError`."""
    try:
        return Config(**overrides)
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ConfigurationError(str(e)) from e
