"""
Swapmatch — Application Configuration

Loads all configuration from environment variables (and an optional .env file)
using Pydantic Settings.  A cached ``get_settings()`` helper is provided so that
FastAPI dependency-injection (and any other call-site) always receives the same
validated instance without re-parsing the environment on every request.

Engine tunables (scoring weights, TTLs, search bounds) are additionally frozen
into an ``EngineConfig`` that is passed explicitly into every engine run, so a
discovery pass is reproducible from (graph snapshot, EngineConfig) alone.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Swapmatch service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Database – Cloud SQL via Unix socket or plain URL
    # ------------------------------------------------------------------ #
    DATABASE_URL: str
    DB_USER: str = "swapmatch_user"
    DB_PASSWORD: str = ""
    DB_NAME: str = "swapmatch"
    CLOUD_SQL_INSTANCE_CONNECTION: str = ""
    CLOUD_SQL_USE_UNIX_SOCKET: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_STATEMENT_TIMEOUT_MS: int = 15000

    # ------------------------------------------------------------------ #
    # Redis – event channel for match / opportunity notifications
    # ------------------------------------------------------------------ #
    REDIS_URL: str
    EVENT_CHANNEL: str = "swapmatch:events"

    # ------------------------------------------------------------------ #
    # Runtime environment
    # ------------------------------------------------------------------ #
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    ALLOWED_ORIGINS: str = "*"

    # ------------------------------------------------------------------ #
    # Confidence scoring weights
    # ------------------------------------------------------------------ #
    CATEGORY_WEIGHT: float = 0.35
    VALUE_WEIGHT: float = 0.20
    CONDITION_WEIGHT: float = 0.15
    GEO_WEIGHT: float = 0.15
    RECENCY_WEIGHT: float = 0.15
    LEARNED_AFFINITY_WEIGHT: float = 0.10

    CATEGORY_FALLBACK_SCALE: float = 0.8
    RECENCY_HALF_LIFE_DAYS: float = 14.0

    # ------------------------------------------------------------------ #
    # Candidate pre-filter and search bounds
    # ------------------------------------------------------------------ #
    TOP_K_EDGES: int = 20
    MAX_ACTIVE_LISTINGS_PER_USER: int = 50
    VALUE_TOLERANCE: float = 0.25
    GEO_RADIUS_KM: float = 50.0
    MIN_CONFIDENCE: float = 0.3
    TWO_WAY_OPPORTUNITIES_ENABLED: bool = True

    # ------------------------------------------------------------------ #
    # Opportunity lifecycle
    # ------------------------------------------------------------------ #
    OPPORTUNITY_TTL_HOURS: float = 168.0       # 7 days
    DISMISSAL_COOLDOWN_HOURS: float = 24.0
    OPPORTUNITY_LIST_LIMIT: int = 20

    # ------------------------------------------------------------------ #
    # Batch discovery
    # ------------------------------------------------------------------ #
    DISCOVERY_PARTITIONS: int = 4
    DISCOVERY_PARALLELISM: int = 2
    DISCOVERY_TIME_BUDGET_SECONDS: float = 120.0
    DISCOVERY_INTERVAL_SECONDS: float = 300.0
    DISCOVERY_SCHEDULER_ENABLED: bool = True
    WRITE_RETRY_ATTEMPTS: int = 3
    WRITE_RETRY_BASE_SECONDS: float = 0.5
    SNAPSHOT_RETRY_ATTEMPTS: int = 3

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #
    @property
    def allowed_origins_list(self) -> list[str]:
        """Return ALLOWED_ORIGINS as a list split on commas."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @field_validator(
        "CATEGORY_WEIGHT",
        "VALUE_WEIGHT",
        "CONDITION_WEIGHT",
        "GEO_WEIGHT",
        "RECENCY_WEIGHT",
        "LEARNED_AFFINITY_WEIGHT",
    )
    @classmethod
    def _weight_must_be_positive(cls, v: float) -> float:
        # A zero weight would make the score flat in that factor.
        if not 0.0 < v <= 1.0:
            raise ValueError(f"Weight must be in (0, 1], got {v}")
        return v


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached, validated ``Settings`` instance.

    Using ``@lru_cache`` guarantees the .env file is read and validated
    exactly once per process lifetime.  Import this function anywhere you
    need access to configuration::

        from app.config import get_settings
        settings = get_settings()
    """
    return Settings()  # type: ignore[call-arg]


# ---------------------------------------------------------------------- #
# Engine configuration (explicit, immutable, passed into each run)
# ---------------------------------------------------------------------- #

class ScoringWeights(BaseModel):
    """Weights of the six confidence sub-scores."""

    model_config = ConfigDict(frozen=True)

    category: float = Field(0.35, gt=0.0, le=1.0)
    value: float = Field(0.20, gt=0.0, le=1.0)
    condition: float = Field(0.15, gt=0.0, le=1.0)
    geo: float = Field(0.15, gt=0.0, le=1.0)
    recency: float = Field(0.15, gt=0.0, le=1.0)
    learned: float = Field(0.10, gt=0.0, le=1.0)

    @property
    def total(self) -> float:
        return self.category + self.value + self.condition + self.geo + self.recency + self.learned


class EngineConfig(BaseModel):
    """Frozen snapshot of every tunable the matching engine reads."""

    model_config = ConfigDict(frozen=True)

    weights: ScoringWeights = ScoringWeights()
    category_fallback_scale: float = Field(0.8, ge=0.0, lt=1.0)
    recency_half_life_days: float = Field(14.0, gt=0.0)

    top_k_edges: int = Field(20, ge=1)
    max_active_listings_per_user: int = Field(50, ge=1)
    value_tolerance: float = Field(0.25, ge=0.0)
    geo_radius_km: float = Field(50.0, gt=0.0)
    min_confidence: float = Field(0.3, ge=0.0, le=1.0)
    two_way_enabled: bool = True

    opportunity_ttl_hours: float = Field(168.0, gt=0.0)
    dismissal_cooldown_hours: float = Field(24.0, ge=0.0)
    list_limit: int = Field(20, ge=1)

    partitions: int = Field(4, ge=1)
    parallelism: int = Field(2, ge=1)
    time_budget_seconds: float = Field(120.0, gt=0.0)
    write_retry_attempts: int = Field(3, ge=1)
    write_retry_base_seconds: float = Field(0.5, ge=0.0)
    snapshot_retry_attempts: int = Field(3, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            weights=ScoringWeights(
                category=settings.CATEGORY_WEIGHT,
                value=settings.VALUE_WEIGHT,
                condition=settings.CONDITION_WEIGHT,
                geo=settings.GEO_WEIGHT,
                recency=settings.RECENCY_WEIGHT,
                learned=settings.LEARNED_AFFINITY_WEIGHT,
            ),
            category_fallback_scale=settings.CATEGORY_FALLBACK_SCALE,
            recency_half_life_days=settings.RECENCY_HALF_LIFE_DAYS,
            top_k_edges=settings.TOP_K_EDGES,
            max_active_listings_per_user=settings.MAX_ACTIVE_LISTINGS_PER_USER,
            value_tolerance=settings.VALUE_TOLERANCE,
            geo_radius_km=settings.GEO_RADIUS_KM,
            min_confidence=settings.MIN_CONFIDENCE,
            two_way_enabled=settings.TWO_WAY_OPPORTUNITIES_ENABLED,
            opportunity_ttl_hours=settings.OPPORTUNITY_TTL_HOURS,
            dismissal_cooldown_hours=settings.DISMISSAL_COOLDOWN_HOURS,
            list_limit=settings.OPPORTUNITY_LIST_LIMIT,
            partitions=settings.DISCOVERY_PARTITIONS,
            parallelism=settings.DISCOVERY_PARALLELISM,
            time_budget_seconds=settings.DISCOVERY_TIME_BUDGET_SECONDS,
            write_retry_attempts=settings.WRITE_RETRY_ATTEMPTS,
            write_retry_base_seconds=settings.WRITE_RETRY_BASE_SECONDS,
            snapshot_retry_attempts=settings.SNAPSHOT_RETRY_ATTEMPTS,
        )


def get_engine_config() -> EngineConfig:
    """Build the engine config from the current settings."""
    return EngineConfig.from_settings(get_settings())
