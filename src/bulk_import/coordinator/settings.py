"""
Environment-driven runtime settings for the import pipeline.

Every field can be set through ``BULK_IMPORT_<FIELD>`` environment variables
or a ``.env`` file, e.g. ``BULK_IMPORT_MAX_CONCURRENT_BATCHES=8``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..errors import FatalConfiguration


class ImportRuntimeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BULK_IMPORT_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # planner
    batch_size: int = Field(100, gt=0)
    max_batch_count: int = Field(100, gt=0)
    max_batch_bytes: int = Field(2_000_000, gt=0)
    min_batch_size_for_merge: int = Field(25, ge=0)
    merge_across_batches: bool = False

    # executor
    max_concurrent_batches: int = Field(4, gt=0)
    max_in_flight: Optional[int] = Field(None, gt=0)
    min_time_between_batches_ms: int = Field(50, ge=0)
    max_attempts: int = Field(6, gt=0)
    smaller_batch_size: int = Field(25, gt=0)
    shrink_after_attempt: int = Field(3, ge=0)
    requeue_on_shrink: bool = True
    initial_backoff_ms: int = Field(2000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_ms: int = Field(600_000, ge=0)
    default_document_cost: float = Field(10.0, ge=0)
    distribute_partition_keys: bool = False
    progress_every: int = Field(10, gt=0)
    dlq_path: Optional[str] = None

    # governor
    ru_capacity: Optional[int] = Field(None, gt=0)
    partition_cooldown_ms: int = Field(100, ge=0)
    rejection_backoff_base_sec: float = Field(1.0, ge=0)
    buffered_bytes_threshold: int = Field(1024 * 1024 * 1024, gt=0)
    backpressure_pause_sec: float = Field(1.0, gt=0)

    # ingest queue
    queue_capacity: Optional[int] = Field(None, gt=0)
    flush_interval_sec: float = Field(0.5, gt=0)

    @model_validator(mode="after")
    def _check_sizes(self) -> "ImportRuntimeSettings":
        if self.smaller_batch_size > self.max_batch_count:
            raise ValueError("smaller_batch_size must not exceed max_batch_count")
        if self.min_batch_size_for_merge > self.max_batch_count:
            raise ValueError("min_batch_size_for_merge must not exceed max_batch_count")
        return self

    @property
    def effective_queue_capacity(self) -> int:
        return self.queue_capacity or self.batch_size * 4

    @classmethod
    def load(cls, **overrides: Any) -> "ImportRuntimeSettings":
        """Build settings, surfacing validation problems as FatalConfiguration."""
        try:
            return cls(**overrides)
        except ValidationError as exc:
            raise FatalConfiguration(f"invalid import settings: {exc}") from exc


@lru_cache()
def get_settings() -> ImportRuntimeSettings:
    return ImportRuntimeSettings.load()
