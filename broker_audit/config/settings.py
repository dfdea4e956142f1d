# broker_audit/config/settings.py

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuditSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_name: str = "broker-audit"
    environment: Literal["dev", "test", "prod"] = "dev"
    debug: bool = False
    version: str = "0.1.0"

    # --- Database ---
    database_url: str = "sqlite+aiosqlite:///./audit.db"
    database_echo: bool = False

    # --- Redis (cross-replica retention lock; disabled when unset) ---
    redis_url: Optional[str] = None
    retention_lock_ttl_seconds: int = Field(900, ge=1)

    # --- Audit writer ---
    audit_enabled: bool = True
    audit_async_processing: bool = True
    audit_queue_capacity: int = Field(10_000, ge=1, le=1_000_000)
    audit_worker_count: int = Field(2, ge=1, le=32)
    audit_batch_size: int = Field(100, ge=1, le=10_000)
    audit_retry_max_attempts: int = Field(5, ge=1, le=50)
    audit_retry_base_delay_seconds: float = Field(0.1, ge=0.0)
    audit_retry_max_delay_seconds: float = Field(5.0, ge=0.0)
    audit_write_timeout_seconds: float = Field(5.0, gt=0.0)
    audit_drop_log_interval: int = Field(100, ge=1)
    audit_shutdown_timeout_seconds: float = Field(10.0, ge=0.0)

    # --- Retention ---
    retention_enabled: bool = True
    retention_max_age_days: Optional[int] = Field(90, ge=1, le=36_500)
    retention_max_records: Optional[int] = Field(None, ge=1)
    retention_interval_seconds: float = Field(86_400.0, gt=0.0)
    retention_initial_delay_seconds: float = Field(60.0, ge=0.0)
    retention_batch_size: int = Field(1_000, ge=1, le=100_000)
    retention_run_budget_seconds: float = Field(300.0, gt=0.0)

    # --- Query ---
    query_max_page_size: int = Field(500, ge=1, le=10_000)
    query_default_page_size: int = Field(50, ge=1)
    query_case_sensitive: bool = True
    query_cluster_name_match: Literal["exact", "substring"] = "exact"

    # --- Observability ---
    enable_metrics: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @model_validator(mode="after")
    def _check_limits(self) -> "AuditSettings":
        if self.retention_enabled and self.retention_max_age_days is None and self.retention_max_records is None:
            raise ValueError(
                "retention is enabled but neither retention_max_age_days nor retention_max_records is set"
            )
        if self.query_default_page_size > self.query_max_page_size:
            raise ValueError("query_default_page_size cannot exceed query_max_page_size")
        if self.audit_retry_max_delay_seconds < self.audit_retry_base_delay_seconds:
            raise ValueError("audit_retry_max_delay_seconds must be >= audit_retry_base_delay_seconds")
        return self

    def summary(self) -> dict:
        """Non-secret view of the audit configuration for logs and the config endpoint."""
        return {
            "audit_enabled": self.audit_enabled,
            "async_processing": self.audit_async_processing,
            "queue_capacity": self.audit_queue_capacity,
            "worker_count": self.audit_worker_count,
            "batch_size": self.audit_batch_size,
            "retry_max_attempts": self.audit_retry_max_attempts,
            "retention_enabled": self.retention_enabled,
            "retention_max_age_days": self.retention_max_age_days,
            "retention_max_records": self.retention_max_records,
            "retention_interval_seconds": self.retention_interval_seconds,
            "max_page_size": self.query_max_page_size,
        }


@lru_cache
def get_settings() -> AuditSettings:
    return AuditSettings()
