"""
Environment-based configuration for the operator process.

OperatorSettings is built once at process start and passed explicitly to
every component that needs it. There is no module-level settings instance:
the CLI constructs one (command-line options override the environment) and
threads it into the manager, scheduler, leader elector and reconciler.

All settings can be overridden via environment variables with the
SHAZAMQ_OPERATOR_ prefix. For example:
    SHAZAMQ_OPERATOR_WATCH_NAMESPACE=streaming
    SHAZAMQ_OPERATOR_RESYNC_INTERVAL_SECONDS=120
"""

import socket
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OperatorSettings(BaseSettings):
    """Operator process configuration (immutable once built)."""

    # Watch scope: None watches every namespace
    watch_namespace: str | None = None

    # Reconcile cadence
    resync_interval_seconds: float = 300.0
    progress_requeue_seconds: float = 10.0
    pass_timeout_seconds: float = 60.0

    # Leadership
    lease_name: str = "shazamq-operator-leader"
    lease_namespace: str = "default"
    identity: str = Field(default_factory=socket.gethostname)
    lease_duration_seconds: float = 15.0
    renew_interval_seconds: float = 5.0

    # Concurrency
    worker_count: int = Field(default=4, ge=1)
    request_channel_size: int = Field(default=1024, ge=1)

    # Outbound calls
    api_timeout_seconds: float = 10.0
    api_retry_attempts: int = Field(default=3, ge=1)
    conflict_retry_attempts: int = Field(default=3, ge=1)

    # Failure requeue backoff
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0

    # Rolling upgrade
    upgrade_readiness_timeout_seconds: float = 300.0
    upgrade_max_attempts: int = Field(default=3, ge=1)

    # Mirroring
    mirror_batch_size: int = Field(default=500, ge=1)

    # Event journal (disabled when unset)
    journal_path: Path | None = None

    field_manager: str = "shazamq-operator"

    model_config = SettingsConfigDict(env_prefix="SHAZAMQ_OPERATOR_", frozen=True)
