"""
Controller configuration using Pydantic Settings.

Every field can be set from the environment (case insensitive, e.g.
K8S_NAMESPACE, REPLICA_WORKERS) or from a local .env file.
"""
import posixpath
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_ENVIRONMENTS = ("development", "staging", "production", "testing")


class Settings(BaseSettings):
    """Replica controller settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Identity
    app_name: str = Field(default="longhorn-replica-controller", description="Name used in logs and events")
    app_version: str = Field(default="0.1.0", description="Controller version")
    environment: str = Field(default="development", description="development/staging/production/testing")
    log_level: str = Field(default="INFO", description="Logging level")

    # Probe and metrics server
    host: str = Field(default="0.0.0.0", description="Probe server bind address")
    port: int = Field(default=9500, ge=1, le=65535, description="Probe server port")
    reload: bool = Field(default=False, description="Auto-reload on code changes (development only)")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for default lookup)"
    )
    k8s_namespace: str = Field(default="longhorn-system", description="Namespace watched by the controller")
    k8s_in_cluster: bool = Field(default=False, description="Use the pod's service account credentials")

    # Work queue and workers
    replica_workers: int = Field(default=5, ge=1, le=64, description="Concurrent reconcile workers")
    max_retries: int = Field(default=3, ge=0, description="Failed syncs per key before it is dropped")
    queue_base_delay: float = Field(default=0.005, gt=0, description="Per-key backoff base delay in seconds")
    queue_max_delay: float = Field(default=1000.0, gt=0, description="Per-key backoff ceiling in seconds")
    queue_qps: float = Field(default=10.0, gt=0, description="Overall requeue rate")
    queue_burst: int = Field(default=100, ge=1, description="Overall requeue burst")

    # Informers
    resync_period: int = Field(default=30, ge=0, description="Cache resync period in seconds (0 disables)")
    watch_timeout: int = Field(default=300, ge=10, description="Server side watch timeout in seconds")

    # Replica workload
    longhorn_directory: str = Field(
        default="/var/lib/rancher/longhorn/", description="Host directory holding replica data"
    )
    replica_listen_address: str = Field(default="0.0.0.0:9502", description="Replica process listen address")
    cleanup_backoff_limit: int = Field(default=1, ge=0, description="Retries of the cleanup job itself")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Expose /metrics")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"Log level must be one of {list(VALID_LOG_LEVELS)}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v.lower() not in VALID_ENVIRONMENTS:
            raise ValueError(f"Environment must be one of {list(VALID_ENVIRONMENTS)}")
        return v.lower()

    @field_validator("longhorn_directory")
    @classmethod
    def validate_longhorn_directory(cls, v: str) -> str:
        """Replica pods mount this path from the host; it must be absolute."""
        if not posixpath.isabs(v):
            raise ValueError("longhorn_directory must be an absolute path")
        return v

    @field_validator("replica_listen_address")
    @classmethod
    def validate_listen_address(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError("replica_listen_address must look like host:port")
        return v

    @model_validator(mode="after")
    def validate_queue_delays(self) -> "Settings":
        if self.queue_base_delay > self.queue_max_delay:
            raise ValueError("queue_base_delay must not exceed queue_max_delay")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
