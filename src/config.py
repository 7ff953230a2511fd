"""
Configuration module for the BigQueryTable operator.

Loads configuration from environment variables. Every value that the
reconciler depends on (the default project, the finalizer token) is
resolved here once and passed in at construction time.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class KubernetesConfig:
    """Cluster connection and custom resource configuration."""

    kubeconfig: Optional[str] = None
    in_cluster: Optional[bool] = None  # None = try in-cluster, then kubeconfig
    namespace: str = ""  # empty = watch all namespaces
    crd_group: str = "mahdi.dev"
    crd_version: str = "v1"
    crd_plural: str = "bigquerytables"
    watch_timeout: int = 300  # seconds
    watch_retry_delay: int = 5  # seconds

    @property
    def finalizer(self) -> str:
        """Finalizer token guarding the external table."""
        return f"{self.crd_plural}.{self.crd_group}/finalizer"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        in_cluster_raw = os.getenv("KUBE_IN_CLUSTER", "")
        in_cluster = _env_bool("KUBE_IN_CLUSTER", False) if in_cluster_raw else None

        return cls(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            in_cluster=in_cluster,
            namespace=os.getenv("WATCH_NAMESPACE", ""),
            crd_group=os.getenv("CRD_GROUP", "mahdi.dev"),
            crd_version=os.getenv("CRD_VERSION", "v1"),
            watch_timeout=_env_int("WATCH_TIMEOUT", 300),
            watch_retry_delay=_env_int("WATCH_RETRY_DELAY", 5),
        )


@dataclass
class ControllerConfig:
    """Dispatcher, worker pool and retry configuration."""

    max_concurrent_reconciles: int = 5
    reconcile_timeout: float = 120.0  # seconds, bounds one whole reconcile pass
    resync_interval: int = 300  # seconds, 0 disables periodic resync
    conflict_retries: int = 3

    # Exponential backoff configuration
    backoff_base_delay: float = 5.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    report_status: bool = True

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=_env_int("MAX_CONCURRENT_RECONCILES", 5),
            reconcile_timeout=_env_float("RECONCILE_TIMEOUT", 120.0),
            resync_interval=_env_int("RESYNC_INTERVAL", 300),
            conflict_retries=_env_int("CONFLICT_RETRIES", 3),
            backoff_base_delay=_env_float("BACKOFF_BASE_DELAY", 5.0),
            backoff_max_delay=_env_float("BACKOFF_MAX_DELAY", 300.0),
            backoff_jitter_factor=_env_float("BACKOFF_JITTER_FACTOR", 0.1),
            report_status=_env_bool("REPORT_STATUS", True),
        )


@dataclass
class BigQueryConfig:
    """BigQuery backend configuration."""

    default_project: Optional[str] = None
    location: Optional[str] = None
    request_timeout: float = 30.0  # seconds

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            default_project=os.getenv("GCP_PROJECT_ID") or None,
            location=os.getenv("BIGQUERY_LOCATION") or None,
            request_timeout=_env_float("BIGQUERY_TIMEOUT", 30.0),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(level=os.getenv("LOG_LEVEL", "INFO").upper())


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    bigquery: BigQueryConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        cfg = cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            bigquery=BigQueryConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        """
        Check settings that depend on each other.

        Raises:
            ValueError: If a BigQuery call may outlive the reconcile deadline
        """
        if self.controller.reconcile_timeout <= self.bigquery.request_timeout:
            raise ValueError(
                f"RECONCILE_TIMEOUT ({self.controller.reconcile_timeout}s) must be "
                f"larger than BIGQUERY_TIMEOUT ({self.bigquery.request_timeout}s)"
            )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            bigquery=BigQueryConfig(),
            logging=LoggingConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
