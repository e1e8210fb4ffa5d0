"""
Configuration management for the DocDB smuggler server.

Settings come from environment variables only. Each concern has a frozen
section with its own from_env(); ServerConfig groups them and validates the
combination.

Invariants:
    - All settings have sensible defaults for local development
    - The server batch ceiling (MAX_BATCH_SIZE) is authoritative for every client
    - Secrets are never logged or exposed in error messages

How to change safely:
    - New variables need defaults so existing deployments keep starting
    - Keep variable names stable; the CLI reads SMUGGLER_* defaults too
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


@dataclass(frozen=True)
class StorageConfig:
    """Local document store configuration.

    Attributes:
        data_dir: Directory for SQLite database files
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        max_batch_size: Server-enforced ceiling on items per batch
        databases: Databases the server provisions at startup
    """

    data_dir: str = "/var/lib/docdb"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    max_batch_size: int = 1024
    databases: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/docdb"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            max_batch_size=int(os.getenv("MAX_BATCH_SIZE", "1024")),
            databases=tuple(
                d.strip() for d in os.getenv("DATABASES", "").split(",") if d.strip()
            ),
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8081
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("HTTP_CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )


@dataclass(frozen=True)
class SmugglerConfig:
    """Client-side defaults for export/import runs.

    Attributes:
        batch_size: Requested batch size (None = use the server maximum)
        timeout_seconds: Per-request timeout for remote stores
    """

    batch_size: int | None = None
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> SmugglerConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=_env_optional_int("SMUGGLER_BATCH_SIZE"),
            timeout_seconds=float(os.getenv("SMUGGLER_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for uploading periodic export files.

    Attributes:
        bucket: S3 bucket name (None disables upload)
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        export_prefix: Key prefix for uploaded dump files
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str | None = None
    region: str = "us-east-1"
    endpoint_url: str | None = None
    export_prefix: str = "exports"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET") or None,
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            export_prefix=os.getenv("S3_EXPORT_PREFIX", "exports"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class PeriodicExportConfig:
    """Periodic export configuration.

    Attributes:
        enabled: Whether the periodic exporter runs
        database: Database to export
        local_folder: Directory receiving dump files and the state file
        interval_ms: Incremental export interval (None = incremental disabled)
        full_backup_interval_ms: Full export interval (None = full disabled)
    """

    enabled: bool = False
    database: str = "default"
    local_folder: str = "/var/lib/docdb/exports"
    interval_ms: int | None = None
    full_backup_interval_ms: int | None = None

    @classmethod
    def from_env(cls) -> PeriodicExportConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("PERIODIC_EXPORT_ENABLED", "false"),
            database=os.getenv("PERIODIC_EXPORT_DATABASE", "default"),
            local_folder=os.getenv("PERIODIC_EXPORT_FOLDER", "/var/lib/docdb/exports"),
            interval_ms=_env_optional_int("PERIODIC_EXPORT_INTERVAL_MS"),
            full_backup_interval_ms=_env_optional_int("PERIODIC_EXPORT_FULL_INTERVAL_MS"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Local storage configuration
        http: HTTP API configuration
        smuggler: Client defaults for export/import runs
        s3: S3 upload configuration
        periodic_export: Periodic export configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    smuggler: SmugglerConfig = field(default_factory=SmugglerConfig)
    s3: S3Config = field(default_factory=S3Config)
    periodic_export: PeriodicExportConfig = field(default_factory=PeriodicExportConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            smuggler=SmugglerConfig.from_env(),
            s3=S3Config.from_env(),
            periodic_export=PeriodicExportConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.max_batch_size <= 0:
            raise ValueError("MAX_BATCH_SIZE must be positive")

        if self.smuggler.batch_size is not None and self.smuggler.batch_size <= 0:
            raise ValueError("SMUGGLER_BATCH_SIZE must be positive when set")

        periodic = self.periodic_export
        if periodic.enabled:
            if periodic.interval_ms is None and periodic.full_backup_interval_ms is None:
                raise ValueError(
                    "PERIODIC_EXPORT_INTERVAL_MS or PERIODIC_EXPORT_FULL_INTERVAL_MS "
                    "is required when PERIODIC_EXPORT_ENABLED=true"
                )
            for name, value in (
                ("PERIODIC_EXPORT_INTERVAL_MS", periodic.interval_ms),
                ("PERIODIC_EXPORT_FULL_INTERVAL_MS", periodic.full_backup_interval_ms),
            ):
                if value is not None and value <= 0:
                    raise ValueError(f"{name} must be positive")
            if not periodic.local_folder:
                raise ValueError("PERIODIC_EXPORT_FOLDER is required")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "max_batch_size": self.storage.max_batch_size,
                "databases": list(self.storage.databases),
                "http_bind": f"{self.http.host}:{self.http.port}",
                "periodic_export_enabled": self.periodic_export.enabled,
                "periodic_export_database": self.periodic_export.database
                if self.periodic_export.enabled
                else None,
                "s3_bucket": self.s3.bucket,
                "log_level": self.observability.log_level,
            },
        )
