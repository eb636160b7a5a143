"""Configuration management for the tenant migration worker.

Uses Pydantic settings for validation and environment variable loading.
"""

from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

QUEUE_NAMES = ("mail", "files", "sites", "teams", "backup")


class KafkaConfig(BaseSettings):
    """Kafka-related configuration."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Comma-separated list of Kafka brokers",
    )
    consumer_group_id: str = Field(
        default="tenant-migration-worker",
        description="Consumer group ID for this worker",
    )
    auto_offset_reset: Literal["earliest", "latest"] = Field(
        default="earliest",
        description="Where to start consuming if no offset exists",
    )
    max_poll_records: int = Field(
        default=50,
        description="Maximum records per poll",
    )
    session_timeout_ms: int = Field(
        default=30000,
        description="Consumer session timeout in milliseconds",
    )
    heartbeat_interval_ms: int = Field(
        default=3000,
        description="Consumer heartbeat interval in milliseconds",
    )
    max_poll_interval_ms: int = Field(
        default=3600000,
        description="Max time between polls; migrations hold messages for long",
    )
    enable_auto_commit: bool = Field(
        default=False,
        description="Auto-commit offsets (MUST be False for manual commits)",
    )
    producer_acks: Literal["all", "1", "0"] = Field(
        default="all",
        description="Producer acknowledgment level",
    )

    @field_validator("enable_auto_commit")
    def validate_auto_commit(cls, v: bool) -> bool:
        """Offsets are committed only after a job run finishes."""
        if v:
            raise ValueError("Auto-commit MUST be disabled. Use manual offset commits.")
        return v


class WorkerConfig(BaseSettings):
    """Worker-specific configuration."""

    model_config = SettingsConfigDict(env_prefix="WORKER_")

    mail_topic: str = Field(default="migration.mail", description="Mail migration queue")
    files_topic: str = Field(default="migration.files", description="Files migration queue")
    sites_topic: str = Field(default="migration.sites", description="Sites migration queue")
    teams_topic: str = Field(default="migration.teams", description="Teams migration queue")
    backup_topic: str = Field(default="backup.jobs", description="Backup queue")
    queues: str = Field(
        default="mail,files,sites,teams,backup",
        description="Comma-separated queues this process consumes",
    )
    progress_topic: str = Field(
        default="migration.progress",
        description="Topic receiving job progress events",
    )
    results_topic: str = Field(
        default="migration.results",
        description="Topic receiving terminal job results",
    )
    errors_topic: str = Field(
        default="migration.errors",
        description="Topic receiving job-level failures",
    )
    control_topic: str = Field(
        default="migration.control",
        description="Topic carrying pause, cancel and resume requests",
    )
    # Per-queue concurrency: API quotas differ per service
    mail_concurrency: int = Field(default=10, ge=1)
    files_concurrency: int = Field(default=12, ge=1)
    sites_concurrency: int = Field(default=8, ge=1)
    teams_concurrency: int = Field(default=6, ge=1)
    backup_concurrency: int = Field(default=4, ge=1)
    shutdown_grace_seconds: float = Field(
        default=30.0,
        description="How long to wait for in-flight jobs on shutdown",
    )
    max_recorded_errors: int = Field(
        default=500,
        description="Error descriptors kept per progress flush",
    )
    max_requeues: int = Field(
        default=3,
        description="Times a job is re-enqueued after a retriable failure",
    )
    health_host: str = Field(default="0.0.0.0")
    health_port: int = Field(default=8080)

    @field_validator("queues")
    def validate_queues(cls, v: str) -> str:
        names = [name.strip() for name in v.split(",") if name.strip()]
        unknown = sorted(set(names) - set(QUEUE_NAMES))
        if unknown:
            raise ValueError(f"Unknown queues: {', '.join(unknown)}")
        if not names:
            raise ValueError("At least one queue must be enabled")
        return ",".join(names)

    @property
    def enabled_queues(self) -> List[str]:
        return self.queues.split(",")


class GraphAPIConfig(BaseSettings):
    """Cloud object-graph API configuration."""

    model_config = SettingsConfigDict(env_prefix="GRAPH_")

    api_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="API base URL",
    )
    api_timeout_seconds: float = Field(
        default=60.0,
        description="API request timeout in seconds",
    )
    max_retries: int = Field(
        default=3,
        description="Retry budget for 5xx responses",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        description="Base of the exponential backoff for 5xx responses",
    )
    default_retry_after_seconds: float = Field(
        default=60.0,
        description="Wait applied to a 429 without a usable Retry-After",
    )
    page_size: int = Field(
        default=50,
        description="Items per page for mail, events, contacts, lists, messages",
    )
    drive_page_size: int = Field(
        default=100,
        description="Children per page when listing drive folders",
    )
    chunk_threshold_bytes: int = Field(
        default=4 * 1024 * 1024,
        description="Files above this size use chunked transfer",
    )
    chunk_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Chunk size for chunked transfer (multiple of 320 KiB)",
    )
    teams_message_delay_seconds: float = Field(
        default=1.0,
        description="Pause after each channel message write",
    )
    team_provisioning_delay_seconds: float = Field(
        default=10.0,
        description="Wait after creating a team before resolving it",
    )


class AzureADConfig(BaseSettings):
    """Application credentials for the client-credentials token flow."""

    model_config = SettingsConfigDict(env_prefix="AZURE_")

    authority_url: str = Field(
        default="https://login.microsoftonline.com",
        description="Token authority",
    )
    client_id: Optional[str] = Field(default=None)
    client_secret: Optional[str] = Field(default=None)
    scope: str = Field(default="https://graph.microsoft.com/.default")
    timeout_seconds: float = Field(default=30.0)


class StorageConfig(BaseSettings):
    """S3-compatible storage configuration for backup snapshots."""

    model_config = SettingsConfigDict(env_prefix="S3_")

    bucket_name: str = Field(
        default="tenant-backups",
        description="S3 bucket for snapshot content",
    )
    prefix: str = Field(
        default="snapshots",
        description="Key prefix for every snapshot object",
    )
    endpoint_url: Optional[str] = Field(
        default=None,
        description="S3 endpoint URL (for non-AWS S3)",
    )
    region: Optional[str] = Field(
        default="us-east-1",
        description="AWS region",
    )
    access_key_id: Optional[str] = Field(default=None)
    secret_access_key: Optional[str] = Field(default=None)
    storage_class: str = Field(default="STANDARD")


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log format",
    )


class Settings(BaseSettings):
    """Root settings container."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Environment name",
    )
    service_name: str = Field(
        default="tenant-migration-worker",
        description="Service name for observability",
    )
    service_version: str = Field(
        default="1.0.0",
        description="Service version",
    )

    # Sub-configurations
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    graph: GraphAPIConfig = Field(default_factory=GraphAPIConfig)
    azure: AzureADConfig = Field(default_factory=AzureADConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# Global settings instance
settings = Settings()
