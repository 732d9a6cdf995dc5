"""
Centralized configuration management for the CouchDB river.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Optional, Dict, List
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CouchDBSettings(BaseSettings):
    """Source CouchDB database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COUCHDB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(default="http://localhost:5984", description="CouchDB base URL")
    database: str = Field(default="db", description="Database whose _changes feed is followed")

    # Authentication (optional)
    username: Optional[str] = Field(None, description="Basic auth username")
    password: Optional[str] = Field(None, description="Basic auth password")

    verify_hostname: bool = Field(
        default=True,
        description="Verify the TLS hostname. Disabling accepts any hostname (insecure)."
    )
    heartbeat_ms: int = Field(default=10000, description="Feed heartbeat interval in milliseconds")
    connect_timeout: float = Field(default=10.0, description="Connection timeout in seconds")

    # Filtering
    filter: Optional[str] = Field(None, description="Filter function, e.g. 'app/by_type'")
    filter_params: Dict[str, str] = Field(
        default_factory=dict,
        description="Extra query parameters handed to the filter function"
    )

    ignore_attachments: bool = Field(
        default=False,
        description="Strip _attachments from documents before indexing"
    )

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("heartbeat_ms")
    @classmethod
    def validate_heartbeat(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("heartbeat_ms must be positive")
        return v

    @property
    def requires_authentication(self) -> bool:
        return bool(self.username)

    @property
    def read_timeout(self) -> float:
        """Three missed heartbeats mean the connection is dead."""
        return self.heartbeat_ms * 3 / 1000.0


class IndexSettings(BaseSettings):
    """Target index and bulk batching configuration."""

    model_config = SettingsConfigDict(
        env_prefix="INDEX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    name: Optional[str] = Field(None, description="Target index (defaults to the database name)")
    type: Optional[str] = Field(None, description="Mapping type, only for clusters that still use types")

    bulk_size: int = Field(default=100, description="Max operations per bulk request")
    bulk_timeout: float = Field(
        default=0.01,
        description="Seconds to wait for another change before submitting a partial batch"
    )
    throttle_size: Optional[int] = Field(
        None,
        description="Capacity of the queue between reader and indexer (defaults to 5 x bulk_size)"
    )
    bulk_retries: int = Field(
        default=0,
        description="Retries of a bulk request that failed at the transport level"
    )

    @model_validator(mode="after")
    def validate_sizes(self) -> "IndexSettings":
        if self.bulk_size <= 0:
            raise ValueError("bulk_size must be positive")
        if self.bulk_timeout < 0:
            raise ValueError("bulk_timeout must be non-negative")
        if self.bulk_retries < 0:
            raise ValueError("bulk_retries must be non-negative")
        if self.throttle_size is None:
            self.throttle_size = self.bulk_size * 5
        elif self.throttle_size <= 0:
            raise ValueError("throttle_size must be positive")
        return self


class OpenSearchSettings(BaseSettings):
    """OpenSearch cluster configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OPENSEARCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    hosts: List[str] = Field(default=["http://localhost:9200"], description="Cluster node URLs")
    username: Optional[str] = Field(None, description="Basic auth username")
    password: Optional[str] = Field(None, description="Basic auth password")
    use_ssl: bool = Field(default=False, description="Use HTTPS")
    verify_certs: bool = Field(default=True, description="Verify cluster certificates")
    timeout: int = Field(default=30, description="Request timeout in seconds")


class RiverSettings(BaseSettings):
    """River instance configuration."""

    model_config = SettingsConfigDict(
        env_prefix="RIVER_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    name: str = Field(default="couchdb", description="River name, keys the checkpoint document")
    index: str = Field(default="couchdb-river", description="Index holding the checkpoint document")

    throttle_delay: float = Field(default=5.0, description="Pause after a feed I/O failure (seconds)")
    error_delay: float = Field(
        default=10.0,
        description="Pause after an unexpected reader failure, to avoid log flooding (seconds)"
    )

    transform: Optional[str] = Field(
        None,
        description="Transform hook as 'package.module:function'"
    )
    log_level: str = Field(default="INFO", description="Log level")


class Settings(BaseSettings):
    """Main settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    couchdb: CouchDBSettings = Field(default_factory=CouchDBSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    opensearch: OpenSearchSettings = Field(default_factory=OpenSearchSettings)
    river: RiverSettings = Field(default_factory=RiverSettings)

    @property
    def index_name(self) -> str:
        """Target index, falling back to the database name."""
        return self.index.name or self.couchdb.database


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
