"""
Unified Configuration Settings - Single Source of Truth
=======================================================
All relay configuration using Pydantic Settings.
Every section can be overridden from the environment with its own prefix,
or through the nested form on AppSettings (e.g. RELAY__PORT=9000).
"""

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from typing import List
from enum import Enum


class LogLevel(str, Enum):
    """Logging levels"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class StorageBackend(str, Enum):
    """Message store implementations"""
    MEMORY = "memory"
    POSTGRES = "postgres"


# === LOGGING CONFIGURATION ===

class LoggingSettings(BaseSettings):
    """Logging configuration"""
    level: LogLevel = Field(default=LogLevel.INFO)
    file_enabled: bool = Field(default=False)
    console_enabled: bool = Field(default=True)
    structured_logging: bool = Field(default=True)
    log_dir: str = Field(default="logs")
    max_file_size_mb: int = Field(default=100)
    backup_count: int = Field(default=5)

    class Config:
        env_prefix = "LOG_"


# === RELAY CONFIGURATION ===

class RelaySettings(BaseSettings):
    """Live connection server configuration"""
    host: str = Field(default="0.0.0.0", description="Bind address for the live connection server")
    port: int = Field(default=8765, description="Port for the live connection server")
    max_connections: int = Field(default=1000, description="Maximum concurrent live connections")
    max_send_backlog: int = Field(default=256, description="Outbound frames queued per connection before it is treated as dead")
    max_frame_bytes: int = Field(default=2**20, description="Maximum inbound frame size (1MB)")
    default_history_limit: int = Field(default=30, description="History page size when the caller gives none")
    max_history_limit: int = Field(default=100, description="Upper bound on history page size")

    @field_validator('max_send_backlog', 'max_connections', 'default_history_limit', 'max_history_limit')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @model_validator(mode='after')
    def validate_history_limits(self):
        if self.default_history_limit > self.max_history_limit:
            raise ValueError("default_history_limit cannot exceed max_history_limit")
        return self

    class Config:
        env_prefix = "RELAY_"


class HeartbeatSettings(BaseSettings):
    """Liveness monitor configuration"""
    enabled: bool = Field(default=True, description="Run the periodic liveness sweep")
    probe_interval_seconds: float = Field(default=30.0, description="Interval between liveness sweeps")

    @field_validator('probe_interval_seconds')
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("probe_interval_seconds must be greater than zero")
        return v

    class Config:
        env_prefix = "HEARTBEAT_"


# === STORAGE CONFIGURATION ===

class StorageSettings(BaseSettings):
    """Message store configuration"""
    backend: StorageBackend = Field(default=StorageBackend.MEMORY, description="Message store implementation")
    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    database: str = Field(default="chat", description="PostgreSQL database")
    user: str = Field(default="chat_user", description="PostgreSQL user")
    password: str = Field(default="", description="PostgreSQL password")
    min_pool_size: int = Field(default=2)
    max_pool_size: int = Field(default=10)
    command_timeout: float = Field(default=10.0)
    save_retries: int = Field(default=1, description="Extra attempts for a failed save before it is logged and dropped")

    @property
    def dsn(self) -> str:
        """Generate PostgreSQL connection string from settings"""
        auth = f"{self.user}:{self.password}@" if self.password else f"{self.user}@"
        return f"postgresql://{auth}{self.host}:{self.port}/{self.database}"

    class Config:
        env_prefix = "STORAGE_"


# === HTTP API CONFIGURATION ===

class ApiSettings(BaseSettings):
    """REST API configuration"""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    class Config:
        env_prefix = "API_"


# === MAIN APPLICATION SETTINGS ===

class AppSettings(BaseSettings):
    """Main application settings - Single Source of Truth"""

    app_name: str = Field(default="Chat Relay")
    version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    heartbeat: HeartbeatSettings = Field(default_factory=HeartbeatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    class Config:
        env_file = ".env"
        env_nested_delimiter = "__"  # Allows RELAY__PORT=9000
        case_sensitive = False
        extra = "ignore"
