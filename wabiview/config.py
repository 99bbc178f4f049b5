"""Configuration management for the coinjoin monitor."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="WABIVIEW_",
        case_sensitive=False,
    )

    # Bitcoin Core RPC
    bitcoin_rpc_host: str = Field(
        default="bitcoind.embassy",
        description="Bitcoin Core RPC host"
    )
    bitcoin_rpc_port: int = Field(
        default=8332,
        description="Bitcoin Core RPC port"
    )
    bitcoin_rpc_user: Optional[str] = Field(
        default=None,
        description="Bitcoin RPC username"
    )
    bitcoin_rpc_pass: Optional[str] = Field(
        default=None,
        description="Bitcoin RPC password"
    )
    bitcoin_rpc_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for a single RPC call"
    )

    # Electrs REST
    electrs_host: str = Field(
        default="electrs.embassy",
        description="Electrs REST host"
    )
    electrs_port: int = Field(
        default=50001,
        description="Electrs REST port"
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///wabiview.db",
        description="Database URL for coordinators, rounds and coinjoins"
    )

    # Coordinator polling
    coordinator_status_path: str = Field(
        default="wabisabi/status",
        description="Status endpoint, relative to the coordinator URL"
    )
    coordinator_rounds_path: str = Field(
        default="wabisabi/human-monitor",
        description="Round list endpoint, relative to the coordinator URL"
    )
    coordinator_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for coordinator requests"
    )
    poll_base_interval: float = Field(
        default=90.0,
        description="Seconds between polls of a healthy coordinator"
    )
    poll_max_interval: float = Field(
        default=360.0,
        description="Upper bound for the backed-off poll interval"
    )

    # Coinjoin scanning
    scan_interval: float = Field(
        default=60.0,
        description="Seconds between coinjoin scans"
    )
    scan_startup_delay: float = Field(
        default=10.0,
        description="Delay before the first scan so rounds get populated"
    )
    attribution_window: float = Field(
        default=600.0,
        description="Max age in seconds of an ended round a coinjoin may be attributed to"
    )

    # Status server
    enable_health_server: bool = Field(
        default=True,
        description="Expose health and read-only JSON endpoints"
    )
    health_host: str = Field(
        default="0.0.0.0",
        description="Status server bind address"
    )
    health_port: int = Field(
        default=8080,
        description="Status server port"
    )

    # Application
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Normalize the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("poll_max_interval")
    @classmethod
    def validate_max_interval(cls, v, info):
        """The backoff ceiling can't be below the base interval."""
        base = info.data.get("poll_base_interval")
        if base is not None and v < base:
            raise ValueError("poll_max_interval must be >= poll_base_interval")
        return v

    @property
    def bitcoin_rpc_url(self) -> str:
        return f"http://{self.bitcoin_rpc_host}:{self.bitcoin_rpc_port}"

    @property
    def electrs_url(self) -> str:
        return f"http://{self.electrs_host}:{self.electrs_port}"


# Global config instance
config = Config()
