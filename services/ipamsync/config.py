"""
Configuration management for ipamsync.

Non-secret configuration loaded from YAML file, secrets (the API token)
from environment variables.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = "/etc/ipamsync/config.yaml"


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(os.environ.get("IPAMSYNC_CONFIG_FILE", DEFAULT_CONFIG_FILE))
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="IPAMSYNC_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Remote IPAM service
    endpoint: str = Field(
        default="",
        description="Base URL of the IPAM API (scheme + host, e.g. https://ipam.example.com)",
    )
    token: str = Field(default="", description="Bearer token attached to every request")
    api_prefix: str = Field(default="/api", description="Route prefix for every resource route")
    timeout_seconds: float = Field(default=30.0, description="Per-request timeout in seconds")

    # Lookups
    list_page_size: int = Field(default=500, description="Default limit for list lookups")
    allocation_lookup_fallback: bool = Field(
        default=True,
        description="Fall back to list-by-name+block_name when an allocation "
        "get-by-ID returns not found",
    )

    # Application
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False, description="JSON logging for CI / automation")
    state_file: str = Field(default="ipamsync.state.json")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
