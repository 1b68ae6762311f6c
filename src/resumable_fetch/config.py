"""Download configuration from config.yaml and environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from resumable_fetch.errors import ConfigurationError
from resumable_fetch.identity import build_user_agent
from resumable_fetch.version import VERSION

# Default config path: config.yaml in the working directory
DEFAULT_CONFIG_PATH = Path("config.yaml")

# How many times a session automatically reissues a request after a network error
DEFAULT_MAX_RETRIES = 2

# Redirect hops followed before a session gives up
DEFAULT_MAX_REDIRECTS = 10

DEFAULT_TEMP_SUFFIX = ".downloading"


@dataclass
class DownloadConfig:
    """Download session behavior configuration.

    Load from config.yaml and the environment using DownloadConfig.load_config().
    All timing values in seconds.
    """

    # Retry policy
    max_retries: int = DEFAULT_MAX_RETRIES
    max_redirects: int = DEFAULT_MAX_REDIRECTS

    # Temp file naming: <destination><temp_suffix>
    temp_suffix: str = DEFAULT_TEMP_SUFFIX

    # Transport
    chunk_size: int = 256 * 1024
    timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 30.0

    # Client identity
    app_name: str = "MWM"
    app_version: str = VERSION
    client_id: str = ""  # empty = derive from this device

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(
                f"max_retries must be >= 0, got {self.max_retries}"
            )
        if self.max_redirects < 0:
            raise ConfigurationError(
                f"max_redirects must be >= 0, got {self.max_redirects}"
            )
        if self.chunk_size <= 0:
            raise ConfigurationError(
                f"chunk_size must be > 0, got {self.chunk_size}"
            )
        if not self.temp_suffix:
            raise ConfigurationError("temp_suffix cannot be empty")
        if self.timeout_seconds <= 0 or self.connect_timeout_seconds <= 0:
            raise ConfigurationError("timeouts must be > 0")

    def temp_path_for(self, destination_path: str) -> str:
        """Temp file path that all writes land in until the download succeeds."""
        return f"{destination_path}{self.temp_suffix}"

    def user_agent(self) -> str:
        """Client identity header value for this configuration."""
        return build_user_agent(
            self.app_name, self.app_version, client_id=self.client_id or None
        )

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "DownloadConfig":
        """Load download configuration from config.yaml and environment variables.

        Configuration priority (highest to lowest):
        1. Environment variables
        2. config.yaml file (under 'download:' key)
        3. Dataclass defaults

        Optional env vars (all have defaults):
            DOWNLOAD_MAX_RETRIES: Automatic retries on network errors (default: 2)
            DOWNLOAD_MAX_REDIRECTS: Redirect hops followed (default: 10)
            DOWNLOAD_TEMP_SUFFIX: Temp file suffix (default: .downloading)
            DOWNLOAD_CHUNK_SIZE: Read chunk size in bytes (default: 262144)
            DOWNLOAD_TIMEOUT_SECONDS: Max seconds without body data (default: 300)
            DOWNLOAD_CONNECT_TIMEOUT_SECONDS: Connect timeout (default: 30)
            DOWNLOAD_APP_NAME: Application name for User-Agent (default: MWM)
            DOWNLOAD_APP_VERSION: Application version for User-Agent
            DOWNLOAD_CLIENT_ID: Per-device id for User-Agent (default: derived)

        Raises:
            ConfigurationError: If a value is invalid
        """
        config_path = config_path or DEFAULT_CONFIG_PATH

        download_data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                yaml_data = yaml.safe_load(f) or {}
            download_data = yaml_data.get("download", {}) or {}

        defaults = cls.__dataclass_fields__

        def _get(key: str, env_var: str, cast):
            raw = os.getenv(env_var)
            if raw is None:
                raw = download_data.get(key)
            if raw is None:
                raw = defaults[key].default
            try:
                return cast(raw)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid value for {key}: {raw!r}", cause=e
                ) from e

        return cls(
            max_retries=_get("max_retries", "DOWNLOAD_MAX_RETRIES", int),
            max_redirects=_get("max_redirects", "DOWNLOAD_MAX_REDIRECTS", int),
            temp_suffix=_get("temp_suffix", "DOWNLOAD_TEMP_SUFFIX", str),
            chunk_size=_get("chunk_size", "DOWNLOAD_CHUNK_SIZE", int),
            timeout_seconds=_get("timeout_seconds", "DOWNLOAD_TIMEOUT_SECONDS", float),
            connect_timeout_seconds=_get(
                "connect_timeout_seconds", "DOWNLOAD_CONNECT_TIMEOUT_SECONDS", float
            ),
            app_name=_get("app_name", "DOWNLOAD_APP_NAME", str),
            app_version=_get("app_version", "DOWNLOAD_APP_VERSION", str),
            client_id=_get("client_id", "DOWNLOAD_CLIENT_ID", str),
        )
