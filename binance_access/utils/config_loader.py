"""
Configuration loader for the Binance access layer.

Loads configuration from:
1. YAML file (config.yaml)
2. Environment variables (BINANCE_* prefix)
3. .env file (via python-dotenv)

Environment variables override YAML values.
API credentials MUST be set via environment or a credentials file (never in YAML).
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from ..api.auth import Credentials, load_credentials_from_env, load_credentials_from_file
from ..api.errors import ConfigError
from ..config.settings import (
    AccessConfig,
    ApiConfig,
    LoggingConfig,
    RateLimitConfig,
    RetryConfig,
    StreamConfig,
    SubMarket,
)

logger = logging.getLogger(__name__)

SECRET_KEYS = ("api_key", "api_secret")


class ConfigLoader:
    """
    Loads and validates access layer configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (BINANCE_*)
    2. YAML config file
    3. Default values in dataclasses
    """

    ENV_PREFIX = "BINANCE_"

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_file: Optional[str] = None,
    ):
        """
        Initialize config loader.

        Args:
            config_path: Path to YAML config file. If None, uses config.yaml
            env_file: Path to .env file. If None, uses .env in working directory
        """
        self._config_path = Path(config_path) if config_path else Path("config.yaml")
        self._env_file = Path(env_file) if env_file else Path(".env")

        if self._env_file.exists():
            load_dotenv(self._env_file)
            logger.debug(f"Loaded environment from {self._env_file}")

    def load(self) -> AccessConfig:
        """
        Load complete configuration.

        Returns:
            AccessConfig with all settings populated

        Raises:
            ConfigError: If YAML holds credentials or configuration is invalid
        """
        yaml_config = self._load_yaml()
        config = self._build_config(yaml_config)

        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"Config error: {error}")
            raise ConfigError("; ".join(errors))

        return config

    def _load_yaml(self) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not self._config_path.exists():
            logger.warning(f"Config file not found: {self._config_path}, using defaults")
            return {}

        with open(self._config_path) as f:
            config = yaml.safe_load(f) or {}

        if not isinstance(config, dict):
            raise ConfigError(f"Config file {self._config_path} must contain a mapping")

        api_yaml = config.get("api") or {}
        for key in SECRET_KEYS:
            if key in config or key in api_yaml:
                raise ConfigError(
                    f"{key} must not be stored in {self._config_path}; "
                    f"use {self.ENV_PREFIX}{key.upper()} instead"
                )

        logger.info(f"Loaded config from {self._config_path}")
        return config

    def _get_env(self, key: str, default: Any = None) -> Any:
        """
        Get environment variable with BINANCE_ prefix.

        Args:
            key: Variable name (without prefix)
            default: Default value if not set

        Returns:
            Environment variable value or default
        """
        full_key = f"{self.ENV_PREFIX}{key}"
        value = os.environ.get(full_key)

        if value is None:
            return default

        # Type conversion based on default type
        try:
            if isinstance(default, bool):
                return value.lower() in ("true", "1", "yes")
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {full_key}: {value!r}") from e

        return value

    def _build_api_config(self, api_yaml: Dict[str, Any]) -> ApiConfig:
        testnet = self._get_env("TESTNET", bool(api_yaml.get("testnet", False)))
        binance_us = bool(api_yaml.get("binance_us", False))

        if testnet:
            api = ApiConfig.testnet()
        elif binance_us:
            api = ApiConfig.binance_us()
        else:
            api = ApiConfig()

        api.recv_window = self._get_env("RECV_WINDOW", int(api_yaml.get("recv_window", api.recv_window)))
        api.request_timeout = self._get_env(
            "REQUEST_TIMEOUT",
            float(api_yaml.get("request_timeout", api.request_timeout)),
        )
        api.api_key_header = api_yaml.get("api_key_header", api.api_key_header)
        api.binance_us_api = bool(api_yaml.get("binance_us_api", api.binance_us_api))

        rest_yaml = api_yaml.get("rest_urls") or {}
        ws_yaml = api_yaml.get("ws_urls") or {}
        enabled_yaml = api_yaml.get("enabled") or {}

        for sub_market in SubMarket:
            name = sub_market.value.upper()

            rest_url = self._get_env(f"{name}_REST_URL", rest_yaml.get(sub_market.value))
            if rest_url:
                api.rest_urls[sub_market] = rest_url

            ws_url = self._get_env(f"{name}_WS_URL", ws_yaml.get(sub_market.value))
            if ws_url:
                api.ws_urls[sub_market] = ws_url

            enabled = self._get_env(
                f"ENABLE_{name}",
                bool(enabled_yaml.get(sub_market.value, api.is_enabled(sub_market))),
            )
            if enabled:
                api.enabled_sub_markets.add(sub_market)
            else:
                api.enabled_sub_markets.discard(sub_market)

        return api

    def _build_config(self, yaml_config: Dict[str, Any]) -> AccessConfig:
        """Build AccessConfig from YAML and environment."""
        api = self._build_api_config(yaml_config.get("api") or {})

        rl_yaml = yaml_config.get("rate_limit") or {}
        rate_limit = RateLimitConfig(
            window_seconds=rl_yaml.get("window_seconds", 60.0),
            buffer=rl_yaml.get("buffer", 0.9),
        )
        for name, limit in (rl_yaml.get("weight_limits") or {}).items():
            rate_limit.weight_limits[SubMarket(name)] = int(limit)

        retry_yaml = yaml_config.get("retry") or {}
        retry = RetryConfig(
            max_retries=retry_yaml.get("max_retries", 3),
            rate_limit_retries=retry_yaml.get("rate_limit_retries", 3),
            base_delay=retry_yaml.get("base_delay", 0.5),
            max_delay=retry_yaml.get("max_delay", 60.0),
            exponential_base=retry_yaml.get("exponential_base", 2.0),
            jitter=retry_yaml.get("jitter", True),
        )

        stream_yaml = yaml_config.get("stream") or {}
        stream = StreamConfig(
            batch_window=stream_yaml.get("batch_window", 0.05),
            max_streams_per_connection=stream_yaml.get("max_streams_per_connection", 200),
            connect_timeout=stream_yaml.get("connect_timeout", 10.0),
            subscribe_timeout=stream_yaml.get("subscribe_timeout", 10.0),
            close_timeout=stream_yaml.get("close_timeout", 5.0),
            heartbeat_interval=stream_yaml.get("heartbeat_interval", 30.0),
            pong_timeout=stream_yaml.get("pong_timeout", 10.0),
            reconnect_delay=stream_yaml.get("reconnect_delay", 1.0),
            max_reconnect_delay=stream_yaml.get("max_reconnect_delay", 60.0),
            reconnect_multiplier=stream_yaml.get("reconnect_multiplier", 2.0),
            max_reconnect_attempts=stream_yaml.get("max_reconnect_attempts", 10),
            consumer_queue_size=stream_yaml.get("consumer_queue_size", 1000),
        )

        logging_yaml = yaml_config.get("logging") or {}
        log_config = LoggingConfig(
            level=self._get_env("LOG_LEVEL", logging_yaml.get("level", "INFO")),
            file_path=logging_yaml.get("file_path"),
            max_size_mb=logging_yaml.get("max_size_mb", 10),
            backup_count=logging_yaml.get("backup_count", 5),
        )

        return AccessConfig(
            api=api,
            rate_limit=rate_limit,
            retry=retry,
            stream=stream,
            logging=log_config,
        )

    def get_api_credentials(self, credentials_file: Optional[str] = None) -> Credentials:
        """
        Get API credentials.

        API credentials MUST be set via environment variables or a
        credentials file, never stored in config files.

        Args:
            credentials_file: Optional credentials file (overrides environment)

        Returns:
            Credentials

        Raises:
            ConfigError: If credentials not set
        """
        if credentials_file:
            return load_credentials_from_file(credentials_file)
        return load_credentials_from_env()
