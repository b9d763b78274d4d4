"""Configuration management for the request throttle."""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import ConfigurationError
from .limiting.models import (
    DEFAULT_BUCKET_SIZE,
    DEFAULT_REQUEST_DELAY,
    DEFAULT_RETRY_INTERVAL,
    DEFAULT_TOKEN_INTERVAL,
    DEFAULT_TOKENS_PER_INTERVAL,
    Matcher,
    ThrottleConfig,
    ThrottleConfigBuilder,
)

CONFIG_PATH_ENV = "REQUEST_THROTTLE_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")


class RuleSettings(BaseModel):
    """One entry of ``throttle.rules`` in the YAML file."""
    model_config = ConfigDict(extra="forbid")

    match: str | None = None
    pattern: str | None = None
    bucket_size: float = DEFAULT_BUCKET_SIZE
    tokens_per_interval: float = DEFAULT_TOKENS_PER_INTERVAL
    token_interval: float = DEFAULT_TOKEN_INTERVAL

    @model_validator(mode="after")
    def _single_matcher(self) -> "RuleSettings":
        if self.match and self.pattern:
            raise ValueError("a rule may set 'match' or 'pattern', not both")
        return self


class ThrottleSettings(BaseModel):
    """The ``throttle`` section of the YAML file."""
    model_config = ConfigDict(extra="forbid")

    request_delay: float = DEFAULT_REQUEST_DELAY
    # Anything that is not a non-negative number disables retry
    retry_interval: Any = DEFAULT_RETRY_INTERVAL
    max_retries: int | None = None
    rules: list[RuleSettings] = Field(default_factory=list)


class Configuration:
    """Loads limiter settings from YAML and environment variables."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        """Initialize configuration from YAML and environment variables.

        The file is ``config_path`` if given, else the path named by the
        ``REQUEST_THROTTLE_CONFIG`` environment variable (``.env`` is
        honoured), else the packaged ``config.yaml``.
        """
        self.load_env()
        self.config_path = self._resolve_config_path(config_path)
        self._config = self._load_yaml_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _resolve_config_path(config_path: str | os.PathLike[str] | None) -> Path:
        if config_path is not None:
            return Path(config_path)
        env_path = os.getenv(CONFIG_PATH_ENV)
        if env_path:
            return Path(env_path)
        return DEFAULT_CONFIG_PATH

    def _load_yaml_config(self) -> dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(self.config_path) as file:
                config = yaml.safe_load(file)
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read config file {self.config_path}: {e}"
            ) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in config file {self.config_path}: {e}"
            ) from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError(
                f"Config file must be YAML dict, got {type(config)}"
            )
        return config

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary."""
        return self._config

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML."""
        return self._config.get("logging") or {}

    def get_throttle_config(self) -> ThrottleConfig:
        """Build the limiter configuration from the ``throttle`` section.

        Returns:
            Validated, immutable ThrottleConfig.

        Raises:
            ConfigurationError: If any option is missing a valid value or the
                rules conflict with each other.
        """
        section = self._config.get("throttle") or {}
        try:
            settings = ThrottleSettings.model_validate(section)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid throttle configuration: {e}") from e

        builder = ThrottleConfigBuilder()
        for rule in settings.rules:
            matcher = Matcher.pattern(rule.pattern) if rule.pattern else rule.match
            builder.add_rate_limiter({
                "match": matcher,
                "bucket_size": rule.bucket_size,
                "tokens_per_interval": rule.tokens_per_interval,
                "token_interval": rule.token_interval,
            })

        return (
            builder.set_request_delay(settings.request_delay)
            .set_retry_delay(settings.retry_interval)
            .set_max_retries(settings.max_retries)
            .build()
        )
