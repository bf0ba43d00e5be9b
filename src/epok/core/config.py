"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- Optional YAML tuning file (debounce, resync, retry, ordering)
- Environment variable overrides via pydantic-settings
"""

from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from epok.core.exceptions import ConfigurationError, ParseError
from epok.core.validation import validate_interface, validate_port


# 80% of the usual 2 MiB ARG_MAX
DEFAULT_BATCH_SIZE = 1677722
DEFAULT_SSH_PORT = 22
DEFAULT_DEBOUNCE_SECONDS = 0.1
DEFAULT_RESYNC_SECONDS = 300.0
DEFAULT_COMMAND_TIMEOUT = 60.0


class Ordering(str, Enum):
    """Order of removals and additions within one pass."""
    REMOVE_FIRST = "remove-first"
    ADD_FIRST = "add-first"


class BatchConfig(BaseModel):
    """Command batching settings."""

    enabled: bool = True
    size: int = DEFAULT_BATCH_SIZE

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch size must be a positive number of bytes")
        return v


class RetryConfig(BaseModel):
    """Exponential backoff for batch execution."""

    max_attempts: int = 5
    base_delay: float = 0.8
    multiplier: float = 2.0
    max_delay: float = 30.0

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("base_delay", "max_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays cannot be negative")
        return v

    @field_validator("multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v < 1:
            raise ValueError("multiplier must be >= 1")
        return v


class SshConfig(BaseModel):
    """Remote host reached over SSH."""

    host: str
    port: int = DEFAULT_SSH_PORT
    key_path: Path

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip()
        if not v or v.startswith("-"):
            raise ValueError("SSH host must be given as user@host or host")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        try:
            return validate_port(v)
        except ParseError as e:
            raise ValueError(e.message) from e


class TuningConfig(BaseModel):
    """Loop tuning knobs, loadable from a YAML file."""

    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    resync_seconds: float = DEFAULT_RESYNC_SECONDS
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    ordering: Ordering = Ordering.REMOVE_FIRST
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("debounce_seconds", "resync_seconds", "command_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v < 0:
            raise ValueError("durations cannot be negative")
        return v

    @classmethod
    def load(cls, path: Path) -> "TuningConfig":
        """Load tuning from a YAML file.

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Omit --config to use built-in defaults",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {path}")

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration in {path}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "TuningConfig":
        if path is None:
            return cls()
        return cls.load(path)

    def to_yaml(self) -> str:
        """Convert tuning to YAML string."""
        data = self.model_dump(mode="json")
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class OperatorConfig(BaseModel):
    """Everything a reconciliation pass needs to know about the host."""

    interfaces: list[str]
    external_interface: Optional[str] = None
    batch: BatchConfig = Field(default_factory=BatchConfig)
    use_sudo: bool = True
    tuning: TuningConfig = Field(default_factory=TuningConfig)

    @field_validator("interfaces", mode="before")
    @classmethod
    def split_interfaces(cls, v: object) -> object:
        if isinstance(v, str):
            return [part for part in (p.strip() for p in v.split(",")) if part]
        return v

    @field_validator("interfaces")
    @classmethod
    def validate_interfaces(cls, v: list[str]) -> list[str]:
        names: list[str] = []
        for name in v:
            try:
                name = validate_interface(name)
            except ParseError as e:
                raise ValueError(e.message) from e
            if name not in names:
                names.append(name)
        return names

    @field_validator("external_interface")
    @classmethod
    def validate_external(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        try:
            return validate_interface(v)
        except ParseError as e:
            raise ValueError(e.message) from e

    @model_validator(mode="after")
    def require_interface(self) -> "OperatorConfig":
        if not self.interfaces:
            raise ValueError("at least one interface is required")
        return self

    @classmethod
    def build(cls, **values: object) -> "OperatorConfig":
        """Create a config, converting validation failures to ConfigurationError."""
        try:
            return cls(**values)
        except Exception as e:
            raise ConfigurationError(
                "Invalid operator configuration",
                details=[str(e)],
                hint="Check --interfaces and --external-interface",
            ) from e


class EpokSettings(BaseSettings):
    """Settings read from the environment only.

    CLI flags carry their own env fallbacks; these cover knobs that have no
    flag of their own.
    """

    model_config = SettingsConfigDict(env_prefix="EPOK_", extra="ignore")

    log_level: Optional[str] = None
    kubeconfig: Optional[Path] = None
    debounce_seconds: Optional[float] = None
    resync_seconds: Optional[float] = None

    def apply(self, tuning: TuningConfig) -> TuningConfig:
        """Return tuning with environment overrides applied."""
        overrides = {}
        if self.debounce_seconds is not None:
            overrides["debounce_seconds"] = self.debounce_seconds
        if self.resync_seconds is not None:
            overrides["resync_seconds"] = self.resync_seconds
        if not overrides:
            return tuning
        try:
            return TuningConfig(**{**tuning.model_dump(), **overrides})
        except Exception as e:
            raise ConfigurationError(
                "Invalid EPOK_* environment override",
                details=[str(e)],
            ) from e
