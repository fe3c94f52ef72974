"""
Configuration management for kubeseq.

Loads $KUBESEQ_HOME/config.yaml (default ~/.config/kubeseq/config.yaml),
optionally loads an env file, and applies environment overrides.
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from kubeseq.errors import ConfigurationError


DEFAULT_HOME = "~/.config/kubeseq"

LOG_FORMATS = ("pretty", "structured")

_NUMBER_FIELDS = (
    "poll_interval_seconds",
    "apply_backoff_seconds",
    "request_timeout_seconds",
    "deletion_timeout_seconds",
)
_STRING_FIELDS = ("namespace", "field_manager", "log_level", "log_format")
_OPTIONAL_STRING_FIELDS = ("kubeconfig", "context", "log_file", "env_file")


class ConfigError(ConfigurationError):
    """Configuration validation error."""
    pass


def get_kubeseq_home() -> Path:
    """Return the kubeseq configuration directory."""
    home = os.environ.get("KUBESEQ_HOME")
    if home:
        return Path(home).expanduser()
    return Path(DEFAULT_HOME).expanduser()


@dataclass
class KubeseqConfig:
    """
    Runtime configuration.

    Attributes:
        kubeconfig: Path to a kubeconfig file (None = default lookup / in-cluster)
        context: kubeconfig context to use (None = current context)
        namespace: Fallback namespace for plans that declare none
        field_manager: Server-side apply field manager name
        poll_interval_seconds: Readiness poll interval
        apply_attempts: Attempts per document on transport errors
        apply_backoff_seconds: Initial backoff between apply attempts
        request_timeout_seconds: Timeout for each API request
        deletion_timeout_seconds: How long cleanup waits for deleted objects to disappear
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "pretty" (rich console) or "structured" (JSON lines)
        log_file: Optional log file path
        env_file: Optional dotenv file loaded before overrides
    """
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    namespace: str = "default"
    field_manager: str = "kubeseq"
    poll_interval_seconds: float = 2.0
    apply_attempts: int = 3
    apply_backoff_seconds: float = 1.0
    request_timeout_seconds: float = 30.0
    deletion_timeout_seconds: float = 120.0
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def check_types(self) -> None:
        """Reject values of the wrong type (e.g. a quoted number in YAML)."""
        for name in _NUMBER_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number, got {value!r}")
        if isinstance(self.apply_attempts, bool) or not isinstance(self.apply_attempts, int):
            raise ConfigError(f"apply_attempts must be an integer, got {self.apply_attempts!r}")
        for name in _STRING_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ConfigError(f"{name} must be a string, got {value!r}")
        for name in _OPTIONAL_STRING_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{name} must be a string, got {value!r}")

    def validate(self) -> None:
        """Validate configuration values."""
        self.check_types()
        if not self.namespace:
            raise ConfigError("namespace must be non-empty")
        if not self.field_manager:
            raise ConfigError("field_manager must be non-empty")
        if not 2.0 <= self.poll_interval_seconds <= 5.0:
            # Fixed interval band for readiness polling
            raise ConfigError(
                f"poll_interval_seconds must be between 2 and 5, got {self.poll_interval_seconds}"
            )
        if self.apply_attempts < 1:
            raise ConfigError(f"apply_attempts must be >= 1, got {self.apply_attempts}")
        if self.apply_backoff_seconds < 0:
            raise ConfigError(f"apply_backoff_seconds must be >= 0, got {self.apply_backoff_seconds}")
        if self.request_timeout_seconds <= 0:
            raise ConfigError(f"request_timeout_seconds must be > 0, got {self.request_timeout_seconds}")
        if self.deletion_timeout_seconds < 0:
            raise ConfigError(f"deletion_timeout_seconds must be >= 0, got {self.deletion_timeout_seconds}")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ConfigError(f"Unknown log_level: {self.log_level}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {LOG_FORMATS}, got {self.log_format}")

    def apply_env_overrides(self) -> None:
        """Apply KUBESEQ_* / KUBECONFIG environment overrides."""
        if os.environ.get("KUBESEQ_NAMESPACE"):
            self.namespace = os.environ["KUBESEQ_NAMESPACE"]
        if os.environ.get("KUBESEQ_CONTEXT"):
            self.context = os.environ["KUBESEQ_CONTEXT"]
        if os.environ.get("KUBECONFIG") and not self.kubeconfig:
            self.kubeconfig = os.environ["KUBECONFIG"]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KubeseqConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        cfg = cls(**data)
        cfg.check_types()
        return cfg


def load_config(config_path: Optional[Path] = None) -> KubeseqConfig:
    """
    Load kubeseq configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $KUBESEQ_HOME/config.yaml

    Returns:
        KubeseqConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_kubeseq_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"kubeseq config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    cfg = KubeseqConfig.from_dict(data)

    if cfg.env_file:
        env_path = Path(cfg.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    cfg.apply_env_overrides()
    cfg.validate()
    return cfg


def default_config() -> KubeseqConfig:
    """Defaults plus environment overrides, used when no config file exists."""
    cfg = KubeseqConfig()
    cfg.apply_env_overrides()
    return cfg
