"""
Configuration management for deplorch.

Loads $DEPLORCH_HOME/config.yaml (default ~/.config/deplorch/config.yaml)
into a DeplorchConfig. Every field has a default, so an empty file is a
valid configuration; unknown keys are rejected.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from deplorch.schemas import MAX_ATTEMPTS


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_deplorch_home() -> Path:
    """Return the deplorch home directory ($DEPLORCH_HOME or ~/.config/deplorch)."""
    env_home = os.environ.get("DEPLORCH_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/deplorch").expanduser()


@dataclass
class DeplorchConfig:
    """Settings for one deplorch installation."""

    # Source control
    default_branch: str = "main"
    remote: str = "origin"
    protected_paths: list[str] = field(default_factory=lambda: [".platform/"])

    # Build phase
    build_poll_interval: float = 10.0
    build_timeout: float = 900.0
    build_max_attempts: int = 3

    # Deploy phase
    rollout_poll_interval: float = 5.0
    rollout_timeout: float = 180.0
    probe_timeout: float = 10.0
    probe_attempts: int = 3
    probe_backoff: float = 5.0

    # Domain phase
    domain_attempts: int = 3
    domain_backoff: float = 30.0
    domain_verification_prefix: str = "_deplorch-challenge"

    # Storage and logging
    sessions_dir: Optional[str] = None
    log_file: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "pretty"

    # Collaborators
    github_repository: Optional[str] = None
    github_token_env: str = "GITHUB_TOKEN"
    github_api_url: str = "https://api.github.com"
    kube_namespace: str = "default"
    kube_context: Optional[str] = None
    doh_url: str = "https://cloudflare-dns.com/dns-query"
    corrector_command: Optional[str] = None
    env_file: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Validate ranges and enums.

        Raises:
            ConfigError: If a value is out of range
        """
        for name in ("build_max_attempts", "probe_attempts"):
            if not 1 <= int(getattr(self, name)) <= MAX_ATTEMPTS:
                raise ConfigError(f"{name} must be between 1 and {MAX_ATTEMPTS}")
        if int(self.domain_attempts) < 1:
            raise ConfigError("domain_attempts must be >= 1")
        for name in (
            "build_poll_interval", "build_timeout", "rollout_poll_interval", "rollout_timeout",
            "probe_timeout", "probe_backoff", "domain_backoff",
        ):
            if float(getattr(self, name)) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.log_format not in ("pretty", "structured"):
            raise ConfigError(f"log_format must be 'pretty' or 'structured', got {self.log_format!r}")
        if not isinstance(self.protected_paths, list):
            raise ConfigError("protected_paths must be a list")

    def get_sessions_dir(self) -> Path:
        if self.sessions_dir:
            return Path(self.sessions_dir).expanduser()
        return get_deplorch_home() / "sessions"

    def get_log_file_path(self) -> Path:
        if self.log_file:
            return Path(self.log_file).expanduser()
        return get_deplorch_home() / "logs" / "deplorch.log"

    def github_token(self) -> Optional[str]:
        return os.environ.get(self.github_token_env)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeplorchConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(config_path: Optional[Path] = None) -> DeplorchConfig:
    """
    Load deplorch configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $DEPLORCH_HOME/config.yaml

    Returns:
        DeplorchConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_deplorch_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"deplorch config.yaml not found at {config_path}; run 'deplorch init'")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    config = DeplorchConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    return config
