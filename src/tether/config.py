"""Configuration loading, merging and validation for tether."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .registry import parse_duration


# Value of ``address`` that asks the agent to discover its own IPv4 address
AUTO_ADDRESS = "auto"


@dataclass
class AgentConfig:
    # Registration record
    service_id: str = "process-orders"
    service_name: Optional[str] = None
    address: str = "127.0.0.1"
    port: int = 0
    tags: list[str] = field(default_factory=list)
    meta: dict[str, str] = field(default_factory=dict)

    # TTL health check
    ttl: float = 15.0
    check_name: str = "Self-Check"
    check_notes: str = "Self-healthcheck process"
    deregister_critical_after: Optional[str] = None

    # Liveness loop (seconds)
    interval: float = 10.0
    request_timeout: float = 5.0
    probe_timeout: float = 2.0

    # Optional resident memory ceiling for the memory probe
    max_rss_mb: Optional[int] = None

    # Consul agent HTTP API
    consul_url: str = "http://localhost:8500"
    consul_token: Optional[str] = None

    log_level: str = "INFO"

    @property
    def display_name(self) -> str:
        """Name advertised to the registry (defaults to the service id)."""
        return self.service_name or self.service_id


def load_config(path: str | Path) -> AgentConfig:
    """Load an AgentConfig from a YAML file. Unknown keys are ignored."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(AgentConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return AgentConfig(**filtered)


def merge_cli_args(config: AgentConfig, args) -> AgentConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(AgentConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def resolve_consul_token(config: AgentConfig) -> str | None:
    """Return the Consul ACL token from config or environment."""
    return config.consul_token or os.environ.get("CONSUL_HTTP_TOKEN")


# Numeric fields and their types; YAML may hand these over as strings
_NUMERIC_FIELDS = {
    "port": int,
    "ttl": float,
    "interval": float,
    "request_timeout": float,
    "probe_timeout": float,
    "max_rss_mb": int,
}


def _coerce_numbers(config: AgentConfig) -> None:
    """Convert numeric fields in place, raising ValueError on non-numbers."""
    for name, kind in _NUMERIC_FIELDS.items():
        value = getattr(config, name)
        if value is None and name == "max_rss_mb":
            continue
        if isinstance(value, bool):
            raise ValueError(f"{name} must be a number (got {value!r})")
        try:
            setattr(config, name, kind(value))
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be a number (got {value!r})") from None


def validate_config(config: AgentConfig) -> None:
    """Raise ValueError if the timing or addressing settings are inconsistent.

    Numeric fields given as strings (``interval: "10"``) are converted first.

    Every registry call must finish well inside one heartbeat interval, and
    a heartbeat must land inside every TTL window, otherwise the registry
    flaps the check to critical between reports.
    """
    _coerce_numbers(config)
    if not config.service_id:
        raise ValueError("service_id must not be empty")
    if config.interval <= 0:
        raise ValueError(f"interval must be positive (got {config.interval})")
    if config.ttl <= config.interval:
        raise ValueError(
            f"ttl ({config.ttl}s) must be longer than interval ({config.interval}s)"
        )
    if not 0 < config.request_timeout < config.interval:
        raise ValueError(
            f"request_timeout ({config.request_timeout}s) must be positive and "
            f"shorter than interval ({config.interval}s)"
        )
    if not 0 < config.probe_timeout < config.interval:
        raise ValueError(
            f"probe_timeout ({config.probe_timeout}s) must be positive and "
            f"shorter than interval ({config.interval}s)"
        )
    if not 0 <= config.port <= 65535:
        raise ValueError(f"port must be between 0 and 65535 (got {config.port})")
    if config.max_rss_mb is not None and config.max_rss_mb <= 0:
        raise ValueError(f"max_rss_mb must be positive (got {config.max_rss_mb})")
    if config.deregister_critical_after:
        try:
            parse_duration(str(config.deregister_critical_after))
        except ValueError as exc:
            raise ValueError(f"deregister_critical_after: {exc}") from None


def config_to_yaml(config: AgentConfig) -> str:
    """Serialize an AgentConfig to YAML, omitting unset optional fields."""
    data: dict = {}

    data["service_id"] = config.service_id
    if config.service_name:
        data["service_name"] = config.service_name
    data["address"] = config.address
    data["port"] = config.port
    if config.tags:
        data["tags"] = list(config.tags)
    if config.meta:
        data["meta"] = dict(config.meta)

    data["ttl"] = config.ttl
    data["check_name"] = config.check_name
    data["check_notes"] = config.check_notes
    if config.deregister_critical_after:
        data["deregister_critical_after"] = config.deregister_critical_after

    data["interval"] = config.interval
    data["request_timeout"] = config.request_timeout
    data["probe_timeout"] = config.probe_timeout
    if config.max_rss_mb is not None:
        data["max_rss_mb"] = config.max_rss_mb

    data["consul_url"] = config.consul_url
    # The ACL token is a secret: never written back out
    data["log_level"] = config.log_level

    return yaml.dump(data, default_flow_style=False, sort_keys=False)
