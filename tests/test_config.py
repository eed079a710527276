"""Configuration loading, merging and validation."""

import argparse

import pytest
import yaml

from tether.config import (
    AgentConfig,
    config_to_yaml,
    load_config,
    merge_cli_args,
    resolve_consul_token,
    validate_config,
)


def test_defaults_match_reference_deployment():
    config = AgentConfig()
    assert config.service_id == "process-orders"
    assert config.display_name == "process-orders"
    assert config.address == "127.0.0.1"
    assert config.port == 0
    assert config.ttl == 15.0
    assert config.interval == 10.0
    assert config.check_name == "Self-Check"
    validate_config(config)


def test_load_config_ignores_unknown_keys(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text(
        "service_id: orders\n"
        "port: 8080\n"
        "tags: [blue]\n"
        "meta: {team: core}\n"
        "unknown_key: 1\n"
    )
    config = load_config(path)
    assert config.service_id == "orders"
    assert config.port == 8080
    assert config.tags == ["blue"]
    assert config.meta == {"team": "core"}


def test_load_empty_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == AgentConfig()


def test_cli_args_take_precedence():
    config = AgentConfig(service_id="from-file", port=1)
    args = argparse.Namespace(service_id="from-cli", port=None, interval=5.0)
    merge_cli_args(config, args)
    assert config.service_id == "from-cli"
    assert config.port == 1
    assert config.interval == 5.0


def test_token_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("CONSUL_HTTP_TOKEN", "env-token")
    assert resolve_consul_token(AgentConfig()) == "env-token"
    assert resolve_consul_token(AgentConfig(consul_token="cfg-token")) == "cfg-token"


@pytest.mark.parametrize("overrides, message", [
    ({"service_id": ""}, "service_id"),
    ({"interval": 0}, "interval must be positive"),
    ({"ttl": 10.0}, "ttl"),
    ({"request_timeout": 10.0}, "request_timeout"),
    ({"request_timeout": 0}, "request_timeout"),
    ({"probe_timeout": 12.0}, "probe_timeout"),
    ({"port": 70000}, "port"),
    ({"max_rss_mb": 0}, "max_rss_mb"),
])
def test_validate_rejects(overrides, message):
    with pytest.raises(ValueError, match=message):
        validate_config(AgentConfig(**overrides))


def test_config_to_yaml_round_trips_without_token(tmp_path):
    config = AgentConfig(service_id="orders", tags=["blue"], max_rss_mb=256, consul_token="secret")
    text = config_to_yaml(config)

    assert "secret" not in text
    data = yaml.safe_load(text)
    assert data["service_id"] == "orders"
    assert data["max_rss_mb"] == 256
    assert "service_name" not in data

    path = tmp_path / "agent.yaml"
    path.write_text(text)
    loaded = load_config(path)
    assert loaded.tags == ["blue"]
    assert loaded.consul_token is None


def test_quoted_numbers_from_yaml_are_converted(tmp_path):
    path = tmp_path / "agent.yaml"
    path.write_text('interval: "10"\nttl: "15"\nport: "8080"\n')
    config = load_config(path)
    validate_config(config)
    assert config.interval == 10.0
    assert config.ttl == 15.0
    assert config.port == 8080
    assert isinstance(config.port, int)


@pytest.mark.parametrize("overrides, message", [
    ({"interval": "ten"}, "interval must be a number"),
    ({"ttl": None}, "ttl must be a number"),
    ({"port": True}, "port must be a number"),
    ({"max_rss_mb": "lots"}, "max_rss_mb must be a number"),
    ({"deregister_critical_after": "soon"}, "deregister_critical_after"),
])
def test_validate_rejects_malformed_values(overrides, message):
    with pytest.raises(ValueError, match=message):
        validate_config(AgentConfig(**overrides))
