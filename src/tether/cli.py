"""CLI entry point for tether."""

import argparse
import json
import logging
import signal
import sys
import threading

from .agent import build_agent, install_signal_handlers
from .config import AgentConfig, config_to_yaml, load_config, merge_cli_args, validate_config
from .lifecycle import StopReason
from .registry import (
    ConsulRegistryClient,
    InMemoryRegistry,
    RegistryError,
    StartupRegistrationError,
    start_registry_server,
    status_from_health,
)
from .unit import generate_unit


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(stream=sys.stderr, level=level.upper(), format=LOG_FORMAT, force=True)


def _meta_pair(value: str) -> tuple[str, str]:
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key, val


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by the run and config subcommands."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--service-id", type=str, dest="service_id", help="Registry service id")
    parser.add_argument(
        "--service-name", type=str, dest="service_name",
        help="Display name (default: the service id)",
    )
    parser.add_argument(
        "--address", type=str,
        help="Advertised address, or 'auto' to use the first non-loopback IPv4 address",
    )
    parser.add_argument("--port", type=int, help="Advertised port (0: not network-addressable)")
    parser.add_argument(
        "--tag", type=str, action="append", dest="tags",
        help="Service tag (repeatable)",
    )
    parser.add_argument(
        "--meta", type=_meta_pair, action="append", metavar="KEY=VALUE",
        help="Service metadata entry (repeatable)",
    )
    parser.add_argument("--ttl", type=float, help="TTL of the health check in seconds (default: 15)")
    parser.add_argument("--interval", type=float, help="Heartbeat interval in seconds (default: 10)")
    parser.add_argument(
        "--request-timeout", type=float, dest="request_timeout",
        help="Timeout for each registry call in seconds (default: 5)",
    )
    parser.add_argument(
        "--probe-timeout", type=float, dest="probe_timeout",
        help="Timeout for each probe evaluation in seconds (default: 2)",
    )
    parser.add_argument("--check-name", type=str, dest="check_name", help="Health check name")
    parser.add_argument("--check-notes", type=str, dest="check_notes", help="Health check notes")
    parser.add_argument(
        "--deregister-critical-after", type=str, dest="deregister_critical_after",
        help="Let the registry remove the service after being critical this long (e.g. 1m)",
    )
    parser.add_argument(
        "--max-rss-mb", type=int, dest="max_rss_mb",
        help="Report failing once resident memory exceeds this many MiB",
    )
    parser.add_argument(
        "--consul-url", type=str, dest="consul_url",
        help="Consul agent HTTP API (default: http://localhost:8500)",
    )
    parser.add_argument(
        "--consul-token", type=str, dest="consul_token",
        help="Consul ACL token (default: $CONSUL_HTTP_TOKEN)",
    )
    parser.add_argument(
        "--log-level", type=str.upper, dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )


def _build_config(args) -> AgentConfig:
    """Build an AgentConfig from a config file + CLI overrides, then validate it."""
    if args.config:
        config = load_config(args.config)
    else:
        config = AgentConfig()
    if args.meta is not None:
        args.meta = dict(args.meta)
    merge_cli_args(config, args)
    try:
        validate_config(config)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    return config


# ---------------------------------------------------------------------------
# tether run / config / unit
# ---------------------------------------------------------------------------

def cmd_run(args) -> None:
    """Register, heartbeat until stopped or unhealthy, deregister."""
    config = _build_config(args)
    _configure_logging(config.log_level)

    agent = build_agent(config)
    install_signal_handlers(agent)

    try:
        reason = agent.run()
    except StartupRegistrationError as exc:
        print(f"Error: could not register {config.service_id}: {exc}", file=sys.stderr)
        sys.exit(1)

    if reason is StopReason.UNHEALTHY:
        sys.exit(1)


def cmd_config(args) -> None:
    """Print the effective configuration as YAML."""
    config = _build_config(args)
    print(config_to_yaml(config), end="")


def cmd_unit(args) -> None:
    """Print a systemd unit that runs the agent with the given config file."""
    config = _build_config(args)
    print(generate_unit(config, args.config, user=args.user), end="")


# ---------------------------------------------------------------------------
# tether registry subcommand
# ---------------------------------------------------------------------------

def _client(args) -> ConsulRegistryClient:
    return ConsulRegistryClient(url=args.consul_url, token=args.consul_token)


def cmd_registry_serve(args) -> None:
    """Serve an in-memory registry over the Consul agent API until interrupted."""
    _configure_logging(args.log_level)
    server = start_registry_server(InMemoryRegistry(), host=args.host, port=args.port)
    print(f"Registry server listening on {args.host}:{args.port}", file=sys.stderr)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    stop.wait()

    server.shutdown()
    server.server_close()
    print("Registry server stopped.", file=sys.stderr)


def cmd_registry_list(args) -> None:
    try:
        services = _client(args).list_services()
    except RegistryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(services, indent=2))
        return
    if not services:
        print("(no services)")
        return
    for sid, svc in sorted(services.items()):
        print(f"{sid}  {svc.get('Service', sid)}  {svc.get('Address', '')}:{svc.get('Port', 0)}")


def cmd_registry_status(args) -> None:
    try:
        health = _client(args).get_service_health(args.service_id)
    except RegistryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if health is None:
        print(f"Service '{args.service_id}' not found.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(health, indent=2))
        return
    print(f"{args.service_id}  {status_from_health(health).value}")
    for check in health.get("Checks", []):
        output = check.get("Output") or ""
        print(f"  {check.get('CheckID')}  {check.get('Status')}  {output}".rstrip())


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --consul-url, --consul-token and --format to a registry sub-parser."""
    parser.add_argument(
        "--consul-url", type=str, dest="consul_url", default="http://localhost:8500",
        help="Consul agent HTTP API (default: http://localhost:8500)",
    )
    parser.add_argument(
        "--consul-token", type=str, dest="consul_token", default=None,
        help="Consul ACL token",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="tether",
        description="tether: self-registering liveness agent for Consul",
    )
    subparsers = parser.add_subparsers(dest="command")

    # run
    run_parser = subparsers.add_parser(
        "run", help="Register with Consul and heartbeat until stopped",
    )
    _add_common_args(run_parser)
    run_parser.set_defaults(func=cmd_run)

    # config
    config_parser = subparsers.add_parser(
        "config", help="Print the effective configuration as YAML",
    )
    _add_common_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    # unit
    unit_parser = subparsers.add_parser(
        "unit", help="Print a systemd unit for running the agent",
    )
    _add_common_args(unit_parser)
    unit_parser.add_argument("--user", type=str, default=None, help="User to run the service as")
    unit_parser.set_defaults(func=cmd_unit)

    # registry
    registry_parser = subparsers.add_parser(
        "registry", help="Query Consul or serve a local development registry",
    )
    registry_sub = registry_parser.add_subparsers(dest="registry_command")

    # registry serve
    reg_serve = registry_sub.add_parser(
        "serve", help="Serve an in-memory registry speaking the Consul agent API",
    )
    reg_serve.add_argument("--host", type=str, default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    reg_serve.add_argument("--port", type=int, default=8500, help="Bind port (default: 8500)")
    reg_serve.add_argument("--log-level", type=str.upper, dest="log_level", default="INFO",
                           choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    reg_serve.set_defaults(func=cmd_registry_serve)

    # registry list
    reg_list = registry_sub.add_parser("list", help="List services registered with the agent")
    _add_registry_args(reg_list)
    reg_list.set_defaults(func=cmd_registry_list)

    # registry status
    reg_status = registry_sub.add_parser("status", help="Show the health of one service")
    _add_registry_args(reg_status)
    reg_status.add_argument("service_id", type=str, help="Service identifier")
    reg_status.set_defaults(func=cmd_registry_status)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "registry" and not args.registry_command:
        registry_parser.print_help()
        sys.exit(1)

    if args.command == "unit" and not args.config:
        print("Error: --config is required for 'tether unit'.", file=sys.stderr)
        sys.exit(1)

    args.func(args)
