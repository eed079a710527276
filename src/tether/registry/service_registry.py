#!/usr/bin/env python3
"""
Registration records and an in-process, Consul-compatible registry

This module provides:
- RegistrationRecord / HealthCheck: the entry this agent owns in the registry
- InMemoryRegistry: a dict-backed registry with TTL check expiry
- ConsulAgentHTTPHandler: the subset of the Consul agent HTTP API that
  ConsulRegistryClient speaks, served from an InMemoryRegistry
- start_registry_server: launches a ThreadingHTTPServer in a daemon thread
"""

import json
import re
import threading
import time
import urllib.parse
from dataclasses import dataclass, field, replace
from enum import Enum
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional


class ServiceStatus(Enum):
    """Check status, using Consul's vocabulary"""
    PASSING = "passing"
    WARNING = "warning"
    CRITICAL = "critical"


class RegistryError(Exception):
    """A registry call failed: unreachable, timed out, or rejected."""

    def __init__(self, operation: str, reason: Any):
        super().__init__(f"{operation} failed: {reason}")
        self.operation = operation
        self.reason = reason


class StartupRegistrationError(RegistryError):
    """Registration failed before any heartbeat was sent."""


# ---------------------------------------------------------------------------
# Durations (Go syntax, as Consul expects them)
# ---------------------------------------------------------------------------

_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def format_duration(seconds: float) -> str:
    """Render seconds as a Consul duration string (``15s``, ``1500ms``)."""
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{int(round(seconds * 1000))}ms"


def parse_duration(text: str) -> float:
    """Parse a Consul/Go duration string such as ``1m30s`` into seconds."""
    text = text.strip()
    if not text:
        raise ValueError("empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {text!r}")
    return total


# ---------------------------------------------------------------------------
# Registration record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HealthCheck:
    """TTL health-check descriptor attached to a registration."""
    ttl: float = 15.0
    name: str = "Self-Check"
    notes: str = "Self-healthcheck process"
    deregister_critical_after: Optional[str] = None

    def __post_init__(self):
        # Rejected up front so expire() never meets an unparseable value
        if self.deregister_critical_after:
            if not isinstance(self.deregister_critical_after, str):
                raise TypeError("deregister_critical_after must be a duration string")
            parse_duration(self.deregister_critical_after)


@dataclass(frozen=True)
class RegistrationRecord:
    """The entry this process owns in the registry.

    Port 0 means the service is not network-addressable.
    """
    service_id: str
    name: str
    address: str
    port: int = 0
    check: HealthCheck = field(default_factory=HealthCheck)
    tags: tuple[str, ...] = ()
    meta: Dict[str, str] = field(default_factory=dict)

    @property
    def check_id(self) -> str:
        return f"service:{self.service_id}"

    def to_consul(self) -> Dict[str, Any]:
        """Convert to the JSON body of ``PUT /v1/agent/service/register``."""
        check: Dict[str, Any] = {
            "CheckID": self.check_id,
            "Name": self.check.name,
            "Notes": self.check.notes,
            "TTL": format_duration(self.check.ttl),
        }
        if self.check.deregister_critical_after:
            check["DeregisterCriticalServiceAfter"] = self.check.deregister_critical_after
        return {
            "ID": self.service_id,
            "Name": self.name,
            "Address": self.address,
            "Port": self.port,
            "Tags": list(self.tags),
            "Meta": dict(self.meta),
            "Check": check,
        }

    @classmethod
    def from_consul(cls, data: Dict[str, Any]) -> 'RegistrationRecord':
        """Create from a Consul service registration body."""
        raw_check = data.get("Check") or {}
        check = HealthCheck(
            ttl=parse_duration(raw_check["TTL"]) if raw_check.get("TTL") else HealthCheck.ttl,
            name=raw_check.get("Name", HealthCheck.name),
            notes=raw_check.get("Notes", HealthCheck.notes),
            deregister_critical_after=raw_check.get("DeregisterCriticalServiceAfter"),
        )
        name = data.get("Name") or data["ID"]
        return cls(
            service_id=data.get("ID") or name,
            name=name,
            address=data.get("Address", ""),
            port=int(data.get("Port", 0)),
            check=check,
            tags=tuple(data.get("Tags") or ()),
            meta=dict(data.get("Meta") or {}),
        )


@dataclass
class ServiceEntry:
    """Registry-side state for one registration."""
    record: RegistrationRecord
    status: ServiceStatus = ServiceStatus.CRITICAL
    output: str = ""
    last_report: Optional[float] = None
    critical_since: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a Consul ``/v1/agent/health/service/id`` body."""
        service = self.record.to_consul()
        service.pop("Check")
        service["Service"] = service.pop("Name")
        return {
            "AggregatedStatus": self.status.value,
            "Service": service,
            "Checks": [{
                "CheckID": self.record.check_id,
                "Name": self.record.check.name,
                "Notes": self.record.check.notes,
                "Status": self.status.value,
                "Output": self.output,
                "ServiceID": self.record.service_id,
            }],
        }


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------

class InMemoryRegistry:
    """Thread-safe, dict-backed registry with Consul TTL semantics.

    New checks start critical, as in Consul, until the first pass report.
    ``expire()`` flips checks whose TTL lapsed to critical and removes
    entries that stayed critical past their deregister-critical-after.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._services: Dict[str, ServiceEntry] = {}
        self._clock = clock

    def register(self, record: RegistrationRecord) -> None:
        now = self._clock()
        with self._lock:
            # Re-registration replaces the record and resets the check
            self._services[record.service_id] = ServiceEntry(
                record=record, critical_since=now,
            )

    def deregister(self, service_id: str) -> None:
        # Consul treats deregistering an unknown service as success
        with self._lock:
            self._services.pop(service_id, None)

    def report_alive(self, service_id: str, note: str = "") -> None:
        self._update(service_id, ServiceStatus.PASSING, note)

    def report_warning(self, service_id: str, note: str = "") -> None:
        self._update(service_id, ServiceStatus.WARNING, note)

    def report_failing(self, service_id: str, note: str = "") -> None:
        self._update(service_id, ServiceStatus.CRITICAL, note)

    def _update(self, service_id: str, status: ServiceStatus, note: str) -> None:
        now = self._clock()
        with self._lock:
            entry = self._services.get(service_id)
            if entry is None:
                raise RegistryError(f"report {status.value}", f"unknown service {service_id!r}")
            if status is ServiceStatus.CRITICAL:
                if entry.status is not ServiceStatus.CRITICAL:
                    entry.critical_since = now
            else:
                entry.critical_since = None
            entry.status = status
            entry.output = note
            entry.last_report = now

    def expire(self) -> List[str]:
        """Apply TTL expiry. Returns the ids of entries removed."""
        now = self._clock()
        removed = []
        with self._lock:
            for sid, entry in list(self._services.items()):
                check = entry.record.check
                if entry.status is not ServiceStatus.CRITICAL:
                    if entry.last_report is not None and now - entry.last_report > check.ttl:
                        entry.status = ServiceStatus.CRITICAL
                        entry.output = "TTL expired"
                        entry.critical_since = entry.last_report + check.ttl
                if (
                    entry.status is ServiceStatus.CRITICAL
                    and check.deregister_critical_after
                    and entry.critical_since is not None
                    and now - entry.critical_since > parse_duration(check.deregister_critical_after)
                ):
                    del self._services[sid]
                    removed.append(sid)
        return removed

    def get_service(self, service_id: str) -> Optional[ServiceEntry]:
        with self._lock:
            entry = self._services.get(service_id)
            return replace(entry) if entry else None

    def list_services(self, status_filter: Optional[ServiceStatus] = None) -> List[ServiceEntry]:
        with self._lock:
            return [
                replace(e) for e in self._services.values()
                if status_filter is None or e.status is status_filter
            ]


# ---------------------------------------------------------------------------
# HTTP handler (Consul agent API subset served from an InMemoryRegistry)
# ---------------------------------------------------------------------------

_HEALTH_HTTP_STATUS = {
    ServiceStatus.PASSING: 200,
    ServiceStatus.WARNING: 429,
    ServiceStatus.CRITICAL: 503,
}

_CHECK_UPDATES = {
    "pass": InMemoryRegistry.report_alive,
    "warn": InMemoryRegistry.report_warning,
    "fail": InMemoryRegistry.report_failing,
}


def _make_handler(registry: InMemoryRegistry):
    """Create a handler class bound to the given registry instance."""

    class ConsulAgentHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            # Silence default stderr logging
            pass

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _read_json(self) -> Any:
            length = int(self.headers.get("Content-Length") or 0)
            raw = self.rfile.read(length) if length else b""
            return json.loads(raw.decode()) if raw else {}

        def do_PUT(self):
            parsed = urllib.parse.urlparse(self.path)
            path = parsed.path.rstrip("/")
            qs = urllib.parse.parse_qs(parsed.query)

            if path == "/v1/agent/service/register":
                try:
                    record = RegistrationRecord.from_consul(self._read_json())
                except (ValueError, KeyError, TypeError, AttributeError) as exc:
                    self._json_response({"error": f"invalid registration: {exc}"}, status=400)
                    return
                registry.register(record)
                self._json_response(None)

            elif path.startswith("/v1/agent/service/deregister/"):
                registry.deregister(urllib.parse.unquote(path.rsplit("/", 1)[1]))
                self._json_response(None)

            elif path.startswith("/v1/agent/check/"):
                parts = path[len("/v1/agent/check/"):].split("/", 1)
                update = _CHECK_UPDATES.get(parts[0])
                if update is None or len(parts) != 2:
                    self._json_response({"error": "not found"}, status=404)
                    return
                check_id = urllib.parse.unquote(parts[1])
                note = qs.get("note", [""])[0]
                try:
                    update(registry, check_id.removeprefix("service:"), note)
                except RegistryError as exc:
                    self._json_response({"error": str(exc)}, status=404)
                    return
                self._json_response(None)

            else:
                self._json_response({"error": "not found"}, status=404)

        def do_GET(self):
            parsed = urllib.parse.urlparse(self.path)
            path = parsed.path.rstrip("/")
            registry.expire()

            if path == "/v1/agent/services":
                services = {}
                for entry in registry.list_services():
                    services[entry.record.service_id] = entry.to_dict()["Service"]
                self._json_response(services)

            elif path.startswith("/v1/agent/health/service/id/"):
                service_id = urllib.parse.unquote(path.rsplit("/", 1)[1])
                entry = registry.get_service(service_id)
                if entry:
                    self._json_response(entry.to_dict(), status=_HEALTH_HTTP_STATUS[entry.status])
                else:
                    self._json_response({"error": "not found"}, status=404)

            else:
                self._json_response({"error": "not found"}, status=404)

    return ConsulAgentHTTPHandler


def start_registry_server(
    registry: InMemoryRegistry,
    host: str = "127.0.0.1",
    port: int = 8500,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    handler = _make_handler(registry)
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server
