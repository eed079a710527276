"""Shared fixtures: a call-recording registry and a scripted probe."""

import socket
import threading

import pytest

from tether.probe import LivenessProbe, ProbeResult
from tether.registry import (
    HealthCheck,
    InMemoryRegistry,
    RegistrationRecord,
    RegistryError,
    start_registry_server,
)


class RecordingRegistry:
    """Registry capability that records every call in order.

    *fail* maps an operation name to the set of call numbers (1-based, per
    operation) that raise RegistryError; ``"*"`` fails every call.
    *hooks* maps an operation name to a callback run after a successful call.
    """

    def __init__(self, fail=None, hooks=None):
        self.calls: list[tuple] = []
        self.fail = fail or {}
        self.hooks = hooks or {}
        self._counts: dict[str, int] = {}

    def _call(self, op, *args):
        self.calls.append((op, *args))
        n = self._counts[op] = self._counts.get(op, 0) + 1
        failing = self.fail.get(op, ())
        if failing == "*" or n in failing:
            raise RegistryError(op, "connection refused")
        hook = self.hooks.get(op)
        if hook:
            hook(n)

    def register(self, record):
        self._call("register", record.service_id)

    def report_alive(self, service_id, note=""):
        self._call("alive", service_id, note)

    def report_failing(self, service_id, note=""):
        self._call("failing", service_id, note)

    def deregister(self, service_id):
        self._call("deregister", service_id)

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    def count(self, op: str) -> int:
        return self.ops().count(op)


class ScriptedProbe(LivenessProbe):
    """Returns a scripted sequence of results, then stays healthy."""

    def __init__(self, *results: bool):
        self.results = list(results)
        self.calls = 0

    def probe(self) -> ProbeResult:
        self.calls += 1
        if self.results:
            healthy = self.results.pop(0)
        else:
            healthy = True
        return ProbeResult(healthy, "OK" if healthy else "Process not running!")


@pytest.fixture
def record() -> RegistrationRecord:
    return RegistrationRecord(
        service_id="process-orders",
        name="process-orders",
        address="127.0.0.1",
        port=0,
        check=HealthCheck(ttl=15.0, name="Self-Check", notes="Self-healthcheck process"),
    )


@pytest.fixture
def memory_registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def registry_server(memory_registry):
    """Development registry on an ephemeral port; yields its base URL."""
    server = start_registry_server(memory_registry, host="127.0.0.1", port=0)
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def closed_port_url() -> str:
    """URL of a local port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}"


@pytest.fixture
def garbage_http_url():
    """URL of a local server that answers every request with a non-HTTP line."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    listener.settimeout(0.1)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            with conn:
                conn.settimeout(1)
                try:
                    conn.recv(65536)
                    conn.sendall(b"garbage\r\n\r\n")
                except OSError:
                    pass

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    port = listener.getsockname()[1]
    yield f"http://127.0.0.1:{port}"
    stop.set()
    thread.join(5)
    listener.close()
