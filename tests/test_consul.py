"""ConsulRegistryClient against the development registry server."""

import json
import threading
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from tether.registry import ConsulRegistryClient, RegistryError, ServiceStatus, status_from_health


@pytest.fixture
def client(registry_server):
    return ConsulRegistryClient(url=registry_server, timeout=5)


def test_register_report_deregister(client, record, memory_registry):
    client.register(record)
    assert memory_registry.get_service("process-orders").record == record

    client.report_alive("process-orders", "OK")
    health = client.get_service_health("process-orders")
    assert status_from_health(health) is ServiceStatus.PASSING
    assert health["Checks"][0]["Output"] == "OK"

    client.deregister("process-orders")
    assert client.get_service_health("process-orders") is None


def test_failing_report_is_visible_as_critical(client, record):
    client.register(record)
    client.report_failing("process-orders", "Process not running!")

    health = client.get_service_health("process-orders")
    assert status_from_health(health) is ServiceStatus.CRITICAL
    assert health["Checks"][0]["Output"] == "Process not running!"


def test_list_services(client, record):
    client.register(record)
    services = client.list_services()
    assert services["process-orders"]["Service"] == "process-orders"
    assert services["process-orders"]["Port"] == 0


def test_report_for_unregistered_service_raises(client):
    with pytest.raises(RegistryError) as excinfo:
        client.report_alive("ghost")
    assert "404" in str(excinfo.value)


def test_deregister_unknown_service_succeeds(client):
    client.deregister("ghost")


def test_unreachable_agent_raises_registry_error(closed_port_url, record):
    client = ConsulRegistryClient(url=closed_port_url, timeout=1)
    with pytest.raises(RegistryError) as excinfo:
        client.register(record)
    assert excinfo.value.operation == "register"
    with pytest.raises(RegistryError):
        client.get_service_health("process-orders")


def test_malformed_response_raises_registry_error(garbage_http_url):
    client = ConsulRegistryClient(url=garbage_http_url, timeout=2)
    with pytest.raises(RegistryError) as excinfo:
        client.report_alive("process-orders", "OK")
    assert excinfo.value.operation == "report pass"
    with pytest.raises(RegistryError):
        client.deregister("process-orders")
    with pytest.raises(RegistryError):
        client.get_service_health("process-orders")


@pytest.fixture
def unavailable_url():
    """Server answering every GET with 503 and a plain-text body."""

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            body = b"No cluster leader"
            self.send_response(503)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_unavailable_with_plain_text_body_raises_registry_error(unavailable_url):
    client = ConsulRegistryClient(url=unavailable_url, timeout=2)
    with pytest.raises(RegistryError) as excinfo:
        client.get_service_health("process-orders")
    assert "503" in str(excinfo.value)


def test_server_rejects_unparseable_deregister_after(client, registry_server, record):
    payload = record.to_consul()
    payload["Check"]["DeregisterCriticalServiceAfter"] = "soon"
    req = urllib.request.Request(
        f"{registry_server}/v1/agent/service/register",
        data=json.dumps(payload).encode(),
        method="PUT",
    )
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    with pytest.raises(urllib.error.HTTPError) as excinfo:
        opener.open(req, timeout=5)
    assert excinfo.value.code == 400

    assert client.list_services() == {}
    client.register(record)
    assert "process-orders" in client.list_services()
