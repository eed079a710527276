"""HTTP client for the Consul agent API."""

import http.client
import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from .service_registry import RegistrationRecord, RegistryError, ServiceStatus


class ConsulRegistryClient:
    """Thin client for the local Consul agent.

    Every call is bounded by *timeout* seconds. Transport failures, timeouts
    and non-2xx responses are raised as RegistryError.
    """

    def __init__(
        self,
        url: str = "http://localhost:8500",
        token: Optional[str] = None,
        timeout: float = 5.0,
    ):
        self._base = url.rstrip("/")
        self._token = token
        self.timeout = timeout
        # The agent is local; bypass http_proxy env vars
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _request(self, operation: str, method: str, path: str, body: Any = None) -> Any:
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(f"{self._base}{path}", data=data, method=method)
        if data is not None:
            req.add_header("Content-Type", "application/json")
        if self._token:
            req.add_header("X-Consul-Token", self._token)
        try:
            with self._opener.open(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode(errors="replace").strip()
            raise RegistryError(operation, f"HTTP {exc.code} {detail}".strip()) from exc
        except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
            raise RegistryError(operation, getattr(exc, "reason", exc)) from exc
        if not raw.strip():
            return None
        try:
            return json.loads(raw.decode())
        except ValueError:
            return raw.decode()

    # -- registry capability ------------------------------------------------

    def register(self, record: RegistrationRecord) -> None:
        self._request("register", "PUT", "/v1/agent/service/register", record.to_consul())

    def report_alive(self, service_id: str, note: str = "") -> None:
        self._update_ttl("pass", service_id, note)

    def report_failing(self, service_id: str, note: str = "") -> None:
        self._update_ttl("fail", service_id, note)

    def deregister(self, service_id: str) -> None:
        quoted = urllib.parse.quote(service_id, safe="")
        self._request("deregister", "PUT", f"/v1/agent/service/deregister/{quoted}")

    def _update_ttl(self, verb: str, service_id: str, note: str) -> None:
        check_id = urllib.parse.quote(f"service:{service_id}", safe="")
        qs = urllib.parse.urlencode({"note": note}) if note else ""
        path = f"/v1/agent/check/{verb}/{check_id}"
        self._request(f"report {verb}", "PUT", f"{path}?{qs}" if qs else path)

    # -- queries ------------------------------------------------------------

    def list_services(self) -> Dict[str, Dict[str, Any]]:
        """Return the agent's services keyed by service id."""
        return self._request("list services", "GET", "/v1/agent/services") or {}

    def get_service_health(self, service_id: str) -> Optional[Dict[str, Any]]:
        """Return the aggregated health body for *service_id*, or None if unknown.

        The agent answers 429 for warning and 503 for critical with the same
        body as a 200, so those are not errors here.
        """
        quoted = urllib.parse.quote(service_id, safe="")
        url = f"{self._base}/v1/agent/health/service/id/{quoted}"
        req = urllib.request.Request(url, method="GET")
        if self._token:
            req.add_header("X-Consul-Token", self._token)
        try:
            with self._opener.open(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode())
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                return None
            if exc.code in (429, 503):
                try:
                    return json.loads(exc.read().decode())
                except ValueError as bad_body:
                    raise RegistryError("service health", f"HTTP {exc.code} with unreadable body") from bad_body
            raise RegistryError("service health", f"HTTP {exc.code}") from exc
        except ValueError as exc:
            raise RegistryError("service health", f"unreadable body: {exc}") from exc
        except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
            raise RegistryError("service health", getattr(exc, "reason", exc)) from exc


def status_from_health(body: Dict[str, Any]) -> ServiceStatus:
    """Extract the aggregated ServiceStatus from a health body."""
    return ServiceStatus(body.get("AggregatedStatus", ServiceStatus.CRITICAL.value))
