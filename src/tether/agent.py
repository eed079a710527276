"""Core orchestration: register, run the heartbeat loop, deregister."""

import logging
import signal
import threading

from .config import AUTO_ADDRESS, AgentConfig, resolve_consul_token
from .heartbeat import LivenessLoop
from .lifecycle import Lifecycle, LifecyclePhase, StopReason
from .network import get_local_ipv4_address
from .probe import LivenessProbe, build_probe
from .registry import (
    ConsulRegistryClient,
    HealthCheck,
    RegistrationRecord,
    RegistryError,
    StartupRegistrationError,
)


logger = logging.getLogger(__name__)


class RegistrationManager:
    """Owns the existence of the registry entry.

    ``register()`` must succeed before any heartbeat. ``deregister()`` may be
    called from every stop path; the registry call is made at most once, and
    only if registration succeeded.
    """

    def __init__(self, registry, record: RegistrationRecord):
        self.registry = registry
        self.record = record
        self._registered = False
        self._deregistered = False

    @property
    def registered(self) -> bool:
        return self._registered and not self._deregistered

    def register(self) -> None:
        """Register the record. Raises StartupRegistrationError on failure."""
        if self._deregistered:
            raise RuntimeError(f"{self.record.service_id} was already deregistered")
        logger.info(
            "Registering %s at %s:%s (ttl=%ss)",
            self.record.service_id, self.record.address, self.record.port,
            self.record.check.ttl,
        )
        try:
            self.registry.register(self.record)
        except RegistryError as exc:
            raise StartupRegistrationError("register", exc.reason) from exc
        self._registered = True
        logger.info("Registered %s with the registry", self.record.service_id)

    def deregister(self) -> bool:
        """Best-effort deregistration. Returns True if the registry confirmed it."""
        if not self._registered or self._deregistered:
            logger.debug("Nothing to deregister for %s", self.record.service_id)
            return False
        self._deregistered = True

        logger.warning("Stopping: deregistering %s", self.record.service_id)
        try:
            self.registry.deregister(self.record.service_id)
        except RegistryError as exc:
            logger.warning(
                "Could not deregister %s (%s); the registry TTL will expire it",
                self.record.service_id, exc,
            )
            return False
        logger.info("Deregistered %s", self.record.service_id)
        return True


class Agent:
    """Self-registering liveness agent. Instances are single-use.

    ``run()`` blocks: it registers, runs the heartbeat loop until the probe
    fails or ``stop()`` is called, then deregisters. Deregistration sits in a
    ``finally`` block so every exit path takes it, including unexpected
    exceptions, which propagate afterwards.

    A StartupRegistrationError leaves the agent in NOT_REGISTERED, so the
    caller may call ``run()`` again to retry.
    """

    def __init__(
        self,
        registry,
        record: RegistrationRecord,
        probe: LivenessProbe,
        interval: float = 10.0,
        stop_event: threading.Event | None = None,
    ):
        self.record = record
        self.lifecycle = Lifecycle()
        self._stop = stop_event or threading.Event()
        self.manager = RegistrationManager(registry, record)
        self.loop = LivenessLoop(
            registry,
            probe,
            record.service_id,
            lifecycle=self.lifecycle,
            stop_event=self._stop,
            interval=interval,
            ttl=record.check.ttl,
        )

    @property
    def phase(self) -> LifecyclePhase:
        return self.lifecycle.phase

    def stop(self) -> None:
        """Request cancellation. Safe to call from a signal handler or another thread."""
        self._stop.set()

    def run(self) -> StopReason:
        if self.phase is not LifecyclePhase.NOT_REGISTERED:
            raise RuntimeError(f"agent for {self.record.service_id} already ran ({self.phase.value})")

        self.manager.register()
        self.lifecycle.transition(LifecyclePhase.REGISTERED)

        try:
            reason = self.loop.run()
        finally:
            if self.phase is not LifecyclePhase.STOPPING:
                logger.error("Heartbeat loop for %s exited unexpectedly", self.record.service_id)
                self.lifecycle.transition(LifecyclePhase.STOPPING)
            self.manager.deregister()
            self.lifecycle.transition(LifecyclePhase.DEREGISTERED)

        logger.info("Agent for %s stopped (%s)", self.record.service_id, reason.value)
        return reason


def build_record(config: AgentConfig) -> RegistrationRecord:
    """Build the registration record, resolving an ``auto`` address."""
    address = config.address
    if address == AUTO_ADDRESS:
        address = get_local_ipv4_address() or "127.0.0.1"
        logger.info("Advertising discovered address %s", address)
    return RegistrationRecord(
        service_id=config.service_id,
        name=config.display_name,
        address=address,
        port=config.port,
        check=HealthCheck(
            ttl=config.ttl,
            name=config.check_name,
            notes=config.check_notes,
            deregister_critical_after=config.deregister_critical_after,
        ),
        tags=tuple(config.tags),
        meta=dict(config.meta),
    )


def build_agent(config: AgentConfig, registry=None, probe: LivenessProbe | None = None) -> Agent:
    """Wire an Agent from configuration, defaulting to the Consul client and process probe."""
    if registry is None:
        registry = ConsulRegistryClient(
            url=config.consul_url,
            token=resolve_consul_token(config),
            timeout=config.request_timeout,
        )
    if probe is None:
        probe = build_probe(max_rss_mb=config.max_rss_mb, timeout=config.probe_timeout)
    return Agent(registry, build_record(config), probe, interval=config.interval)


def install_signal_handlers(agent: Agent) -> None:
    """Route SIGINT and SIGTERM to ``agent.stop()``. Main thread only."""

    def _handler(signum, frame):
        logger.warning("Received %s; shutting down", signal.Signals(signum).name)
        agent.stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
