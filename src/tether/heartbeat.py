"""Liveness loop: probe on a fixed cadence and report the result to the registry."""

import logging
import threading

from .lifecycle import Lifecycle, LifecyclePhase, StopReason
from .probe import LivenessProbe, ProbeResult
from .registry import RegistryError


logger = logging.getLogger(__name__)


class LivenessLoop:
    """Heartbeat loop for one registered service.

    Each cycle waits *interval* seconds (or until *stop_event* is set), then
    evaluates the probe and sends an alive or failing report. The first
    unhealthy result sends one failing report and ends the loop for good.

    A report that fails to reach the registry never ends the loop. Consecutive
    failures are counted in ``report_failures`` and logged at error level once
    they span a whole TTL window, since by then the registry has marked the
    check critical.
    """

    def __init__(
        self,
        registry,
        probe: LivenessProbe,
        service_id: str,
        lifecycle: Lifecycle,
        stop_event: threading.Event,
        interval: float = 10.0,
        ttl: float = 15.0,
    ):
        self.registry = registry
        self.probe = probe
        self.service_id = service_id
        self.lifecycle = lifecycle
        self.interval = interval
        self.ttl = ttl
        self._stop = stop_event
        self.ticks = 0
        self.report_failures = 0

    def run(self) -> StopReason:
        """Block until the probe fails or the stop event is set."""
        logger.info(
            "Heartbeat loop started for %s (interval=%ss, ttl=%ss)",
            self.service_id, self.interval, self.ttl,
        )
        while True:
            # The wait is the only suspension point; setting the event ends it early
            if self._stop.wait(self.interval):
                logger.info("Stop requested; leaving heartbeat loop for %s", self.service_id)
                self.lifecycle.transition(LifecyclePhase.STOPPING)
                return StopReason.CANCELLED
            if not self.tick():
                return StopReason.UNHEALTHY

    def tick(self) -> bool:
        """Run one heartbeat. Returns False once the probe has reported unhealthy."""
        self.ticks += 1
        result = self._evaluate()

        if result.healthy:
            self.lifecycle.transition(LifecyclePhase.REPORTING)
            if self._send(self.registry.report_alive, result.note):
                logger.info("[heartbeat %d] %s: healthy", self.ticks, self.service_id)
            return True

        logger.error(
            "[heartbeat %d] %s: probe failed (%s); notifying registry",
            self.ticks, self.service_id, result.note,
        )
        self.lifecycle.transition(LifecyclePhase.STOPPING)
        self._send(self.registry.report_failing, result.note)
        return False

    def _evaluate(self) -> ProbeResult:
        try:
            return self.probe.probe()
        except Exception as exc:
            # Fail closed: a probe that cannot answer counts as unhealthy
            logger.exception("Probe raised for %s", self.service_id)
            return ProbeResult(False, f"Probe raised: {exc}")

    def _send(self, report, note: str) -> bool:
        try:
            report(self.service_id, note)
        except RegistryError as exc:
            self.report_failures += 1
            if self.report_failures * self.interval >= self.ttl:
                logger.error(
                    "Heartbeat for %s not delivered %d times in a row, "
                    "registry TTL has lapsed: %s",
                    self.service_id, self.report_failures, exc,
                )
            else:
                logger.warning("Heartbeat for %s not delivered: %s", self.service_id, exc)
            return False

        if self.report_failures:
            logger.info(
                "Heartbeat for %s delivered again after %d failure(s)",
                self.service_id, self.report_failures,
            )
            self.report_failures = 0
        return True
