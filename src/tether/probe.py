"""Liveness probes: local self-checks run before every heartbeat."""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

import psutil


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    healthy: bool
    note: str = ""


HEALTHY = ProbeResult(True, "OK")


class LivenessProbe(ABC):
    """Answers "is this process healthy right now?".

    Implementations must be cheap, must not touch the registry, and must not
    block past a bounded time. Errors are reported as unhealthy results, not
    raised.
    """

    @abstractmethod
    def probe(self) -> ProbeResult:
        ...


class ProcessProbe(LivenessProbe):
    """Healthy while the process (by default, this one) is running."""

    def __init__(self, pid: int | None = None):
        self.pid = os.getpid() if pid is None else pid

    def probe(self) -> ProbeResult:
        try:
            proc = psutil.Process(self.pid)
            if not proc.is_running():
                return ProbeResult(False, "Process not running!")
            if proc.status() == psutil.STATUS_ZOMBIE:
                return ProbeResult(False, "Process is a zombie")
        except psutil.Error as exc:
            logger.error("Process check for pid %s failed: %s", self.pid, exc)
            return ProbeResult(False, f"Process check failed: {exc}")
        return HEALTHY


class MemoryProbe(LivenessProbe):
    """Unhealthy once resident memory exceeds *max_rss_mb*."""

    def __init__(self, max_rss_mb: int, pid: int | None = None):
        self.max_rss_mb = max_rss_mb
        self.pid = os.getpid() if pid is None else pid

    def probe(self) -> ProbeResult:
        try:
            rss_mb = psutil.Process(self.pid).memory_info().rss / (1024 * 1024)
        except psutil.Error as exc:
            return ProbeResult(False, f"Memory check failed: {exc}")
        if rss_mb > self.max_rss_mb:
            return ProbeResult(False, f"RSS {rss_mb:.0f} MiB exceeds limit of {self.max_rss_mb} MiB")
        return HEALTHY


class AllOf(LivenessProbe):
    """Healthy only if every wrapped probe is; stops at the first failure."""

    def __init__(self, *probes: LivenessProbe):
        self.probes = probes

    def probe(self) -> ProbeResult:
        for p in self.probes:
            result = p.probe()
            if not result.healthy:
                return result
        return HEALTHY


class TimeoutProbe(LivenessProbe):
    """Run *inner* on a daemon thread; unhealthy if it takes over *timeout* seconds.

    A stalled inner probe keeps its thread, which is abandoned. The daemon
    flag keeps it from holding up interpreter exit.
    """

    def __init__(self, inner: LivenessProbe, timeout: float):
        self.inner = inner
        self.timeout = timeout

    def probe(self) -> ProbeResult:
        outcome: list[ProbeResult] = []

        def _run():
            try:
                outcome.append(self.inner.probe())
            except Exception as exc:
                outcome.append(ProbeResult(False, f"Probe raised: {exc}"))

        thread = threading.Thread(target=_run, name="tether-probe", daemon=True)
        thread.start()
        thread.join(self.timeout)
        if not outcome:
            return ProbeResult(False, f"Probe timed out after {self.timeout}s")
        return outcome[0]


def build_probe(max_rss_mb: int | None = None, timeout: float = 2.0) -> LivenessProbe:
    """Assemble the default probe chain, bounded by *timeout*."""
    probe: LivenessProbe = ProcessProbe()
    if max_rss_mb is not None:
        probe = AllOf(probe, MemoryProbe(max_rss_mb))
    return TimeoutProbe(probe, timeout)
