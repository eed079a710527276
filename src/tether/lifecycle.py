"""Lifecycle phase of an agent instance and its legal transitions."""

import logging
from enum import Enum


logger = logging.getLogger(__name__)


class LifecyclePhase(Enum):
    NOT_REGISTERED = "not_registered"
    REGISTERED = "registered"
    REPORTING = "reporting"
    STOPPING = "stopping"
    DEREGISTERED = "deregistered"


class StopReason(Enum):
    """Why the liveness loop exited."""
    CANCELLED = "cancelled"
    UNHEALTHY = "unhealthy"


_TRANSITIONS = {
    LifecyclePhase.NOT_REGISTERED: {LifecyclePhase.REGISTERED},
    LifecyclePhase.REGISTERED: {LifecyclePhase.REPORTING, LifecyclePhase.STOPPING},
    LifecyclePhase.REPORTING: {LifecyclePhase.REPORTING, LifecyclePhase.STOPPING},
    LifecyclePhase.STOPPING: {LifecyclePhase.DEREGISTERED},
    LifecyclePhase.DEREGISTERED: set(),
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: LifecyclePhase, target: LifecyclePhase):
        super().__init__(f"illegal lifecycle transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class Lifecycle:
    """Holds the current phase. Only documented edges are accepted."""

    def __init__(self):
        self._phase = LifecyclePhase.NOT_REGISTERED

    @property
    def phase(self) -> LifecyclePhase:
        return self._phase

    def transition(self, target: LifecyclePhase) -> None:
        if target not in _TRANSITIONS[self._phase]:
            raise InvalidTransition(self._phase, target)
        if target is not self._phase:
            logger.debug("Lifecycle %s -> %s", self._phase.value, target.value)
        self._phase = target
