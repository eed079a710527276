"""tether: a self-registering liveness agent for Consul."""

from .agent import Agent, RegistrationManager, build_agent, build_record
from .heartbeat import LivenessLoop
from .lifecycle import InvalidTransition, Lifecycle, LifecyclePhase, StopReason
from .probe import AllOf, LivenessProbe, MemoryProbe, ProbeResult, ProcessProbe, TimeoutProbe

__version__ = '0.1.0'
__all__ = [
    'Agent',
    'AllOf',
    'InvalidTransition',
    'Lifecycle',
    'LifecyclePhase',
    'LivenessLoop',
    'LivenessProbe',
    'MemoryProbe',
    'ProbeResult',
    'ProcessProbe',
    'RegistrationManager',
    'StopReason',
    'TimeoutProbe',
    'build_agent',
    'build_record',
]
