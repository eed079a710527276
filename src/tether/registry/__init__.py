"""
Service Registry

This package provides:
1. RegistrationRecord / HealthCheck — the entry the agent owns in the registry
2. ConsulRegistryClient — HTTP client for the Consul agent API
3. InMemoryRegistry — dict-backed registry with Consul TTL semantics
4. start_registry_server — serves an InMemoryRegistry over the Consul agent API
"""

from .consul import ConsulRegistryClient, status_from_health
from .service_registry import (
    HealthCheck,
    InMemoryRegistry,
    RegistrationRecord,
    RegistryError,
    ServiceEntry,
    ServiceStatus,
    StartupRegistrationError,
    format_duration,
    parse_duration,
    start_registry_server,
)

__all__ = [
    'ConsulRegistryClient',
    'HealthCheck',
    'InMemoryRegistry',
    'RegistrationRecord',
    'RegistryError',
    'ServiceEntry',
    'ServiceStatus',
    'StartupRegistrationError',
    'format_duration',
    'parse_duration',
    'start_registry_server',
    'status_from_health',
]
