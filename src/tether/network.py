"""Local address discovery."""

import ipaddress
import socket

import psutil


def get_local_ipv4_address() -> str | None:
    """Return the first non-loopback IPv4 address on an interface that is up.

    Returns None when no such address exists.
    """
    stats = psutil.net_if_stats()
    for name, addrs in psutil.net_if_addrs().items():
        st = stats.get(name)
        if st is None or not st.isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            if ipaddress.ip_address(addr.address).is_loopback:
                continue
            return addr.address
    return None
