"""Local network address shown to the user so other devices can connect."""

from __future__ import annotations

import ipaddress
import socket
from typing import Any, Sequence

import psutil

# Wi-Fi interface names on iOS/macOS and Linux/Android respectively.
PREFERRED_INTERFACES: tuple[str, ...] = ("en0", "wlan0")

UNKNOWN_ADDRESS = "unknown"


def _is_loopback_name(name: str) -> bool:
    return name == "lo" or name.startswith("lo0") or name.lower().startswith("loopback")


def _ipv4_of(addrs: Sequence[Any]) -> str | None:
    for addr in addrs:
        if addr.family != socket.AF_INET:
            continue
        try:
            ip = ipaddress.IPv4Address(addr.address)
        except ValueError:
            continue
        if ip.is_loopback or ip.is_unspecified:
            continue
        return str(ip)
    return None


def current_local_address(preferred: Sequence[str] = PREFERRED_INTERFACES) -> str | None:
    """IPv4 address of the wireless interface, else of the first other usable interface.

    Returns None when no non-loopback IPv4 address is configured.
    """
    interfaces = psutil.net_if_addrs()
    stats = psutil.net_if_stats()

    def _usable(name: str) -> bool:
        if _is_loopback_name(name):
            return False
        st = stats.get(name)
        return st is None or st.isup

    for name in preferred:
        if name in interfaces and _usable(name):
            ip = _ipv4_of(interfaces[name])
            if ip is not None:
                return ip

    for name, addrs in interfaces.items():
        if not _usable(name):
            continue
        ip = _ipv4_of(addrs)
        if ip is not None:
            return ip
    return None


def display_address(port: int, preferred: Sequence[str] = PREFERRED_INTERFACES) -> str:
    return f"http://{current_local_address(preferred) or UNKNOWN_ADDRESS}:{port}"
