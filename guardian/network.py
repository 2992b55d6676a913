"""
Address helpers for the control API.

Classifies bind addresses and builds the phone-friendly /mobile links that
are printed at startup. LAN addresses are discovered with psutil.
"""

import logging
import socket
from urllib.parse import quote

import psutil

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = {"127.0.0.1", "::1", "localhost", "::ffff:127.0.0.1"}
ANY_ADDRESSES = {"0.0.0.0", "::", "[::]"}


def is_loopback_address(hostname: str) -> bool:
    return hostname.strip().lower() in LOOPBACK_ADDRESSES


def is_any_address(hostname: str) -> bool:
    return hostname.strip().lower() in ANY_ADDRESSES


def list_lan_ipv4_addresses() -> list[str]:
    """Get non-internal IPv4 addresses of this machine."""
    addresses = []
    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logger.warning(f"Could not list network interfaces: {e}")
        return []

    for entries in interfaces.values():
        for entry in entries:
            if entry.family != socket.AF_INET:
                continue
            address = (entry.address or "").strip()
            if not address or address.startswith("127."):
                continue
            if address not in addresses:
                addresses.append(address)
    return addresses


def build_mobile_urls(bind: str, port: int, secret: str) -> list[str]:
    """Build the /mobile control links an operator can open from a phone."""
    token = quote(secret, safe="")
    if is_loopback_address(bind):
        return [f"http://127.0.0.1:{port}/mobile?token={token}"]
    if is_any_address(bind):
        lan = list_lan_ipv4_addresses()
        if not lan:
            return [f"http://127.0.0.1:{port}/mobile?token={token}"]
        return [f"http://{address}:{port}/mobile?token={token}" for address in lan]
    return [f"http://{bind}:{port}/mobile?token={token}"]
