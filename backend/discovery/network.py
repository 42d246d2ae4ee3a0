"""
Local address helpers.

Address selection assumes home-network sized /24 subnets: the local
address sharing the first three octets with the printer is the one the
printer can reach us on.
"""

import ipaddress
import logging
import socket

from config import DISCOVERY_PORT

logger = logging.getLogger(__name__)

ANY_ADDRESS = "0.0.0.0"
LIMITED_BROADCAST = "255.255.255.255"


def normalize_address(address: str) -> str:
    """Turn an IPv4-mapped IPv6 address (``::ffff:a.b.c.d``) into plain IPv4."""
    if address.lower().startswith("::ffff:"):
        candidate = address[7:]
        try:
            ipaddress.IPv4Address(candidate)
            return candidate
        except ValueError:
            pass
    return address


def _route_address(target: str) -> str | None:
    """The local address the OS would use to reach ``target``, if any."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((target, DISCOVERY_PORT))
            return s.getsockname()[0]
    except OSError as e:
        logger.debug(f"No route to {target}: {e}")
        return None


def local_ipv4_addresses() -> list[str]:
    """Non-loopback IPv4 addresses of this host."""
    addresses: list[str] = []
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        addresses.extend(ip for ip in ips if not ip.startswith("127."))
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")

    routed = _route_address("8.8.8.8")
    if routed and routed not in addresses and not routed.startswith("127."):
        addresses.append(routed)
    return addresses


def same_subnet_24(a: str, b: str) -> bool:
    return a.split(".")[:3] == b.split(".")[:3]


def select_local_address(target: str, candidates: list[str] | None = None) -> str:
    """
    Pick the local address to bind listeners on for talking to ``target``.

    Preference: a local address on the same /24, then the address the OS
    routes ``target`` through, then the wildcard address.
    """
    if candidates is None:
        candidates = local_ipv4_addresses()
    for ip in candidates:
        if same_subnet_24(ip, target):
            return ip

    routed = _route_address(target)
    if routed and routed != ANY_ADDRESS:
        return routed
    return ANY_ADDRESS


def broadcast_addresses(candidates: list[str] | None = None) -> set[str]:
    """Limited broadcast plus the /24 broadcast address of each local IP."""
    if candidates is None:
        candidates = local_ipv4_addresses()
    result = {LIMITED_BROADCAST}
    for ip in candidates:
        parts = ip.split(".")
        if len(parts) == 4:
            parts[3] = "255"
            result.add(".".join(parts))
    return result
