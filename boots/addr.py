"""Interface addresses in CIDR form, with label, peer and lifetimes."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Union

FAMILY_ALL = 0
FAMILY_V4 = 2
FAMILY_V6 = 10
FAMILY_MPLS = 28

IPInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_PREFIX = re.compile(r"[0-9]+", re.ASCII)


def _normalize(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _same(a: IPInterface | None, b: IPInterface | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return (_normalize(a.ip) == _normalize(b.ip)
            and a.network.prefixlen == b.network.prefixlen)


@dataclass
class Addr:
    """An address assigned to a link."""

    ipnet: IPInterface | None = None
    label: str = ""
    flags: int = 0
    scope: int = 0
    peer: IPInterface | None = None
    broadcast: IPAddress | None = None
    prefered_lft: int = 0
    valid_lft: int = 0
    link_index: int = 0

    def __str__(self) -> str:
        net = "<nil>" if self.ipnet is None else str(self.ipnet)
        return f"{net} {self.label}".strip()

    def equal(self, other: Addr) -> bool:
        """True if both hold the same address and prefix length."""
        return _same(self.ipnet, other.ipnet)

    def peer_equal(self, other: Addr) -> bool:
        """True if both have the same peer address and prefix length."""
        return _same(self.peer, other.peer)


def parse_ipnet(s: str) -> IPInterface:
    """Parse ``address/prefix`` keeping the host address."""
    address, sep, prefix = s.partition("/")
    if not sep or "%" in address or not _PREFIX.fullmatch(prefix):
        raise ValueError(f"invalid CIDR address: {s}")
    try:
        return ipaddress.ip_interface(s)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {s}") from None


def parse_addr(s: str) -> Addr:
    """Parse ``address/prefix`` optionally followed by a space and a label."""
    label = ""
    parts = s.split(" ")
    if len(parts) > 1:
        s, label = parts[0], parts[1]
    return Addr(ipnet=parse_ipnet(s), label=label)


def get_ip_family(ip) -> int:
    """Address family of ``ip``; IPv4-mapped IPv6 addresses count as IPv4."""
    if ip is None:
        return FAMILY_V4
    if isinstance(ip, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        ip = ip.ip
    elif not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = ipaddress.ip_address(ip)
    if isinstance(_normalize(ip), ipaddress.IPv4Address):
        return FAMILY_V4
    return FAMILY_V6