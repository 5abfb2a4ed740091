"""Netlink message building blocks: headers, route attributes and helpers."""

from __future__ import annotations

import struct
import sys
import threading
from dataclasses import dataclass, field
from typing import Protocol

NATIVE_ORDER = sys.byteorder

# Netlink header flags.
NLM_F_REQUEST = 0x1
NLM_F_MULTI = 0x2
NLM_F_ACK = 0x4
NLM_F_ECHO = 0x8
NLM_F_DUMP_INTR = 0x10
NLM_F_ROOT = 0x100
NLM_F_MATCH = 0x200
NLM_F_DUMP = NLM_F_ROOT | NLM_F_MATCH
NLM_F_REPLACE = 0x100
NLM_F_EXCL = 0x200
NLM_F_CREATE = 0x400
NLM_F_APPEND = 0x800
NLM_F_CAPPED = 0x100
NLM_F_ACK_TLVS = 0x200

NLMSG_NOOP = 1
NLMSG_ERROR = 2
NLMSG_DONE = 3
NLMSG_HDRLEN = 16
NLMSG_ALIGNTO = 4
RTA_ALIGNTO = 4
SIZEOF_RTATTR = 4
SIZEOF_IFINFOMSG = 16
SIZEOF_IFADDRMSG = 8
SIZEOF_IFA_CACHEINFO = 16
NLA_F_NESTED = 0x8000

NETLINK_ROUTE = 0
RECEIVE_BUFFER_SIZE = 65536
PID_KERNEL = 0

NLMSGERR_ATTR_UNUSED = 0
NLMSGERR_ATTR_MSG = 1
NLMSGERR_ATTR_OFFS = 2
NLMSGERR_ATTR_COOKIE = 3
NLMSGERR_ATTR_POLICY = 4

RTM_NEWLINK = 16
RTM_DELLINK = 17
RTM_GETLINK = 18
RTM_SETLINK = 19
RTM_NEWADDR = 20

RTEXT_FILTER_VF = 1 << 0
RTEXT_FILTER_BRVLAN = 1 << 1
RTEXT_FILTER_BRVLAN_COMPRESSED = 1 << 2

IFLA_ADDRESS = 1
IFLA_BROADCAST = 2
IFLA_IFNAME = 3
IFLA_MTU = 4
IFLA_LINK = 5
IFLA_MASTER = 10
IFLA_PROTINFO = 12
IFLA_TXQLEN = 13
IFLA_OPERSTATE = 16
IFLA_LINKINFO = 18
IFLA_NET_NS_PID = 19
IFLA_IFALIAS = 20
IFLA_GROUP = 27
IFLA_NET_NS_FD = 28
IFLA_EXT_MASK = 29
IFLA_PROMISCUITY = 30
IFLA_NUM_TX_QUEUES = 31
IFLA_NUM_RX_QUEUES = 32
IFLA_PHYS_SWITCH_ID = 36
IFLA_LINK_NETNSID = 37
IFLA_GSO_MAX_SEGS = 40
IFLA_GSO_MAX_SIZE = 41
IFLA_PROP_LIST = 52
IFLA_ALT_IFNAME = 53
IFLA_PERM_ADDRESS = 54
IFLA_GRO_MAX_SIZE = 58
IFLA_TSO_MAX_SIZE = 59
IFLA_TSO_MAX_SEGS = 60
IFLA_GSO_IPV4_MAX_SIZE = 63
IFLA_GRO_IPV4_MAX_SIZE = 64

IFLA_INFO_UNSPEC = 0
IFLA_INFO_KIND = 1
IFLA_INFO_DATA = 2
IFLA_INFO_XSTATS = 3
IFLA_INFO_SLAVE_KIND = 4
IFLA_INFO_SLAVE_DATA = 5

IFA_ADDRESS = 1
IFA_LOCAL = 2
IFA_LABEL = 3
IFA_BROADCAST = 4
IFA_ANYCAST = 5
IFA_CACHEINFO = 6
IFA_MULTICAST = 7
IFA_FLAGS = 8

_NLMSGHDR = struct.Struct("=IHHII")
_IFINFOMSG = struct.Struct("=BxHiII")
_IFADDRMSG = struct.Struct("=BBBBI")
_IFA_CACHEINFO = struct.Struct("=IIII")
_RTATTR = struct.Struct("=HH")

_ARPHRD_FCFABRIC = 787

_ENCAP_NAMES = {
    0: "generic",
    1: "ether",
    2: "eether",
    3: "ax25",
    4: "pronet",
    5: "chaos",
    6: "ieee802",
    7: "arcnet",
    8: "atalk",
    15: "dlci",
    19: "atm",
    23: "metricom",
    24: "ieee1394",
    32: "infiniband",
    256: "slip",
    257: "cslip",
    258: "slip6",
    259: "cslip6",
    260: "rsrvd",
    264: "adapt",
    270: "rose",
    271: "x25",
    272: "hwx25",
    512: "ppp",
    513: "hdlc",
    516: "lapb",
    517: "ddcmp",
    518: "rawhdlc",
    768: "ipip",
    769: "tunnel6",
    770: "frad",
    771: "skip",
    772: "loopback",
    773: "ltalk",
    774: "fddi",
    775: "bif",
    776: "sit",
    777: "ip/ddp",
    778: "gre",
    779: "pimreg",
    780: "hippi",
    781: "ash",
    782: "econet",
    783: "irda",
    784: "fcpp",
    785: "fcal",
    786: "fcpl",
    **{_ARPHRD_FCFABRIC + n: f"fcfb{n}" for n in range(13)},
    800: "tr",
    801: "ieee802.11",
    802: "ieee802.11/prism",
    803: "ieee802.11/radiotap",
    804: "ieee802.15.4",
    65534: "none",
    65535: "void",
}


def rta_align(length: int) -> int:
    """Round ``length`` up to the route attribute alignment."""
    return (length + RTA_ALIGNTO - 1) & ~(RTA_ALIGNTO - 1)


def nlm_align(length: int) -> int:
    """Round ``length`` up to the netlink message alignment."""
    return (length + NLMSG_ALIGNTO - 1) & ~(NLMSG_ALIGNTO - 1)


def uint8_attr(v: int) -> bytes:
    return bytes([v & 0xFF])


def uint16_attr(v: int) -> bytes:
    return (v & 0xFFFF).to_bytes(2, NATIVE_ORDER)


def uint32_attr(v: int) -> bytes:
    return (v & 0xFFFFFFFF).to_bytes(4, NATIVE_ORDER)


def htons(v: int) -> bytes:
    """Encode ``v`` as a 16-bit big-endian value."""
    return (v & 0xFFFF).to_bytes(2, "big")


def ntohs(buf: bytes) -> int:
    """Decode the first two bytes of ``buf`` as a big-endian value."""
    if len(buf) < 2:
        raise ValueError("need at least two bytes")
    return int.from_bytes(buf[:2], "big")


def zero_terminated(s: str) -> bytes:
    return s.encode("utf-8") + b"\x00"


def non_zero_terminated(s: str) -> bytes:
    return s.encode("utf-8")


def bytes_to_string(b: bytes) -> str:
    """Return the text before the first NUL byte."""
    end = bytes(b).find(b"\x00")
    if end < 0:
        raise ValueError("no NUL terminator in byte string")
    return bytes(b[:end]).decode("utf-8", errors="replace")


def encap_type(arp_type: int) -> str:
    """Name of the link encapsulation for an ARPHRD_* hardware type."""
    return _ENCAP_NAMES.get(arp_type, f"unknown{arp_type}")


class _Serializable(Protocol):
    def serialize(self) -> bytes: ...


@dataclass(frozen=True)
class RouteAttr:
    """A parsed route attribute: its type and raw value."""

    type: int
    value: bytes


class RtAttr:
    """A route attribute under construction, possibly with nested children."""

    def __init__(self, attr_type: int, data: bytes | None = None) -> None:
        self.type = attr_type
        self.data = bytes(data) if data is not None else b""
        self.children: list[_Serializable] = []

    def add_rt_attr(self, attr_type: int, data: bytes | None = None) -> RtAttr:
        """Append a nested attribute and return it."""
        child = RtAttr(attr_type, data)
        self.children.append(child)
        return child

    def length(self) -> int:
        if not self.children:
            return SIZEOF_RTATTR + len(self.data)
        total = sum(rta_align(_length_of(child)) for child in self.children)
        total += SIZEOF_RTATTR
        return rta_align(total + len(self.data))

    def serialize(self) -> bytes:
        length = self.length()
        buf = bytearray(rta_align(length))
        offset = SIZEOF_RTATTR
        if self.data:
            _put(buf, offset, self.data)
            offset += rta_align(len(self.data))
        for child in self.children:
            chunk = child.serialize()
            _put(buf, offset, chunk)
            offset += rta_align(len(chunk))
        _RTATTR.pack_into(buf, 0, length & 0xFFFF, self.type & 0xFFFF)
        return bytes(buf)


def _length_of(item: _Serializable) -> int:
    if isinstance(item, RtAttr):
        return item.length()
    return len(item.serialize())


def _put(buf: bytearray, offset: int, chunk: bytes) -> None:
    room = max(0, len(buf) - offset)
    chunk = chunk[:room]
    buf[offset:offset + len(chunk)] = chunk


@dataclass
class IfInfomsg:
    """Link-level message header (struct ifinfomsg)."""

    family: int = 0
    type: int = 0
    index: int = 0
    flags: int = 0
    change: int = 0

    def serialize(self) -> bytes:
        return _IFINFOMSG.pack(self.family & 0xFF, self.type & 0xFFFF,
                               self.index, self.flags & 0xFFFFFFFF,
                               self.change & 0xFFFFFFFF)

    def encap_type(self) -> str:
        return encap_type(self.type)


def deserialize_ifinfomsg(data: bytes) -> IfInfomsg:
    if len(data) < SIZEOF_IFINFOMSG:
        raise ValueError("ifinfomsg too short")
    family, kind, index, flags, change = _IFINFOMSG.unpack_from(data)
    return IfInfomsg(family, kind, index, flags, change)


@dataclass
class IfAddrmsg:
    """Address message header (struct ifaddrmsg)."""

    family: int = 0
    prefixlen: int = 0
    flags: int = 0
    scope: int = 0
    index: int = 0

    def serialize(self) -> bytes:
        return _IFADDRMSG.pack(self.family & 0xFF, self.prefixlen & 0xFF,
                               self.flags & 0xFF, self.scope & 0xFF,
                               self.index & 0xFFFFFFFF)


@dataclass
class IfaCacheInfo:
    """Address lifetime information (struct ifa_cacheinfo)."""

    prefered: int = 0
    valid: int = 0
    cstamp: int = 0
    tstamp: int = 0

    def serialize(self) -> bytes:
        return _IFA_CACHEINFO.pack(self.prefered & 0xFFFFFFFF,
                                   self.valid & 0xFFFFFFFF,
                                   self.cstamp & 0xFFFFFFFF,
                                   self.tstamp & 0xFFFFFFFF)


def deserialize_ifa_cache_info(data: bytes) -> IfaCacheInfo:
    if len(data) < SIZEOF_IFA_CACHEINFO:
        raise ValueError("ifa_cacheinfo too short")
    return IfaCacheInfo(*_IFA_CACHEINFO.unpack_from(data))


@dataclass
class NetlinkRequest:
    """A netlink request: header fields plus payload parts."""

    type: int
    flags: int = 0
    seq: int = 0
    sockets: dict | None = None
    pid: int = 0
    length: int = NLMSG_HDRLEN
    data: list = field(default_factory=list)
    raw_data: bytes = b""

    def __init__(self, proto: int, flags: int = 0, seq: int = 0,
                 sockets: dict | None = None) -> None:
        self.type = proto & 0xFFFF
        self.flags = (NLM_F_REQUEST | flags) & 0xFFFF
        self.seq = seq & 0xFFFFFFFF
        self.sockets = sockets
        self.pid = 0
        self.length = NLMSG_HDRLEN
        self.data = []
        self.raw_data = b""

    def add_data(self, data: _Serializable) -> None:
        self.data.append(data)

    def serialize(self) -> bytes:
        body = b"".join(part.serialize() for part in self.data) + self.raw_data
        self.length = NLMSG_HDRLEN + len(body)
        header = _NLMSGHDR.pack(self.length, self.type, self.flags,
                                self.seq & 0xFFFFFFFF, self.pid)
        return header + body


_seq_lock = threading.Lock()
_seq_value = 0


def next_seq() -> int:
    """Return the next process-wide request sequence number."""
    global _seq_value
    with _seq_lock:
        _seq_value = (_seq_value + 1) & 0xFFFFFFFF
        return _seq_value


def new_netlink_request(proto: int, flags: int = 0) -> NetlinkRequest:
    """Create a request carrying a fresh sequence number."""
    return NetlinkRequest(proto, flags, seq=next_seq())


def parse_route_attr(data: bytes) -> list[RouteAttr]:
    """Split a buffer into its route attributes."""
    attrs = []
    buf = memoryview(bytes(data))
    while len(buf) >= SIZEOF_RTATTR:
        length, kind = _RTATTR.unpack_from(buf)
        if length < SIZEOF_RTATTR or length > len(buf):
            raise ValueError("invalid route attribute length")
        attrs.append(RouteAttr(kind, bytes(buf[SIZEOF_RTATTR:length])))
        buf = buf[rta_align(length):]
    return attrs