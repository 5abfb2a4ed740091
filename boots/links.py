"""Link types and decoding of link messages received from the kernel."""

from __future__ import annotations

import enum
import ipaddress
import os
import sys
from dataclasses import dataclass, field
from typing import ClassVar, IO

from .nlmsg import (
    IFLA_ADDRESS,
    IFLA_ALT_IFNAME,
    IFLA_GRO_IPV4_MAX_SIZE,
    IFLA_GRO_MAX_SIZE,
    IFLA_GROUP,
    IFLA_GSO_IPV4_MAX_SIZE,
    IFLA_GSO_MAX_SEGS,
    IFLA_GSO_MAX_SIZE,
    IFLA_IFALIAS,
    IFLA_IFNAME,
    IFLA_INFO_DATA,
    IFLA_INFO_KIND,
    IFLA_LINK,
    IFLA_LINK_NETNSID,
    IFLA_LINKINFO,
    IFLA_MASTER,
    IFLA_MTU,
    IFLA_NUM_RX_QUEUES,
    IFLA_NUM_TX_QUEUES,
    IFLA_OPERSTATE,
    IFLA_PERM_ADDRESS,
    IFLA_PHYS_SWITCH_ID,
    IFLA_PROMISCUITY,
    IFLA_PROP_LIST,
    IFLA_PROTINFO,
    IFLA_TSO_MAX_SEGS,
    IFLA_TSO_MAX_SIZE,
    IFLA_TXQLEN,
    NLA_F_NESTED,
    RTM_NEWLINK,
    SIZEOF_IFINFOMSG,
    RouteAttr,
    bytes_to_string,
    deserialize_ifinfomsg,
    ntohs,
    parse_route_attr,
)

NATIVE_ORDER = sys.byteorder
SYSFS_NET = "/sys/class/net"

AF_BRIDGE = 7

# Kernel interface flags (struct ifinfomsg.ifi_flags).
IFF_UP = 0x1
IFF_BROADCAST = 0x2
IFF_LOOPBACK = 0x8
IFF_POINTOPOINT = 0x10
IFF_ALLMULTI = 0x200
IFF_MULTICAST = 0x1000

# Tun/tap device flags.
IFF_TUN = 0x1
IFF_TAP = 0x2
IFF_MULTI_QUEUE = 0x100
IFF_PERSIST = 0x800
IFF_NO_PI = 0x1000
IFF_ONE_QUEUE = 0x2000
IFF_VNET_HDR = 0x4000
IFF_TUN_EXCL = 0x8000

IFLA_BRPORT_MODE = 4
IFLA_BRPORT_GUARD = 5
IFLA_BRPORT_PROTECT = 6
IFLA_BRPORT_FAST_LEAVE = 7
IFLA_BRPORT_LEARNING = 8
IFLA_BRPORT_UNICAST_FLOOD = 9
IFLA_BRPORT_PROXYARP = 10
IFLA_BRPORT_PROXYARP_WIFI = 12
IFLA_BRPORT_NEIGH_SUPPRESS = 32
IFLA_BRPORT_ISOLATED = 33

IFLA_TUN_OWNER = 1
IFLA_TUN_GROUP = 2
IFLA_TUN_TYPE = 3
IFLA_TUN_PI = 4
IFLA_TUN_VNET_HDR = 5
IFLA_TUN_PERSIST = 6
IFLA_TUN_MULTI_QUEUE = 7
IFLA_TUN_NUM_QUEUES = 8
IFLA_TUN_NUM_DISABLED_QUEUES = 9

IFLA_IPTUN_LINK = 1
IFLA_IPTUN_LOCAL = 2
IFLA_IPTUN_REMOTE = 3
IFLA_IPTUN_TTL = 4
IFLA_IPTUN_TOS = 5
IFLA_IPTUN_ENCAP_LIMIT = 6
IFLA_IPTUN_FLOWINFO = 7
IFLA_IPTUN_FLAGS = 8
IFLA_IPTUN_PROTO = 9
IFLA_IPTUN_PMTUDISC = 10
IFLA_IPTUN_ENCAP_TYPE = 15
IFLA_IPTUN_ENCAP_FLAGS = 16
IFLA_IPTUN_ENCAP_SPORT = 17
IFLA_IPTUN_ENCAP_DPORT = 18
IFLA_IPTUN_COLLECT_METADATA = 19

IFLA_BR_FORWARD_DELAY = 1
IFLA_BR_HELLO_TIME = 2
IFLA_BR_MAX_AGE = 3
IFLA_BR_AGEING_TIME = 4
IFLA_BR_STP_STATE = 5
IFLA_BR_PRIORITY = 6
IFLA_BR_VLAN_FILTERING = 7
IFLA_BR_VLAN_PROTOCOL = 8
IFLA_BR_GROUP_FWD_MASK = 9
IFLA_BR_MCAST_SNOOPING = 23
IFLA_BR_VLAN_DEFAULT_PVID = 39

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class LinkNotFoundError(LookupError):
    """No link matches the requested name or index."""


class InterfaceFlags(enum.IntFlag):
    """Interface state flags in their portable form."""

    UP = 1 << 0
    BROADCAST = 1 << 1
    LOOPBACK = 1 << 2
    POINT_TO_POINT = 1 << 3
    MULTICAST = 1 << 4
    RUNNING = 1 << 5


class LinkOperState(enum.IntEnum):
    """RFC 2863 operational state of a link."""

    UNKNOWN = 0
    NOT_PRESENT = 1
    DOWN = 2
    LOWER_LAYER_DOWN = 3
    TESTING = 4
    DORMANT = 5
    UP = 6

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, int) and 0 <= value <= 0xFF:
            member = int.__new__(cls, value)
            member._name_ = f"STATE_{value}"
            member._value_ = value
            return member
        return None

    def __str__(self) -> str:
        return _OPER_STATE_NAMES.get(int(self), "unknown")


_OPER_STATE_NAMES = {
    1: "not-present",
    2: "down",
    3: "lower-layer-down",
    4: "testing",
    5: "dormant",
    6: "up",
}


@dataclass
class Protinfo:
    """Bridge port settings of a link."""

    hairpin: bool = False
    guard: bool = False
    fast_leave: bool = False
    root_block: bool = False
    learning: bool = False
    flood: bool = False
    proxy_arp: bool = False
    proxy_arp_wifi: bool = False
    isolated: bool = False
    neigh_suppress: bool = False

    def __str__(self) -> str:
        names = [
            ("Hairpin", self.hairpin),
            ("Guard", self.guard),
            ("FastLeave", self.fast_leave),
            ("RootBlock", self.root_block),
            ("Learning", self.learning),
            ("Flood", self.flood),
            ("ProxyArp", self.proxy_arp),
            ("ProxyArpWiFi", self.proxy_arp_wifi),
            ("Isolated", self.isolated),
            ("NeighSuppress", self.neigh_suppress),
        ]
        return " ".join(name for name, enabled in names if enabled)


_PROTINFO_FIELDS = {
    IFLA_BRPORT_MODE: "hairpin",
    IFLA_BRPORT_GUARD: "guard",
    IFLA_BRPORT_FAST_LEAVE: "fast_leave",
    IFLA_BRPORT_PROTECT: "root_block",
    IFLA_BRPORT_LEARNING: "learning",
    IFLA_BRPORT_UNICAST_FLOOD: "flood",
    IFLA_BRPORT_PROXYARP: "proxy_arp",
    IFLA_BRPORT_PROXYARP_WIFI: "proxy_arp_wifi",
    IFLA_BRPORT_ISOLATED: "isolated",
    IFLA_BRPORT_NEIGH_SUPPRESS: "neigh_suppress",
}


def parse_protinfo(infos: list[RouteAttr]) -> Protinfo:
    """Build bridge port settings from nested protinfo attributes."""
    info = Protinfo()
    for attr in infos:
        name = _PROTINFO_FIELDS.get(attr.type)
        if name is not None:
            setattr(info, name, _byte(attr.value) != 0)
    return info


@dataclass
class VfInfo:
    """A virtual function available on a link."""

    id: int = 0
    mac: bytes | None = None
    vlan: int = 0
    qos: int = 0
    vlan_proto: int = 0
    tx_rate: int = 0
    spoofchk: bool = False
    link_state: int = 0
    max_tx_rate: int = 0
    min_tx_rate: int = 0
    rx_packets: int = 0
    tx_packets: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0
    multicast: int = 0
    broadcast: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0
    rss_query: int = 0
    trust: int = 0


class NsPid(int):
    """A network namespace given by the pid of a process inside it."""


class NsFd(int):
    """A network namespace given by an open file descriptor."""


@dataclass
class LinkAttrs:
    """Attributes common to every kind of link."""

    index: int = 0
    mtu: int = 0
    tx_qlen: int = -1
    name: str = ""
    hardware_addr: bytes | None = None
    flags: InterfaceFlags = InterfaceFlags(0)
    raw_flags: int = 0
    parent_index: int = 0
    master_index: int = 0
    namespace: NsPid | NsFd | None = None
    alias: str = ""
    alt_names: list[str] | None = None
    promisc: int = 0
    allmulti: int = 0
    multi: int = 0
    encap_type: str = ""
    protinfo: Protinfo | None = None
    oper_state: LinkOperState = LinkOperState.UNKNOWN
    phys_switch_id: int = 0
    net_ns_id: int = -1
    num_tx_queues: int = 0
    num_rx_queues: int = 0
    tso_max_segs: int = 0
    tso_max_size: int = 0
    gso_max_segs: int = 0
    gso_max_size: int = 0
    gro_max_size: int = 0
    gso_ipv4_max_size: int = 0
    gro_ipv4_max_size: int = 0
    vfs: list[VfInfo] = field(default_factory=list)
    group: int = 0
    perm_hw_addr: bytes | None = None


@dataclass
class Link:
    """A network link; subclasses describe particular kinds."""

    attrs: LinkAttrs = field(default_factory=LinkAttrs)
    kind: ClassVar[str] = "device"

    def type(self) -> str:
        return self.kind


@dataclass
class Device(Link):
    """A link of no more specific kind."""

    kind: ClassVar[str] = "device"


@dataclass
class Dummy(Link):
    """A dummy link."""

    kind: ClassVar[str] = "dummy"


@dataclass
class Bridge(Link):
    """A bridge; unset options are None."""

    multicast_snooping: bool | None = None
    ageing_time: int | None = None
    hello_time: int | None = None
    vlan_filtering: bool | None = None
    vlan_default_pvid: int | None = None
    group_fwd_mask: int | None = None
    kind: ClassVar[str] = "bridge"


@dataclass
class Iptun(Link):
    """An IPv4-in-IPv4 tunnel."""

    ttl: int = 0
    tos: int = 0
    pmtu_disc: int = 0
    link: int = 0
    local: ipaddress.IPv4Address | None = None
    remote: ipaddress.IPv4Address | None = None
    encap_sport: int = 0
    encap_dport: int = 0
    encap_type: int = 0
    encap_flags: int = 0
    flow_based: bool = False
    proto: int = 0
    kind: ClassVar[str] = "ipip"


@dataclass
class GenericLink(Link):
    """A link whose kind has no dedicated class."""

    link_type: str = ""

    def type(self) -> str:
        return self.link_type


class TuntapMode(enum.IntEnum):
    """Whether a tun/tap device carries IP packets or Ethernet frames."""

    TUN = IFF_TUN
    TAP = IFF_TAP


class TuntapFlag(enum.IntFlag):
    """Options for creating a tun/tap device."""

    MULTI_QUEUE = IFF_MULTI_QUEUE
    NO_PI = IFF_NO_PI
    ONE_QUEUE = IFF_ONE_QUEUE
    VNET_HDR = IFF_VNET_HDR
    TUN_EXCL = IFF_TUN_EXCL
    DEFAULTS = IFF_TUN_EXCL | IFF_ONE_QUEUE
    MULTI_QUEUE_DEFAULTS = IFF_MULTI_QUEUE | IFF_NO_PI


@dataclass
class Tuntap(Link):
    """A tun or tap device; ``mode`` is 0 while unknown."""

    mode: int = 0
    flags: TuntapFlag = TuntapFlag(0)
    non_persist: bool = False
    queues: int = 0
    fds: list[IO[bytes]] = field(default_factory=list)
    owner: int = 0
    group: int = 0
    kind: ClassVar[str] = "tuntap"


def link_flags(raw_flags: int) -> InterfaceFlags:
    """Translate kernel interface flags into InterfaceFlags."""
    result = InterfaceFlags(0)
    for kernel_flag, flag in (
        (IFF_UP, InterfaceFlags.UP),
        (IFF_BROADCAST, InterfaceFlags.BROADCAST),
        (IFF_LOOPBACK, InterfaceFlags.LOOPBACK),
        (IFF_POINTOPOINT, InterfaceFlags.POINT_TO_POINT),
        (IFF_MULTICAST, InterfaceFlags.MULTICAST),
    ):
        if raw_flags & kernel_flag:
            result |= flag
    return result


def _parse_int(text: str) -> int:
    body = text
    sign = 1
    if body[:1] in ("+", "-"):
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if not body or not body.isascii() or not body.replace("_", "").isalnum():
        raise ValueError(f"invalid integer: {text!r}")
    lowered = body.lower()
    if lowered.startswith(("0x", "0o", "0b")):
        value = int(body, 0)
    elif len(body) > 1 and body[0] == "0":
        value = int(body[1:], 8)
    else:
        value = int(body, 10)
    value *= sign
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def read_sys_prop_as_int(ifname: str, prop: str) -> int:
    """Read an integer property of ``ifname`` from sysfs."""
    path = os.path.join(SYSFS_NET, ifname, prop)
    with open(path, encoding="ascii", errors="replace") as f:
        return _parse_int(f.read().strip())


def _byte(value: bytes) -> int:
    if not value:
        raise ValueError("attribute value is empty")
    return value[0]


def _u16(value: bytes) -> int:
    if len(value) < 2:
        raise ValueError("attribute value shorter than 2 bytes")
    return int.from_bytes(value[:2], NATIVE_ORDER)


def _u32(value: bytes) -> int:
    if len(value) < 4:
        raise ValueError("attribute value shorter than 4 bytes")
    return int.from_bytes(value[:4], NATIVE_ORDER)


def _ipv4(value: bytes) -> ipaddress.IPv4Address:
    if len(value) < 4:
        raise ValueError("attribute value shorter than 4 bytes")
    return ipaddress.IPv4Address(bytes(value[:4]))


def _cstring(value: bytes) -> str:
    return bytes(value[:-1]).decode("utf-8", errors="replace")


def _new_link(link_type: str) -> Link:
    factories = {"dummy": Dummy, "bridge": Bridge, "ipip": Iptun, "tun": Tuntap}
    factory = factories.get(link_type)
    if factory is None:
        return GenericLink(link_type=link_type)
    return factory()


def _parse_bridge_data(bridge: Bridge, data: list[RouteAttr]) -> None:
    for datum in data:
        if datum.type == IFLA_BR_AGEING_TIME:
            bridge.ageing_time = _u32(datum.value)
        elif datum.type == IFLA_BR_HELLO_TIME:
            bridge.hello_time = _u32(datum.value)
        elif datum.type == IFLA_BR_MCAST_SNOOPING:
            bridge.multicast_snooping = _byte(datum.value) == 1
        elif datum.type == IFLA_BR_VLAN_FILTERING:
            bridge.vlan_filtering = _byte(datum.value) == 1
        elif datum.type == IFLA_BR_VLAN_DEFAULT_PVID:
            bridge.vlan_default_pvid = _u16(datum.value)
        elif datum.type == IFLA_BR_GROUP_FWD_MASK:
            bridge.group_fwd_mask = _u16(datum.value)


def _parse_tuntap_data(tuntap: Tuntap, data: list[RouteAttr]) -> None:
    for datum in data:
        if datum.type == IFLA_TUN_OWNER:
            tuntap.owner = _u32(datum.value)
        elif datum.type == IFLA_TUN_GROUP:
            tuntap.group = _u32(datum.value)
        elif datum.type == IFLA_TUN_TYPE:
            tuntap.mode = _byte(datum.value)
        elif datum.type == IFLA_TUN_PERSIST:
            tuntap.non_persist = _byte(datum.value) == 0


def _parse_iptun_data(iptun: Iptun, data: list[RouteAttr]) -> None:
    for datum in data:
        kind, value = datum.type, datum.value
        if kind == IFLA_IPTUN_LOCAL:
            iptun.local = _ipv4(value)
        elif kind == IFLA_IPTUN_REMOTE:
            iptun.remote = _ipv4(value)
        elif kind == IFLA_IPTUN_TTL:
            iptun.ttl = _byte(value)
        elif kind == IFLA_IPTUN_TOS:
            iptun.tos = _byte(value)
        elif kind == IFLA_IPTUN_PMTUDISC:
            iptun.pmtu_disc = _byte(value)
        elif kind == IFLA_IPTUN_ENCAP_SPORT:
            iptun.encap_sport = ntohs(value)
        elif kind == IFLA_IPTUN_ENCAP_DPORT:
            iptun.encap_dport = ntohs(value)
        elif kind == IFLA_IPTUN_ENCAP_TYPE:
            iptun.encap_type = _u16(value)
        elif kind == IFLA_IPTUN_ENCAP_FLAGS:
            iptun.encap_flags = _u16(value)
        elif kind == IFLA_IPTUN_COLLECT_METADATA:
            iptun.flow_based = True
        elif kind == IFLA_IPTUN_PROTO:
            iptun.proto = _byte(value)


_U32_FIELDS = {
    IFLA_MTU: "mtu",
    IFLA_PROMISCUITY: "promisc",
    IFLA_LINK: "parent_index",
    IFLA_MASTER: "master_index",
    IFLA_TXQLEN: "tx_qlen",
    IFLA_PHYS_SWITCH_ID: "phys_switch_id",
    IFLA_LINK_NETNSID: "net_ns_id",
    IFLA_TSO_MAX_SEGS: "tso_max_segs",
    IFLA_TSO_MAX_SIZE: "tso_max_size",
    IFLA_GSO_MAX_SEGS: "gso_max_segs",
    IFLA_GSO_MAX_SIZE: "gso_max_size",
    IFLA_GRO_MAX_SIZE: "gro_max_size",
    IFLA_GSO_IPV4_MAX_SIZE: "gso_ipv4_max_size",
    IFLA_GRO_IPV4_MAX_SIZE: "gro_ipv4_max_size",
    IFLA_NUM_TX_QUEUES: "num_tx_queues",
    IFLA_NUM_RX_QUEUES: "num_rx_queues",
    IFLA_GROUP: "group",
}


def _fill_tuntap_from_sysfs(tuntap: Tuntap) -> None:
    ifname = tuntap.attrs.name
    try:
        flags = read_sys_prop_as_int(ifname, "tun_flags")
    except (OSError, ValueError):
        pass
    else:
        if flags & IFF_TUN:
            tuntap.mode = TuntapMode.TUN
        elif flags & IFF_TAP:
            tuntap.mode = TuntapMode.TAP
        tuntap.non_persist = not flags & IFF_PERSIST
    for prop in ("owner", "group"):
        try:
            value = read_sys_prop_as_int(ifname, prop)
        except (OSError, ValueError):
            continue
        if value > 0:
            setattr(tuntap, prop, value & 0xFFFFFFFF)


def link_deserialize(hdr_type: int | None, data: bytes) -> Link:
    """Decode a link message payload (ifinfomsg plus attributes)."""
    msg = deserialize_ifinfomsg(data)
    attrs = parse_route_attr(data[SIZEOF_IFINFOMSG:])

    base = LinkAttrs(
        index=msg.index,
        raw_flags=msg.flags,
        flags=link_flags(msg.flags),
        encap_type=msg.encap_type(),
        net_ns_id=-1,
        allmulti=1 if msg.flags & IFF_ALLMULTI else 0,
        multi=1 if msg.flags & IFF_MULTICAST else 0,
    )

    link: Link | None = None
    link_type = ""
    for attr in attrs:
        kind, value = attr.type, attr.value
        if kind == IFLA_LINKINFO:
            for info in parse_route_attr(value):
                if info.type == IFLA_INFO_KIND:
                    link_type = _cstring(info.value)
                    link = _new_link(link_type)
                elif info.type == IFLA_INFO_DATA:
                    nested = parse_route_attr(info.value)
                    if link_type == "bridge" and isinstance(link, Bridge):
                        _parse_bridge_data(link, nested)
                    elif link_type == "tun" and isinstance(link, Tuntap):
                        _parse_tuntap_data(link, nested)
                    elif link_type == "ipip" and isinstance(link, Iptun):
                        _parse_iptun_data(link, nested)
        elif kind == IFLA_ADDRESS:
            if any(value):
                base.hardware_addr = bytes(value)
        elif kind == IFLA_IFNAME:
            base.name = _cstring(value)
        elif kind == IFLA_IFALIAS:
            base.alias = _cstring(value)
        elif kind in _U32_FIELDS:
            setattr(base, _U32_FIELDS[kind], _u32(value))
        elif kind == IFLA_PROTINFO | NLA_F_NESTED:
            if hdr_type == RTM_NEWLINK and msg.family == AF_BRIDGE:
                base.protinfo = parse_protinfo(parse_route_attr(value))
        elif kind == IFLA_PROP_LIST | NLA_F_NESTED:
            base.alt_names = [
                bytes_to_string(prop.value)
                for prop in parse_route_attr(value)
                if prop.type == IFLA_ALT_IFNAME
            ]
        elif kind == IFLA_OPERSTATE:
            base.oper_state = LinkOperState(_byte(value))
        elif kind == IFLA_PERM_ADDRESS:
            if any(value):
                base.perm_hw_addr = bytes(value)

    if link is None:
        link = Device()
    link.attrs = base

    if link_type == "tun" and isinstance(link, Tuntap) and link.mode == 0:
        _fill_tuntap_from_sysfs(link)
    return link