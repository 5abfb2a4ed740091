"""High-level link and address operations over a netlink route socket."""

from __future__ import annotations

import errno
import fcntl
import ipaddress
import os
import struct
from typing import IO

from .addr import FAMILY_V4, Addr, get_ip_family
from .links import (
    IFF_BROADCAST,
    IFF_LOOPBACK,
    IFF_MULTICAST,
    IFF_POINTOPOINT,
    IFF_TAP,
    IFF_TUN,
    IFF_UP,
    IFLA_BR_AGEING_TIME,
    IFLA_BR_GROUP_FWD_MASK,
    IFLA_BR_HELLO_TIME,
    IFLA_BR_MCAST_SNOOPING,
    IFLA_BR_VLAN_DEFAULT_PVID,
    IFLA_BR_VLAN_FILTERING,
    IFLA_IPTUN_COLLECT_METADATA,
    IFLA_IPTUN_ENCAP_DPORT,
    IFLA_IPTUN_ENCAP_FLAGS,
    IFLA_IPTUN_ENCAP_SPORT,
    IFLA_IPTUN_ENCAP_TYPE,
    IFLA_IPTUN_LINK,
    IFLA_IPTUN_LOCAL,
    IFLA_IPTUN_PMTUDISC,
    IFLA_IPTUN_PROTO,
    IFLA_IPTUN_REMOTE,
    IFLA_IPTUN_TOS,
    IFLA_IPTUN_TTL,
    Bridge,
    InterfaceFlags,
    Iptun,
    Link,
    LinkAttrs,
    LinkNotFoundError,
    NsFd,
    NsPid,
    Tuntap,
    TuntapFlag,
    link_deserialize,
)
from .nlmsg import (
    IFA_ADDRESS,
    IFA_BROADCAST,
    IFA_CACHEINFO,
    IFA_FLAGS,
    IFA_LABEL,
    IFA_LOCAL,
    IFLA_ADDRESS,
    IFLA_ALT_IFNAME,
    IFLA_EXT_MASK,
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
    IFLA_LINKINFO,
    IFLA_MASTER,
    IFLA_MTU,
    IFLA_NET_NS_FD,
    IFLA_NET_NS_PID,
    IFLA_NUM_RX_QUEUES,
    IFLA_NUM_TX_QUEUES,
    IFLA_TXQLEN,
    NETLINK_ROUTE,
    NLM_F_ACK,
    NLM_F_CREATE,
    NLM_F_DUMP,
    NLM_F_EXCL,
    RTEXT_FILTER_VF,
    RTM_GETLINK,
    RTM_NEWADDR,
    RTM_NEWLINK,
    RTM_SETLINK,
    IfaCacheInfo,
    IfAddrmsg,
    IfInfomsg,
    NetlinkRequest,
    RtAttr,
    htons,
    new_netlink_request,
    non_zero_terminated,
    uint8_attr,
    uint16_attr,
    uint32_attr,
    zero_terminated,
)
from .nlsocket import execute

AF_UNSPEC = 0
IFNAMSIZ = 16
TUN_DEVICE = "/dev/net/tun"

TUNSETIFF = 0x400454CA
TUNSETPERSIST = 0x400454CB
TUNSETOWNER = 0x400454CC
TUNSETGROUP = 0x400454CE

_IFREQ = struct.Struct(f"{IFNAMSIZ}sH22x")

_FLAG_MAP = (
    (InterfaceFlags.UP, IFF_UP),
    (InterfaceFlags.BROADCAST, IFF_BROADCAST),
    (InterfaceFlags.LOOPBACK, IFF_LOOPBACK),
    (InterfaceFlags.POINT_TO_POINT, IFF_POINTOPOINT),
    (InterfaceFlags.MULTICAST, IFF_MULTICAST),
)


def _bool_byte(value: bool) -> bytes:
    return b"\x01" if value else b"\x00"


def _add_bridge_attrs(bridge: Bridge, link_info: RtAttr) -> None:
    data = link_info.add_rt_attr(IFLA_INFO_DATA)
    if bridge.multicast_snooping is not None:
        data.add_rt_attr(IFLA_BR_MCAST_SNOOPING, _bool_byte(bridge.multicast_snooping))
    if bridge.ageing_time is not None:
        data.add_rt_attr(IFLA_BR_AGEING_TIME, uint32_attr(bridge.ageing_time))
    if bridge.hello_time is not None:
        data.add_rt_attr(IFLA_BR_HELLO_TIME, uint32_attr(bridge.hello_time))
    if bridge.vlan_filtering is not None:
        data.add_rt_attr(IFLA_BR_VLAN_FILTERING, _bool_byte(bridge.vlan_filtering))
    if bridge.vlan_default_pvid is not None:
        data.add_rt_attr(IFLA_BR_VLAN_DEFAULT_PVID, uint16_attr(bridge.vlan_default_pvid))
    if bridge.group_fwd_mask is not None:
        data.add_rt_attr(IFLA_BR_GROUP_FWD_MASK, uint16_attr(bridge.group_fwd_mask))


def _ipv4_bytes(ip) -> bytes | None:
    if ip is None:
        return None
    address = ipaddress.ip_address(ip) if not isinstance(
        ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ip
    if isinstance(address, ipaddress.IPv6Address):
        address = address.ipv4_mapped
        if address is None:
            return None
    return address.packed


def _add_iptun_attrs(iptun: Iptun, link_info: RtAttr) -> None:
    data = link_info.add_rt_attr(IFLA_INFO_DATA)
    if iptun.flow_based:
        data.add_rt_attr(IFLA_IPTUN_COLLECT_METADATA, b"")
        return
    local = _ipv4_bytes(iptun.local)
    if local is not None:
        data.add_rt_attr(IFLA_IPTUN_LOCAL, local)
    remote = _ipv4_bytes(iptun.remote)
    if remote is not None:
        data.add_rt_attr(IFLA_IPTUN_REMOTE, remote)
    if iptun.link:
        data.add_rt_attr(IFLA_IPTUN_LINK, uint32_attr(iptun.link))
    data.add_rt_attr(IFLA_IPTUN_PMTUDISC, uint8_attr(iptun.pmtu_disc))
    data.add_rt_attr(IFLA_IPTUN_TTL, uint8_attr(iptun.ttl))
    data.add_rt_attr(IFLA_IPTUN_TOS, uint8_attr(iptun.tos))
    data.add_rt_attr(IFLA_IPTUN_ENCAP_TYPE, uint16_attr(iptun.encap_type))
    data.add_rt_attr(IFLA_IPTUN_ENCAP_FLAGS, uint16_attr(iptun.encap_flags))
    data.add_rt_attr(IFLA_IPTUN_ENCAP_SPORT, htons(iptun.encap_sport))
    data.add_rt_attr(IFLA_IPTUN_ENCAP_DPORT, htons(iptun.encap_dport))
    data.add_rt_attr(IFLA_IPTUN_PROTO, uint8_attr(iptun.proto))


def build_link_request(link: Link, flags: int) -> NetlinkRequest:
    """Build the RTM_NEWLINK request that creates ``link``."""
    base = link.attrs
    if not base.name and not isinstance(link, Tuntap):
        raise ValueError("LinkAttrs.Name cannot be empty")

    request = new_netlink_request(RTM_NEWLINK, flags)
    msg = IfInfomsg(family=AF_UNSPEC)
    for portable, kernel in _FLAG_MAP:
        if base.flags & portable:
            msg.change |= kernel
            msg.flags |= kernel
    msg.index = base.index
    request.add_data(msg)

    if base.parent_index:
        request.add_data(RtAttr(IFLA_LINK, uint32_attr(base.parent_index)))
    elif link.type() in ("ipvlan", "ipoib"):
        raise ValueError(f"Can't create {link.type()} link without ParentIndex")

    request.add_data(RtAttr(IFLA_IFNAME, zero_terminated(base.name)))
    if base.alias:
        request.add_data(RtAttr(IFLA_IFALIAS, base.alias.encode("utf-8")))
    if base.mtu > 0:
        request.add_data(RtAttr(IFLA_MTU, uint32_attr(base.mtu)))
    if base.tx_qlen >= 0:
        request.add_data(RtAttr(IFLA_TXQLEN, uint32_attr(base.tx_qlen)))
    if base.hardware_addr is not None:
        request.add_data(RtAttr(IFLA_ADDRESS, bytes(base.hardware_addr)))

    for value, attr_type in (
        (base.num_tx_queues, IFLA_NUM_TX_QUEUES),
        (base.num_rx_queues, IFLA_NUM_RX_QUEUES),
        (base.gso_max_segs, IFLA_GSO_MAX_SEGS),
        (base.gso_max_size, IFLA_GSO_MAX_SIZE),
        (base.gro_max_size, IFLA_GRO_MAX_SIZE),
        (base.gso_ipv4_max_size, IFLA_GSO_IPV4_MAX_SIZE),
        (base.gro_ipv4_max_size, IFLA_GRO_IPV4_MAX_SIZE),
        (base.group, IFLA_GROUP),
    ):
        if value > 0:
            request.add_data(RtAttr(attr_type, uint32_attr(value)))

    if base.namespace is not None:
        if isinstance(base.namespace, NsPid):
            request.add_data(RtAttr(IFLA_NET_NS_PID, uint32_attr(base.namespace)))
        elif isinstance(base.namespace, NsFd):
            request.add_data(RtAttr(IFLA_NET_NS_FD, uint32_attr(base.namespace)))
        else:
            raise TypeError("namespace must be an NsPid or an NsFd")

    link_info = RtAttr(IFLA_LINKINFO)
    link_info.add_rt_attr(IFLA_INFO_KIND, non_zero_terminated(link.type()))
    if isinstance(link, Iptun):
        _add_iptun_attrs(link, link_info)
    elif isinstance(link, Bridge):
        _add_bridge_attrs(link, link_info)
    request.add_data(link_info)
    return request


def _check_label(link: Link | None, addr: Addr) -> None:
    if link is not None and addr.label and not addr.label.startswith(link.attrs.name):
        raise ValueError("label must begin with interface name")


def build_addr_request(link: Link | None, addr: Addr, flags: int) -> NetlinkRequest:
    """Build the RTM_NEWADDR request that assigns ``addr`` to ``link``.

    A missing IPv4 broadcast address is computed and stored on ``addr``.
    """
    if addr.ipnet is None:
        raise ValueError("address has no IP network")
    _check_label(link, addr)

    request = new_netlink_request(RTM_NEWADDR, flags)
    family = get_ip_family(addr.ipnet)
    msg = IfAddrmsg(family=family, scope=addr.scope & 0xFF)
    msg.index = addr.link_index if link is None else link.attrs.index

    mask_net = addr.peer if addr.peer is not None else addr.ipnet
    prefixlen = mask_net.network.prefixlen
    msg.prefixlen = prefixlen
    request.add_data(msg)

    def packed(ip) -> bytes:
        if family == FAMILY_V4:
            if isinstance(ip, ipaddress.IPv6Address):
                ip = ip.ipv4_mapped
            return ip.packed
        if isinstance(ip, ipaddress.IPv4Address):
            return ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + ip.packed).packed
        return ip.packed

    local = packed(addr.ipnet.ip)
    request.add_data(RtAttr(IFA_LOCAL, local))
    peer = packed(addr.peer.ip) if addr.peer is not None else local
    request.add_data(RtAttr(IFA_ADDRESS, peer))

    if addr.flags:
        if addr.flags <= 0xFF:
            msg.flags = addr.flags
        else:
            request.add_data(RtAttr(IFA_FLAGS, uint32_attr(addr.flags)))

    if family == FAMILY_V4:
        if addr.broadcast is None and prefixlen < 31:
            host_bits = 32 - min(prefixlen, 32)
            value = int.from_bytes(local, "big") | ((1 << host_bits) - 1)
            addr.broadcast = ipaddress.IPv4Address(value)
        if addr.broadcast is not None:
            request.add_data(RtAttr(IFA_BROADCAST, addr.broadcast.packed))
        if addr.label:
            request.add_data(RtAttr(IFA_LABEL, zero_terminated(addr.label)))

    if addr.valid_lft > 0 or addr.prefered_lft > 0:
        info = IfaCacheInfo(prefered=addr.prefered_lft, valid=addr.valid_lft)
        request.add_data(RtAttr(IFA_CACHEINFO, info.serialize()))
    return request


def _close_all(files: list[IO[bytes]]) -> None:
    for f in files:
        f.close()


class Handle:
    """Issues link and address requests; may reuse sockets given in ``sockets``."""

    def __init__(self) -> None:
        self.sockets: dict | None = None
        self.lookup_by_dump = False

    def _attach(self, request: NetlinkRequest) -> NetlinkRequest:
        if self.sockets is not None:
            request.sockets = self.sockets
        return request

    def _request(self, proto: int, flags: int) -> NetlinkRequest:
        return self._attach(new_netlink_request(proto, flags))

    def link_list(self) -> list[Link]:
        """Return every link known to the kernel."""
        request = self._request(RTM_GETLINK, NLM_F_DUMP)
        request.add_data(IfInfomsg(family=AF_UNSPEC))
        request.add_data(RtAttr(IFLA_EXT_MASK, uint32_attr(RTEXT_FILTER_VF)))
        return [link_deserialize(None, m)
                for m in execute(request, NETLINK_ROUTE, RTM_NEWLINK)]

    def _link_by_name_dump(self, name: str) -> Link:
        for link in self.link_list():
            if link.attrs.name == name or name in (link.attrs.alt_names or []):
                return link
        raise LinkNotFoundError(f"Link {name} not found")

    def link_by_name(self, name: str) -> Link:
        """Look a link up by name or alternative name."""
        if self.lookup_by_dump:
            return self._link_by_name_dump(name)
        request = self._request(RTM_GETLINK, NLM_F_ACK)
        request.add_data(IfInfomsg(family=AF_UNSPEC))
        request.add_data(RtAttr(IFLA_EXT_MASK, uint32_attr(RTEXT_FILTER_VF)))
        attr_type = IFLA_ALT_IFNAME if len(name) > 15 else IFLA_IFNAME
        request.add_data(RtAttr(attr_type, zero_terminated(name)))
        try:
            return self._exec_get_link(request)
        except OSError as exc:
            if exc.errno == errno.EINVAL:
                self.lookup_by_dump = True
                return self._link_by_name_dump(name)
            raise

    @staticmethod
    def _exec_get_link(request: NetlinkRequest) -> Link:
        try:
            messages = execute(request, NETLINK_ROUTE, 0)
        except OSError as exc:
            if exc.errno == errno.ENODEV:
                raise LinkNotFoundError("Link not found") from exc
            raise
        if not messages:
            raise LinkNotFoundError("Link not found")
        if len(messages) > 1:
            raise RuntimeError("More than one link found")
        return link_deserialize(None, messages[0])

    def _ensure_index(self, attrs: LinkAttrs | None) -> None:
        if attrs is None or attrs.index != 0:
            return
        try:
            found = self.link_by_name(attrs.name)
        except (OSError, LookupError, RuntimeError, ValueError):
            return
        attrs.index = found.attrs.index

    def link_add(self, link: Link) -> None:
        """Create ``link``."""
        self._link_modify(link, NLM_F_CREATE | NLM_F_EXCL | NLM_F_ACK)

    def _link_modify(self, link: Link, flags: int) -> None:
        if isinstance(link, Tuntap):
            self._tuntap_add(link)
            return
        request = self._attach(build_link_request(link, flags))
        execute(request, NETLINK_ROUTE, 0)
        base = link.attrs
        self._ensure_index(base)
        if base.master_index:
            self.link_set_master_by_index(link, base.master_index)

    def _tuntap_add(self, tuntap: Tuntap) -> None:
        base = tuntap.attrs
        mode = int(tuntap.mode)
        if mode < IFF_TUN or mode > IFF_TAP:
            raise ValueError(f"Tuntap.Mode {mode} unknown")

        queues = tuntap.queues
        req_flags = int(tuntap.flags)
        if queues == 0:
            queues = 1
            if req_flags == 0:
                req_flags = int(TuntapFlag.DEFAULTS)
        elif req_flags == 0:
            req_flags = int(TuntapFlag.MULTI_QUEUE_DEFAULTS)
        req_flags |= mode
        ifreq = _IFREQ.pack(base.name.encode("utf-8")[:15], req_flags & 0xFFFF)

        files: list[IO[bytes]] = []
        for i in range(queues):
            try:
                fd = os.open(TUN_DEVICE, os.O_RDWR | os.O_CLOEXEC)
            except OSError:
                _close_all(files)
                raise
            try:
                result = self._tun_ioctl(fd, TUNSETIFF, ifreq, "TUNSETIFF", i)
                self._tun_ioctl(fd, TUNSETOWNER, tuntap.owner, "TUNSETOWNER", i)
                self._tun_ioctl(fd, TUNSETGROUP, tuntap.group, "TUNSETGROUP", i)
                try:
                    os.set_blocking(fd, False)
                except OSError as exc:
                    raise OSError(exc.errno, f"Tuntap set to non-blocking failed [{i}], "
                                             f"err {exc.strerror}") from exc
            except OSError:
                os.close(fd)
                _close_all(files)
                raise
            files.append(os.fdopen(fd, "r+b", buffering=0))
            if i == 0:
                base.name = result[:IFNAMSIZ].strip(b"\x00").decode("utf-8", "replace")

        if not tuntap.non_persist:
            try:
                fcntl.ioctl(files[0].fileno(), TUNSETPERSIST, 1)
            except OSError as exc:
                _close_all(files)
                raise OSError(exc.errno, "Tuntap IOCTL TUNSETPERSIST failed, "
                                         f"errno {exc.strerror}") from exc

        self._ensure_index(base)
        if base.master_index:
            try:
                self.link_set_master_by_index(tuntap, base.master_index)
            except Exception:
                if not tuntap.non_persist:
                    try:
                        fcntl.ioctl(files[0].fileno(), TUNSETPERSIST, 0)
                    except OSError:
                        pass
                _close_all(files)
                raise

        if tuntap.queues == 0:
            _close_all(files)
        else:
            tuntap.fds = files

    @staticmethod
    def _tun_ioctl(fd: int, request: int, arg, name: str, index: int):
        try:
            return fcntl.ioctl(fd, request, arg)
        except OSError as exc:
            raise OSError(exc.errno, f"Tuntap IOCTL {name} failed [{index}], "
                                     f"errno {exc.strerror}") from exc

    def link_set_up(self, link: Link) -> None:
        """Bring ``link`` up."""
        base = link.attrs
        self._ensure_index(base)
        request = self._request(RTM_NEWLINK, NLM_F_ACK)
        request.add_data(IfInfomsg(family=AF_UNSPEC, index=base.index,
                                   flags=IFF_UP, change=IFF_UP))
        execute(request, NETLINK_ROUTE, 0)

    def link_set_master(self, link: Link, master: Link | None) -> None:
        """Enslave ``link`` to ``master``."""
        index = 0
        if master is not None:
            self._ensure_index(master.attrs)
            index = master.attrs.index
        if index <= 0:
            raise LinkNotFoundError("Device does not exist")
        self.link_set_master_by_index(link, index)

    def link_set_master_by_index(self, link: Link, master_index: int) -> None:
        """Enslave ``link`` to the link with index ``master_index``."""
        base = link.attrs
        self._ensure_index(base)
        request = self._request(RTM_SETLINK, NLM_F_ACK)
        request.add_data(IfInfomsg(family=AF_UNSPEC, index=base.index))
        request.add_data(RtAttr(IFLA_MASTER, uint32_attr(master_index)))
        execute(request, NETLINK_ROUTE, 0)

    def addr_add(self, link: Link | None, addr: Addr) -> None:
        """Assign ``addr`` to ``link`` (or to ``addr.link_index`` if no link)."""
        _check_label(link, addr)
        if link is not None:
            self._ensure_index(link.attrs)
        request = build_addr_request(link, addr,
                                     NLM_F_CREATE | NLM_F_EXCL | NLM_F_ACK)
        execute(self._attach(request), NETLINK_ROUTE, 0)


_default_handle = Handle()


def link_list() -> list[Link]:
    return _default_handle.link_list()


def link_add(link: Link) -> None:
    _default_handle.link_add(link)


def link_by_name(name: str) -> Link:
    return _default_handle.link_by_name(name)


def link_set_up(link: Link) -> None:
    _default_handle.link_set_up(link)


def link_set_master(link: Link, master: Link | None) -> None:
    _default_handle.link_set_master(link, master)


def addr_add(link: Link | None, addr: Addr) -> None:
    _default_handle.addr_add(link, addr)