"""Netlink sockets and the request/response exchange with the kernel."""

from __future__ import annotations

import errno
import os
import socket
import struct
import threading
from dataclasses import dataclass, field
from typing import Iterator

from .nlmsg import (
    NLM_F_ACK_TLVS,
    NLM_F_DUMP_INTR,
    NLM_F_MULTI,
    NLMSG_DONE,
    NLMSG_ERROR,
    NLMSG_HDRLEN,
    NLMSGERR_ATTR_MSG,
    PID_KERNEL,
    RECEIVE_BUFFER_SIZE,
    SIZEOF_RTATTR,
    NetlinkRequest,
    nlm_align,
    rta_align,
)

AF_NETLINK = getattr(socket, "AF_NETLINK", 16)
SOL_NETLINK = 270
NETLINK_EXT_ACK = 11

# Timeout applied to freshly opened sockets, in seconds.
SOCKET_TIMEOUT = 60.0
# Ask the kernel for extended error messages on new sockets.
ENABLE_ERROR_MESSAGE_REPORTING = False

_NLMSGHDR = struct.Struct("=IHHII")
_RTATTR = struct.Struct("=HH")
_ERRNO = struct.Struct("=i")
_TIMEVAL = struct.Struct("@ll")


def _os_error(code: int, detail: str | None = None) -> OSError:
    text = os.strerror(code)
    if detail:
        text = f"{text}: {detail}"
    return OSError(code, text)


@dataclass(frozen=True)
class NetlinkMessage:
    """One message received from a netlink socket."""

    length: int
    type: int
    flags: int
    seq: int
    pid: int
    data: bytes


def parse_netlink_messages(data: bytes) -> list[NetlinkMessage]:
    """Split a received buffer into netlink messages."""
    messages = []
    buf = memoryview(bytes(data))
    while len(buf) >= NLMSG_HDRLEN:
        length, kind, flags, seq, pid = _NLMSGHDR.unpack_from(buf)
        aligned = nlm_align(length)
        if length < NLMSG_HDRLEN or aligned > len(buf):
            raise _os_error(errno.EINVAL, "malformed netlink message")
        messages.append(NetlinkMessage(length, kind, flags, seq, pid,
                                       bytes(buf[NLMSG_HDRLEN:length])))
        buf = buf[aligned:]
    return messages


def decode_error(message: NetlinkMessage) -> OSError | None:
    """Return the error carried by a DONE or ERROR message, or None on success."""
    if message.type == NLMSG_DONE and not message.data:
        return None
    if len(message.data) < _ERRNO.size:
        raise ValueError("netlink error message too short")
    (code,) = _ERRNO.unpack_from(message.data)
    if code == 0:
        return None
    code = -code
    detail = None

    unread = message.data[_ERRNO.size:]
    if message.flags & NLM_F_ACK_TLVS and len(unread) > NLMSG_HDRLEN:
        (echo_len,) = struct.unpack_from("=I", unread)
        unread = unread[nlm_align(echo_len):]
        while len(unread) >= SIZEOF_RTATTR:
            attr_len, attr_type = _RTATTR.unpack_from(unread)
            if attr_len < SIZEOF_RTATTR:
                break
            value = unread[SIZEOF_RTATTR:attr_len]
            if attr_type == NLMSGERR_ATTR_MSG:
                detail = value.split(b"\x00", 1)[0].decode("utf-8", "replace")
            unread = unread[rta_align(attr_len):]
    return _os_error(code, detail)


class NetlinkSocket:
    """A bound netlink socket of a given protocol."""

    def __init__(self, protocol: int) -> None:
        self.lock = threading.Lock()
        self._sock = socket.socket(AF_NETLINK, socket.SOCK_RAW, protocol)
        try:
            self._sock.bind((0, 0))
        except OSError:
            self._sock.close()
            raise

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> NetlinkSocket:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    @staticmethod
    def _timeval(seconds: float) -> bytes:
        whole = int(seconds)
        micros = int(round((seconds - whole) * 1_000_000))
        return _TIMEVAL.pack(whole, micros)

    def set_send_timeout(self, seconds: float) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDTIMEO,
                              self._timeval(seconds))

    def set_receive_timeout(self, seconds: float) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVTIMEO,
                              self._timeval(seconds))

    def set_ext_ack(self, enable: bool) -> None:
        self._sock.setsockopt(SOL_NETLINK, NETLINK_EXT_ACK, 1 if enable else 0)

    def send(self, request: NetlinkRequest) -> None:
        self._sock.sendto(request.serialize(), (0, 0))

    def get_pid(self) -> int:
        address = self._sock.getsockname()
        if not isinstance(address, tuple):
            raise RuntimeError("Wrong socket type")
        return address[0]

    def receive(self) -> tuple[list[NetlinkMessage], int]:
        """Read one datagram; return its messages and the sender's port id."""
        data, address = self._sock.recvfrom(RECEIVE_BUFFER_SIZE)
        if not isinstance(address, tuple):
            raise RuntimeError("Error converting to netlink sockaddr")
        if len(data) < NLMSG_HDRLEN:
            raise RuntimeError("Got short response from netlink")
        padded = data + b"\x00" * (nlm_align(len(data)) - len(data))
        return parse_netlink_messages(padded), address[0]


@dataclass
class SocketHandle:
    """A socket kept open for reuse, with its own sequence counter."""

    socket: NetlinkSocket | None = None
    seq: int = 0
    _seq_lock: threading.Lock = field(default_factory=threading.Lock,
                                      repr=False, compare=False)

    def _next_seq(self) -> int:
        with self._seq_lock:
            self.seq = (self.seq + 1) & 0xFFFFFFFF
            return self.seq

    def close(self) -> None:
        if self.socket is not None:
            self.socket.close()


def _exchange(sock, request: NetlinkRequest, res_type: int,
              shared: bool) -> Iterator[bytes]:
    sock.send(request)
    pid = sock.get_pid()
    while True:
        messages, sender = sock.receive()
        if sender != PID_KERNEL:
            raise RuntimeError(
                f"Wrong sender portid {sender}, expected {PID_KERNEL}")
        for message in messages:
            if message.seq != request.seq:
                if shared:
                    continue
                raise RuntimeError(
                    f"Wrong Seq nr {message.seq}, expected {request.seq}")
            if message.pid != pid:
                continue
            if message.flags & NLM_F_DUMP_INTR:
                raise _os_error(errno.EINTR)
            if message.type in (NLMSG_DONE, NLMSG_ERROR):
                error = decode_error(message)
                if error is not None:
                    raise error
                return
            if res_type and message.type != res_type:
                continue
            yield message.data
            if not message.flags & NLM_F_MULTI:
                return


def execute_iter(request: NetlinkRequest, sock_type: int,
                 res_type: int = 0) -> Iterator[bytes]:
    """Send ``request`` and yield the payload of each matching reply."""
    handle = (request.sockets or {}).get(sock_type)
    sock = None
    if handle is not None:
        sock = handle.socket
        request.seq = handle._next_seq()

    if sock is not None:
        with sock.lock:
            yield from _exchange(sock, request, res_type, shared=True)
        return

    with NetlinkSocket(sock_type) as own:
        own.set_send_timeout(SOCKET_TIMEOUT)
        own.set_receive_timeout(SOCKET_TIMEOUT)
        if ENABLE_ERROR_MESSAGE_REPORTING:
            own.set_ext_ack(True)
        yield from _exchange(own, request, res_type, shared=False)


def execute(request: NetlinkRequest, sock_type: int,
            res_type: int = 0) -> list[bytes]:
    """Send ``request`` and return the payloads of all matching replies."""
    return list(execute_iter(request, sock_type, res_type))