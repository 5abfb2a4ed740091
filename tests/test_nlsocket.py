import errno
import struct
import threading

import pytest

from boots.nlmsg import (
    NLM_F_ACK_TLVS,
    NLM_F_DUMP,
    NLM_F_DUMP_INTR,
    NLM_F_MULTI,
    NLMSG_DONE,
    NLMSG_ERROR,
    RTM_GETLINK,
    RTM_NEWLINK,
    NetlinkRequest,
    nlm_align,
    rta_align,
)
from boots.nlsocket import (
    NetlinkMessage,
    SocketHandle,
    decode_error,
    execute,
    execute_iter,
    parse_netlink_messages,
)

OUR_PID = 4242


def raw(kind, flags, seq, pid, payload=b""):
    length = 16 + len(payload)
    body = struct.pack("=IHHII", length, kind, flags, seq, pid) + payload
    return body + b"\x00" * (nlm_align(length) - length)


def err_payload(code):
    return struct.pack("=i", code)


class FakeSocket:
    def __init__(self, batches, sender=0):
        self.lock = threading.Lock()
        self.batches = list(batches)
        self.sender = sender
        self.sent = []
        self.closed = False

    def send(self, request):
        self.sent.append(request.serialize())

    def get_pid(self):
        return OUR_PID

    def receive(self):
        return parse_netlink_messages(self.batches.pop(0)), self.sender

    def close(self):
        self.closed = True


def make_request(fake, flags=NLM_F_DUMP):
    handle = SocketHandle(socket=fake)
    return NetlinkRequest(RTM_GETLINK, flags, sockets={0: handle}), handle


def test_parse_two_messages():
    data = raw(RTM_NEWLINK, NLM_F_MULTI, 7, 9, b"abc") + raw(NLMSG_DONE, 0, 7, 9)
    msgs = parse_netlink_messages(data)
    assert len(msgs) == 2
    assert msgs[0].type == RTM_NEWLINK
    assert msgs[0].data == b"abc"
    assert msgs[0].length == 19
    assert msgs[0].seq == 7 and msgs[0].pid == 9
    assert msgs[1].type == NLMSG_DONE
    assert msgs[1].data == b""


def test_parse_rejects_bad_length():
    data = struct.pack("=IHHII", 200, RTM_NEWLINK, 0, 1, 1)
    with pytest.raises(OSError) as info:
        parse_netlink_messages(data)
    assert info.value.errno == errno.EINVAL


def test_decode_error_done_and_ack():
    assert decode_error(NetlinkMessage(16, NLMSG_DONE, 0, 1, 1, b"")) is None
    assert decode_error(NetlinkMessage(20, NLMSG_ERROR, 0, 1, 1, err_payload(0))) is None


def test_decode_error_errno():
    error = decode_error(
        NetlinkMessage(20, NLMSG_ERROR, 0, 1, 1, err_payload(-errno.ENODEV)))
    assert isinstance(error, OSError)
    assert error.errno == errno.ENODEV


def test_decode_error_extended_message():
    echo = struct.pack("=IHHII", 16, RTM_GETLINK, 0, 1, 1)
    text = b"bad attr\x00"
    attr = struct.pack("=HH", 4 + len(text), 1) + text
    attr += b"\x00" * (rta_align(len(attr)) - len(attr))
    payload = err_payload(-errno.EINVAL) + echo + attr
    error = decode_error(NetlinkMessage(0, NLMSG_ERROR, NLM_F_ACK_TLVS, 1, 1, payload))
    assert error.errno == errno.EINVAL
    assert "bad attr" in str(error)


def test_decode_error_short_payload():
    with pytest.raises(ValueError):
        decode_error(NetlinkMessage(18, NLMSG_ERROR, 0, 1, 1, b"\x01\x02"))


def test_execute_collects_multipart_dump():
    batches = [
        raw(RTM_NEWLINK, NLM_F_MULTI, 1, OUR_PID, b"one")
        + raw(RTM_NEWLINK, NLM_F_MULTI, 1, OUR_PID, b"two"),
        raw(NLMSG_DONE, NLM_F_MULTI, 1, OUR_PID, err_payload(0)),
    ]
    fake = FakeSocket(batches)
    request, handle = make_request(fake)
    assert execute(request, 0, RTM_NEWLINK) == [b"one", b"two"]
    assert request.seq == handle.seq == 1
    assert fake.sent == [request.serialize()]


def test_execute_filters_type_pid_and_seq():
    batches = [
        raw(RTM_NEWLINK, NLM_F_MULTI, 99, OUR_PID, b"stale")
        + raw(RTM_NEWLINK, NLM_F_MULTI, 1, OUR_PID + 1, b"other")
        + raw(20, NLM_F_MULTI, 1, OUR_PID, b"wrongtype")
        + raw(RTM_NEWLINK, NLM_F_MULTI, 1, OUR_PID, b"keep")
        + raw(NLMSG_DONE, NLM_F_MULTI, 1, OUR_PID),
    ]
    request, _ = make_request(FakeSocket(batches))
    assert execute(request, 0, RTM_NEWLINK) == [b"keep"]


def test_execute_single_reply_stops():
    batches = [raw(RTM_NEWLINK, 0, 1, OUR_PID, b"only")]
    fake = FakeSocket(batches)
    request, _ = make_request(fake, 0)
    assert execute(request, 0) == [b"only"]


def test_execute_ack_returns_nothing():
    batches = [raw(NLMSG_ERROR, 0, 1, OUR_PID, err_payload(0))]
    request, _ = make_request(FakeSocket(batches), 0)
    assert execute(request, 0) == []


def test_execute_raises_kernel_error():
    batches = [raw(NLMSG_ERROR, 0, 1, OUR_PID, err_payload(-errno.EEXIST))]
    request, _ = make_request(FakeSocket(batches), 0)
    with pytest.raises(OSError) as info:
        execute(request, 0)
    assert info.value.errno == errno.EEXIST


def test_execute_dump_interrupted():
    batches = [raw(RTM_NEWLINK, NLM_F_MULTI | NLM_F_DUMP_INTR, 1, OUR_PID, b"x")]
    request, _ = make_request(FakeSocket(batches))
    with pytest.raises(OSError) as info:
        execute(request, 0)
    assert info.value.errno == errno.EINTR


def test_execute_wrong_sender():
    batches = [raw(NLMSG_DONE, 0, 1, OUR_PID)]
    request, _ = make_request(FakeSocket(batches, sender=55))
    with pytest.raises(RuntimeError, match="Wrong sender portid 55"):
        execute(request, 0)


def test_execute_iter_is_lazy_and_releases_lock():
    batches = [
        raw(RTM_NEWLINK, NLM_F_MULTI, 1, OUR_PID, b"a")
        + raw(RTM_NEWLINK, NLM_F_MULTI, 1, OUR_PID, b"b")
        + raw(NLMSG_DONE, NLM_F_MULTI, 1, OUR_PID),
    ]
    fake = FakeSocket(batches)
    request, _ = make_request(fake)
    iterator = execute_iter(request, 0)
    assert fake.sent == []
    assert next(iterator) == b"a"
    assert fake.lock.locked()
    iterator.close()
    assert not fake.lock.locked()


def test_handle_sequence_increments():
    fake = FakeSocket([raw(NLMSG_DONE, 0, 1, OUR_PID), raw(NLMSG_DONE, 0, 2, OUR_PID)])
    handle = SocketHandle(socket=fake)
    first = NetlinkRequest(RTM_GETLINK, 0, sockets={0: handle})
    second = NetlinkRequest(RTM_GETLINK, 0, sockets={0: handle})
    execute(first, 0)
    execute(second, 0)
    assert (first.seq, second.seq) == (1, 2)


def test_socket_handle_close():
    fake = FakeSocket([])
    SocketHandle(socket=fake).close()
    assert fake.closed
    empty = SocketHandle()
    empty.close()
    assert empty.socket is None