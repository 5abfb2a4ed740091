import ipaddress

import pytest

from boots.addr import (
    FAMILY_V4,
    FAMILY_V6,
    Addr,
    get_ip_family,
    parse_addr,
    parse_ipnet,
)


def test_parse_ipnet_keeps_host_address():
    net = parse_ipnet("192.168.1.10/24")
    assert net.ip == ipaddress.ip_address("192.168.1.10")
    assert net.network.prefixlen == 24


def test_parse_ipnet_v6():
    net = parse_ipnet("fd00::5/64")
    assert net.ip == ipaddress.ip_address("fd00::5")
    assert net.network.prefixlen == 64


@pytest.mark.parametrize("bad", [
    "10.0.0.1", "10.0.0.1/33", "10.0.0.1/255.255.255.0",
    "not-an-ip/24", "fe80::1%eth0/64", "", "10.0.0.1/",
])
def test_parse_ipnet_rejects(bad):
    with pytest.raises(ValueError):
        parse_ipnet(bad)


def test_parse_addr_with_label():
    addr = parse_addr("10.1.2.3/16 eth0:1")
    assert addr.label == "eth0:1"
    assert addr.ipnet == ipaddress.ip_interface("10.1.2.3/16")


def test_parse_addr_without_label():
    addr = parse_addr("10.1.2.3/16")
    assert addr.label == ""


def test_str_round_trip():
    for text in ["10.1.2.3/16 eth0", "10.1.2.3/16", "fd00::1/64 br0"]:
        assert str(parse_addr(text)) == text


def test_str_without_network():
    assert str(Addr(label="x")) == "<nil> x"


def test_equal_compares_ip_and_prefix():
    a = parse_addr("10.0.0.1/24")
    assert a.equal(parse_addr("10.0.0.1/24 lbl"))
    assert not a.equal(parse_addr("10.0.0.1/16"))
    assert not a.equal(parse_addr("10.0.0.2/24"))


def test_equal_treats_mapped_v4_as_v4():
    a = Addr(ipnet=ipaddress.ip_interface("10.0.0.1/24"))
    b = Addr(ipnet=ipaddress.IPv6Interface("::ffff:10.0.0.1/24"))
    assert a.equal(b)


def test_peer_equal():
    a = Addr(peer=parse_ipnet("10.0.0.2/32"))
    assert a.peer_equal(Addr(peer=parse_ipnet("10.0.0.2/32")))
    assert not a.peer_equal(Addr(peer=parse_ipnet("10.0.0.3/32")))
    assert not a.peer_equal(Addr())


def test_get_ip_family():
    assert get_ip_family("10.0.0.1") == FAMILY_V4
    assert get_ip_family(ipaddress.ip_address("::1")) == FAMILY_V6
    assert get_ip_family("::ffff:10.0.0.1") == FAMILY_V4
    assert get_ip_family(parse_ipnet("fd00::1/64")) == FAMILY_V6
    assert get_ip_family(None) == FAMILY_V4


def test_get_ip_family_invalid():
    with pytest.raises(ValueError):
        get_ip_family("nonsense")