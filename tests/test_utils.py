import io
import json
import os
import subprocess
from unittest import mock

import pytest

from boots import utils


@pytest.mark.parametrize("text", ["5", "1024", "0"])
def test_parse_size_plain_number(text):
    assert utils.parse_size(text, "") == int(text)


def test_parse_size_units_scale():
    assert utils.parse_size("1k", "") == utils.parse_size("1024", "")
    assert utils.parse_size("1K", "") == utils.parse_size("1k", "")
    assert utils.parse_size("1m", "") == utils.parse_size("1024k", "")
    assert utils.parse_size("1G", "") == utils.parse_size("1024M", "")
    assert utils.parse_size("3k", "") == 3 * utils.parse_size("1k", "")


def test_parse_size_default_unit_applies_without_suffix():
    assert utils.parse_size("2", "M") == utils.parse_size("2m", "")
    assert utils.parse_size("2k", "M") == utils.parse_size("2048", "")


def test_parse_size_prefixes():
    assert utils.parse_size("0x10", "") == utils.parse_size("16", "")
    assert utils.parse_size("010", "") == utils.parse_size("8", "")
    assert utils.parse_size("0b11", "") == utils.parse_size("3", "")


@pytest.mark.parametrize("text", ["", "K", "gg", "10KK", "-5", "abc", " 5", "+5", "09"])
def test_parse_size_rejects(text):
    with pytest.raises(ValueError):
        utils.parse_size(text, "")


def test_parse_size_rejects_bad_default_unit():
    with pytest.raises(ValueError):
        utils.parse_size("5", "T")


def test_write_json_bytes_roundtrip():
    buf = io.BytesIO()
    value = {"b": [1, 2], "a": "x"}
    utils.write_json(buf, value)
    assert json.loads(buf.getvalue()) == value
    assert b" " not in buf.getvalue()


def test_write_json_text_stream_escapes_html():
    buf = io.StringIO()
    utils.write_json(buf, {"k": "<a&b>"})
    out = buf.getvalue()
    assert "<" not in out and "&" not in out
    assert json.loads(out) == {"k": "<a&b>"}


def test_search_arrays():
    env = ["PATH=/bin", "HOME=/root", "EMPTY="]
    assert utils.search_arrays(env, "HOME") == "/root"
    assert utils.search_arrays(env, "EMPTY") == ""
    assert utils.search_arrays(env, "MISSING") is None
    assert utils.search_arrays(env, "HOM") is None


def test_annotations():
    bundle, user = utils.annotations(["bundle=/tmp/b", "a=1", "broken", "c=x=y"])
    assert bundle == "/tmp/b"
    assert user == {"a": "1", "c": "x=y"}


def test_get_params():
    args = ["name=foo", "flag", "size=10"]
    assert utils.get_params(args, "size") == "10"
    assert utils.get_params(args, "flag") == ""
    assert utils.get_params(args, "missing") == ""


def test_paths():
    assert utils.pipe_path("/run/c1") == os.path.join("/run/c1", "pipe.status")
    assert utils.state_file("/run/c1/") == os.path.join("/run/c1", "state.json")
    assert utils.fifo_file("/run//c1") == os.path.join("/run/c1", "sync.fifo")


def test_open_pipe_file_appends(tmp_path):
    target = tmp_path / "pipe.status"
    with utils.open_pipe_file(target) as f:
        f.write(b"one\n")
    with utils.open_pipe_file(target) as f:
        f.write(b"two\n")
    assert target.read_bytes() == b"one\ntwo\n"


@pytest.mark.parametrize(
    "v1,v2,expected",
    [
        ("1.2.3", "1.2.3", 0),
        ("1.2.3", "1.2.4", -1),
        ("1.10.0", "1.9.0", 1),
        ("4.18", "4.18.0", -1),
        ("5.0.0", "5.0", 1),
    ],
)
def test_compare_version(v1, v2, expected):
    assert utils.compare_version(v1, v2) == expected


def test_compare_version_antisymmetric():
    pairs = [("1.2", "1.3"), ("2.0.1", "2.0.0"), ("3", "3.0")]
    for a, b in pairs:
        assert utils.compare_version(a, b) == -utils.compare_version(b, a)


def _uname(output):
    return subprocess.CompletedProcess(["uname", "-r"], 0, stdout=output, stderr="")


def test_check_kernel_version_ok():
    with mock.patch("subprocess.run", return_value=_uname("5.15.0-91-generic\n")) as run:
        assert utils.check_kernel_version("5.10.0") is None
    assert run.call_args.args[0] == ["uname", "-r"]


def test_check_kernel_version_too_old():
    with mock.patch("subprocess.run", return_value=_uname("4.18.0-el8\n")):
        with pytest.raises(RuntimeError, match="4.18.0 is less than 5.10.0"):
            utils.check_kernel_version("5.10.0")


def test_check_kernel_version_unparsable():
    with mock.patch("subprocess.run", return_value=_uname("weird\n")):
        with pytest.raises(RuntimeError, match="failed to parse"):
            utils.check_kernel_version("5.10.0")


def test_check_kernel_version_command_fails():
    with mock.patch("subprocess.run", side_effect=OSError("no uname")):
        with pytest.raises(RuntimeError, match="failed to get kernel version"):
            utils.check_kernel_version("5.10.0")