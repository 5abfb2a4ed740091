"""Small helpers: size parsing, JSON output, label lookup and kernel checks."""

from __future__ import annotations

import json
import os
import re
import subprocess
from typing import IO, Any, Iterable

_SIZE_UNITS = "gGmMkK"
_UNIT_SHIFTS = {"G": 30, "g": 30, "M": 20, "m": 20, "K": 10, "k": 10, "": 0}
_UINT64_MAX = (1 << 64) - 1
_NUMBER_CHARS = re.compile(r"[0-9A-Za-z_]+")
_KERNEL_VERSION = re.compile(r"^(\d+\.\d+\.\d+)", re.ASCII)
_INTEGER = re.compile(r"[+-]?[0-9]+", re.ASCII)


def _parse_uint(text: str) -> int:
    """Parse an unsigned integer, honouring 0x, 0o, 0b and leading-zero octal."""
    if not _NUMBER_CHARS.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    lowered = text.lower()
    if lowered.startswith(("0x", "0o", "0b")):
        value = int(text, 0)
    elif len(text) > 1 and text[0] == "0":
        value = int("0o" + text[1:], 0)
    else:
        value = int(text, 0)
    if value > _UINT64_MAX:
        raise ValueError(f"value out of range: {text!r}")
    return value


def parse_size(s: str, unit: str = "") -> int:
    """Parse a size such as ``512``, ``4k``, ``16M`` or ``2G`` into bytes.

    ``unit`` is used when ``s`` carries no suffix of its own.
    """
    number = s.rstrip(_SIZE_UNITS)
    if not number:
        raise ValueError(f"{s!r}:can't parse as num[gGmMkK]: invalid syntax")
    try:
        amount = _parse_uint(number)
    except ValueError as exc:
        raise ValueError(f"{s!r}: {exc}") from None
    if len(s) > len(number):
        unit = s[len(number):]
    shift = _UNIT_SHIFTS.get(unit)
    if shift is None:
        raise ValueError(f"can not parse {s!r} as num[gGmMkK]: invalid syntax")
    return amount << shift


def write_json(w: IO[Any], v: Any) -> None:
    """Write ``v`` to ``w`` as compact JSON, escaping HTML-sensitive characters."""
    text = json.dumps(v, separators=(",", ":"), sort_keys=True,
                      ensure_ascii=False, allow_nan=False)
    text = (text.replace("<", "\\u003c").replace(">", "\\u003e")
            .replace("&", "\\u0026").replace("\u2028", "\\u2028")
            .replace("\u2029", "\\u2029"))
    if isinstance(w, (os.PathLike, str)):
        raise TypeError("write_json expects a writable stream")
    try:
        w.write(text.encode("utf-8"))
    except TypeError:
        w.write(text)


def search_arrays(arr: Iterable[str], key: str) -> str | None:
    """Return the value of the first ``key=value`` entry, or None if absent."""
    prefix = key + "="
    for entry in arr:
        if entry.startswith(prefix):
            return entry[len(prefix):]
    return None


def annotations(labels: Iterable[str]) -> tuple[str, dict[str, str]]:
    """Split ``name=value`` labels into the bundle path and user annotations."""
    bundle = ""
    user_annotations: dict[str, str] = {}
    for label in labels:
        name, sep, value = label.partition("=")
        if not sep:
            continue
        if name == "bundle":
            bundle = value
        else:
            user_annotations[name] = value
    return bundle, user_annotations


def open_pipe_file(filename: str | os.PathLike[str]) -> IO[bytes]:
    """Open ``filename`` for appending in binary mode, creating it with mode 0644."""
    fd = os.open(filename, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    return os.fdopen(fd, "ab")


def get_params(args: Iterable[str], key: str) -> str:
    """Return the value for ``key`` among ``name=value`` args, or an empty string."""
    for arg in args:
        name, sep, value = arg.partition("=")
        if sep and name == key:
            return value
    return ""


def _join(path: str, name: str) -> str:
    return os.path.normpath(os.path.join(path, name))


def pipe_path(path: str) -> str:
    """Path of the pipe status file inside ``path``."""
    return _join(path, "pipe.status")


def state_file(path: str) -> str:
    """Path of the state file inside ``path``."""
    return _join(path, "state.json")


def fifo_file(path: str) -> str:
    """Path of the synchronisation FIFO inside ``path``."""
    return _join(path, "sync.fifo")


def _atoi(part: str) -> int:
    return int(part) if _INTEGER.fullmatch(part) else 0


def compare_version(v1: str, v2: str) -> int:
    """Compare dotted versions; return -1, 0 or 1."""
    parts1 = v1.split(".")
    parts2 = v2.split(".")
    for a, b in zip(parts1, parts2):
        n1, n2 = _atoi(a), _atoi(b)
        if n1 < n2:
            return -1
        if n1 > n2:
            return 1
    if len(parts1) < len(parts2):
        return -1
    if len(parts1) > len(parts2):
        return 1
    return 0


def check_kernel_version(min_version: str) -> None:
    """Raise RuntimeError unless the running kernel is at least ``min_version``."""
    try:
        result = subprocess.run(["uname", "-r"], capture_output=True,
                                check=True, text=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise RuntimeError(f"failed to get kernel version: {exc}") from exc
    kernel_version = result.stdout.strip()
    match = _KERNEL_VERSION.match(kernel_version)
    if match is None:
        raise RuntimeError(f"failed to parse kernel version: {kernel_version}")
    current = match.group(1)
    if compare_version(current, min_version) < 0:
        raise RuntimeError(
            f"Current kernel version {current} is less than {min_version}. "
            "Please upgrade your kernel."
        )