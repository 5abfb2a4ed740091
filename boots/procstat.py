"""Reading process name, state and start time from /proc/<pid>/stat."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass

_UINT64_MAX = (1 << 64) - 1
_MIN_AFTER_NAME = 20 * 2 + 1
_START_TIME_FIELD = 22


class State(str, enum.Enum):
    """Process state letter as reported by the kernel."""

    DEAD = "X"
    DISK_SLEEP = "D"
    RUNNING = "R"
    SLEEPING = "S"
    STOPPED = "T"
    TRACING_STOP = "t"
    ZOMBIE = "Z"
    PARKED = "P"
    IDLE = "I"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and len(value) == 1:
            member = str.__new__(cls, value)
            member._name_ = "UNKNOWN"
            member._value_ = value
            return member
        return None

    def __str__(self) -> str:
        return _DESCRIPTIONS.get(self.value, f"unknown ({self.value})")


_DESCRIPTIONS = {
    "X": "dead",
    "D": "disk sleep",
    "R": "running",
    "S": "sleeping",
    "T": "stopped",
    "t": "tracing stop",
    "Z": "zombie",
    "P": "parked",
    "I": "idle",
}


@dataclass(frozen=True)
class Stat:
    """The fields of a process stat record that are of interest."""

    name: str
    state: State
    start_time: int


def stat(pid: int) -> Stat:
    """Read and parse the stat record of process ``pid``."""
    with open(os.path.join("/proc", str(pid), "stat"), encoding="utf-8",
              errors="surrogateescape") as f:
        return parse_stat(f.read())


def parse_stat(data: str) -> Stat:
    """Parse the text of a /proc/<pid>/stat file."""
    first = data.find("(")
    if first < 0 or first + _MIN_AFTER_NAME >= len(data):
        raise ValueError(f"invalid stat data (no comm or too short): {data!r}")
    last = data.rfind(")")
    if last <= first or last + _MIN_AFTER_NAME >= len(data):
        raise ValueError(f"invalid stat data (no comm or too short): {data!r}")

    name = data[first + 1:last]
    rest = data[last + 2:]
    state = State(rest[0])

    # Fields after the name start at field 3; skip up to the start time.
    pos = 0
    spaces = _START_TIME_FIELD - 3
    while spaces > 0 and pos < len(rest):
        if rest[pos] == " ":
            spaces -= 1
        pos += 1
    end = rest.find(" ", pos)
    if end < 0:
        raise ValueError(f"invalid stat data (too short): {rest!r}")
    field = rest[pos:end]
    if not field.isascii() or not field.isdigit() or int(field) > _UINT64_MAX:
        raise ValueError(f"invalid stat data (bad start time): {field!r}")
    return Stat(name=name, state=state, start_time=int(field))