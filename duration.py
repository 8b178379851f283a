"""Parse duration expressions such as ``8760h``, ``1d12h`` or ``1.5w``."""

import re
from datetime import timedelta

_TERM = re.compile(r"(\d*(?:\.\d*)?)([a-zµμ]+)")

# Largest span a signed 64-bit nanosecond count can hold, about 292 years.
MAX_SECONDS = (2 ** 63 - 1) / 1e9

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(text):
    """Return the ``timedelta`` described by ``text``.

    The expression is an optional sign followed by one or more
    ``<number><unit>`` terms. ``0`` is the only unit-less value accepted.
    Raises ``ValueError`` for anything else.
    """
    raw = text
    text = text.strip()
    sign = 1
    if text[:1] in ("-", "+"):
        if text[0] == "-":
            sign = -1
        text = text[1:]

    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration: {raw!r}")

    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _TERM.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration: {raw!r}")
        number, unit = match.groups()
        if number in ("", "."):
            raise ValueError(f"missing number in duration: {raw!r}")
        if unit not in _UNIT_SECONDS:
            raise ValueError(f"unknown unit {unit!r} in duration: {raw!r}")
        seconds += float(number) * _UNIT_SECONDS[unit]
        pos = match.end()

    if seconds > MAX_SECONDS:
        raise ValueError(f"duration out of range: {raw!r}")
    try:
        return timedelta(seconds=sign * seconds)
    except OverflowError as e:
        raise ValueError(f"duration out of range: {raw!r}") from e
