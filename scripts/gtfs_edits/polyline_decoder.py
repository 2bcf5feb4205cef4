"""Decodes Google encoded polyline strings into latitude/longitude points.

The format stores each coordinate as a zigzag-encoded, variable-length delta
from the previous point at 1e-5 degree precision. Arithmetic is carried out
on 32-bit signed integers so results match the reference decoders bit for
bit, including on over-long inputs that wrap.

Typical use:
    points = decode_polyline("_p~iF~ps|U")  # one point near (38.5, -120.2)
"""

from __future__ import annotations

import ctypes
from dataclasses import dataclass

# =============================================================================
# CONSTANTS
# =============================================================================

POLYLINE_PRECISION = 1e-5
CHAR_OFFSET = 63
CHUNK_MASK = 0x1F
CONTINUATION_BIT = 0x20

# =============================================================================
# TYPES
# =============================================================================


class MalformedEncodingError(ValueError):
    """Raised when a polyline string is empty or ends in the middle of a number."""


@dataclass(frozen=True)
class Point:
    """A decoded latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float


# =============================================================================
# FUNCTIONS
# =============================================================================


def _int32(value: int) -> int:
    """Wrap an integer to the 32-bit signed range."""
    return ctypes.c_int32(value).value


def _decode_unsigned(text: str, index: int) -> tuple[int, int]:
    """Read one variable-length number starting at ``index``.

    Returns:
        The decoded value and the index just past its last character.

    Raises:
        MalformedEncodingError: The string ends before the number does.
    """
    num = 0
    shift = 0
    while True:
        if index >= len(text):
            raise MalformedEncodingError(
                f"Polyline ends mid-number at position {index}: {text!r}"
            )
        chunk = ord(text[index]) - CHAR_OFFSET
        index += 1
        num = _int32(num | ((chunk & CHUNK_MASK) << (shift & 31)))
        shift += 5
        if chunk < CONTINUATION_BIT:
            return num, index


def _decode_signed(text: str, index: int) -> tuple[int, int]:
    """Read one zigzag-encoded signed number starting at ``index``."""
    num, index = _decode_unsigned(text, index)
    if num & 0x01:
        num = ~num
    return num >> 1, index


def decode_polyline(text: str) -> list[Point]:
    """Decode an encoded polyline into an ordered list of points.

    Args:
        text: Encoded polyline (printable ASCII, no separators).

    Returns:
        Points in encoding order.

    Raises:
        MalformedEncodingError: ``text`` is empty or truncated.
    """
    if not text:
        raise MalformedEncodingError("Polyline string is empty.")

    lat = 0.0
    lon = 0.0
    index = 0
    points: list[Point] = []

    while index < len(text):
        d_lat, index = _decode_signed(text, index)
        lat = lat + d_lat * POLYLINE_PRECISION

        d_lon, index = _decode_signed(text, index)
        lon = lon + d_lon * POLYLINE_PRECISION

        points.append(Point(lat=lat, lon=lon))

    return points
