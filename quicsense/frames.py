"""ACK frames and the variable-length integers they are built from."""

from __future__ import annotations

from dataclasses import dataclass, field

ACK_FRAME_TYPE = 0x02
MAX_ACK_RANGE = 5
MAX_VARINT = 0x3FFFFF
"""Largest value a three-byte varint can carry."""


class FrameError(ValueError):
    """Raised when a frame or varint cannot be encoded or decoded."""


@dataclass(frozen=True)
class AckFrame:
    """An acknowledgement: the largest packet seen, the delay and the ranges."""

    largest_acked: int
    ack_delay: int = 0
    first_ack_range: int = 0
    ack_ranges: tuple[int, ...] = field(default_factory=tuple)

    @property
    def num_ack_ranges(self) -> int:
        return len(self.ack_ranges)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Read one varint at ``offset``; return its value and the offset after it.

    The two top bits of the first byte select the length: below 0x40 one
    byte, below 0x80 two bytes, otherwise three bytes.
    """
    if offset >= len(data):
        raise FrameError(f"no varint at offset {offset}")
    first = data[offset]
    if first < 0x40:
        return first, offset + 1
    if first < 0x80:
        size = 2
    else:
        size = 3
    end = offset + size
    if end > len(data):
        raise FrameError(f"varint at offset {offset} needs {size} bytes")
    value = first & 0x3F
    for byte in data[offset + 1 : end]:
        value = (value << 8) | byte
    return value, end


def encode_varint(value: int) -> bytes:
    """Write ``value`` in the shortest varint form that holds it."""
    if value < 0:
        raise FrameError(f"varint {value} is negative")
    if value < 0x40:
        return bytes([value])
    if value < 0x4000:
        return bytes([0x40 | (value >> 8), value & 0xFF])
    if value <= MAX_VARINT:
        return bytes([0x80 | (value >> 16), (value >> 8) & 0xFF, value & 0xFF])
    raise FrameError(f"varint {value} exceeds {MAX_VARINT}")


def decode_ack_frame(data: bytes) -> AckFrame:
    """Parse an ACK frame; at most MAX_ACK_RANGE ranges are kept."""
    if not data:
        raise FrameError("empty ACK frame")
    if data[0] != ACK_FRAME_TYPE:
        raise FrameError(f"frame type {data[0]:#04x} is not an ACK frame")
    offset = 1
    largest_acked, offset = decode_varint(data, offset)
    ack_delay, offset = decode_varint(data, offset)
    count, offset = decode_varint(data, offset)
    count &= 0xFF
    first_ack_range, offset = decode_varint(data, offset)
    ranges = []
    for _ in range(min(count, MAX_ACK_RANGE)):
        value, offset = decode_varint(data, offset)
        ranges.append(value)
    return AckFrame(largest_acked, ack_delay, first_ack_range, tuple(ranges))


def encode_ack_frame(frame: AckFrame) -> bytes:
    """Serialise an ACK frame in the layout decode_ack_frame reads."""
    if len(frame.ack_ranges) > MAX_ACK_RANGE:
        raise FrameError(
            f"{len(frame.ack_ranges)} ACK ranges exceed the limit of {MAX_ACK_RANGE}"
        )
    parts = [
        bytes([ACK_FRAME_TYPE]),
        encode_varint(frame.largest_acked),
        encode_varint(frame.ack_delay),
        encode_varint(len(frame.ack_ranges)),
        encode_varint(frame.first_ack_range),
    ]
    parts.extend(encode_varint(r) for r in frame.ack_ranges)
    return b"".join(parts)