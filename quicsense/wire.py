"""Packet header layout shared by the client and the server, plus link settings."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

# Network settings
QUIC_SERVER_PORT = 5688
QUIC_CLIENT_PORT = 8765
UIP_BUFFER_SIZE = 256
UIP_RECEIVE_WINDOW = 256

# Timeouts, in seconds
QUIC_IDLE_TIMEOUT = 60
CLIENT_CONNECTION_TIMEOUT = 30
SERVER_CONNECTION_TIMEOUT = 60
QUIC_RETRY_TIMEOUT = 2

# Limits
QUIC_MAX_CONNECTIONS = 5
QUIC_BUFFER_SIZE = 1280
CLIENT_MAX_BUFFER_LEN = 128
SERVER_MAX_BUFFER_LEN = 1280

# DTLS settings
DTLS_MAX_BUF = 256
DTLS_PEER_MAX = 1
DTLS_HANDSHAKE_MAX = 1

HEADER_LEN = 8
"""packet_type(1) + connection_id(1) + packet_number(4) + stream_id(2)."""

_HEADER = struct.Struct(">BBIH")


class PacketType(IntEnum):
    """Packet types carried in the first header byte."""

    INITIAL = 0x00
    ZERO_RTT = 0x01
    HANDSHAKE = 0x02
    ONE_RTT = 0x03
    RETRY = 0x04


class PacketError(ValueError):
    """Raised when a packet cannot be encoded or decoded."""


@dataclass(frozen=True)
class QuicHeader:
    """The fixed eight-byte packet header."""

    packet_type: int
    connection_id: int
    packet_number: int
    stream_id: int = 0


def _check_range(name: str, value: int, bits: int) -> None:
    if not 0 <= value < (1 << bits):
        raise PacketError(f"{name} {value} does not fit in {bits} bits")


def encode_packet(header: QuicHeader, payload: bytes = b"") -> bytes:
    """Return the header in network byte order followed by the payload."""
    _check_range("packet_type", int(header.packet_type), 8)
    _check_range("connection_id", header.connection_id, 8)
    _check_range("packet_number", header.packet_number, 32)
    _check_range("stream_id", header.stream_id, 16)
    return (
        _HEADER.pack(
            int(header.packet_type),
            header.connection_id,
            header.packet_number,
            header.stream_id,
        )
        + bytes(payload)
    )


def decode_packet(data: bytes) -> tuple[QuicHeader, bytes]:
    """Split a datagram into its header and payload.

    Known packet types come back as PacketType members, others as plain ints.
    """
    if len(data) < HEADER_LEN:
        raise PacketError(
            f"packet of {len(data)} bytes is shorter than the {HEADER_LEN}-byte header"
        )
    raw_type, cid, pn, stream_id = _HEADER.unpack_from(data)
    try:
        packet_type: int = PacketType(raw_type)
    except ValueError:
        packet_type = raw_type
    return QuicHeader(packet_type, cid, pn, stream_id), bytes(data[HEADER_LEN:])