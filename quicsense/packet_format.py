"""Compact five-byte packet layout and a minimal endpoint that speaks it."""

from __future__ import annotations

import logging
import random
import struct
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, Tuple

from .wire import PacketError

log = logging.getLogger("quicsense.packet_format")

MAX_OUTSTANDING_PACKETS = 10
RETRANSMIT_TIMEOUT = 2.0
HANDSHAKE_PORT = 3001
COMPACT_HEADER_LEN = 5

_HEADER = struct.Struct("<BHH")
_HANDSHAKE = struct.Struct("<BBI")
_ACK = struct.Struct("<HH")

Address = Tuple[str, int]
SendFunc = Callable[[bytes, Address], object]


class CompactType(IntEnum):
    """Packet types of the compact layout; only the first four fit in two bits."""

    INITIAL = 0x00
    HANDSHAKE = 0x01
    STREAM = 0x02
    ACK = 0x03
    NACK = 0x04


@dataclass(frozen=True)
class CompactHeader:
    """Type (2 bits), stream id (6 bits), packet number and payload length."""

    packet_type: int
    stream_id: int = 0
    packet_num: int = 0
    length: int = 0


@dataclass(frozen=True)
class HandshakeBody:
    """Handshake payload: version, cipher suite and a nonce."""

    version: int
    cipher_suite: int
    nonce: int

    SIZE = _HANDSHAKE.size

    def to_bytes(self) -> bytes:
        try:
            return _HANDSHAKE.pack(self.version, self.cipher_suite, self.nonce)
        except struct.error as exc:
            raise PacketError(f"handshake body out of range: {exc}") from None

    @classmethod
    def from_bytes(cls, data: bytes) -> "HandshakeBody":
        if len(data) < _HANDSHAKE.size:
            raise PacketError("handshake body is too short")
        return cls(*_HANDSHAKE.unpack_from(data))


@dataclass(frozen=True)
class AckBody:
    """Acknowledgement payload: the packet acknowledged and the one refused."""

    ack_packet_num: int
    nack_packet_num: int = 0

    SIZE = _ACK.size

    def to_bytes(self) -> bytes:
        try:
            return _ACK.pack(self.ack_packet_num, self.nack_packet_num)
        except struct.error as exc:
            raise PacketError(f"ack body out of range: {exc}") from None

    @classmethod
    def from_bytes(cls, data: bytes) -> "AckBody":
        if len(data) < _ACK.size:
            raise PacketError("ack body is too short")
        return cls(*_ACK.unpack_from(data))


def encode_compact(header: CompactHeader, payload: bytes = b"") -> bytes:
    """Pack a header and payload; the length field is taken from the payload."""
    packet_type = int(header.packet_type)
    if not 0 <= packet_type <= 3:
        raise PacketError(f"packet type {packet_type} does not fit in 2 bits")
    if not 0 <= header.stream_id < 64:
        raise PacketError(f"stream id {header.stream_id} does not fit in 6 bits")
    if not 0 <= header.packet_num <= 0xFFFF:
        raise PacketError(f"packet number {header.packet_num} does not fit in 16 bits")
    if len(payload) > 0xFFFF:
        raise PacketError("payload is longer than 65535 bytes")
    first = packet_type | (header.stream_id << 2)
    return _HEADER.pack(first, header.packet_num, len(payload)) + bytes(payload)


def decode_compact(data: bytes) -> tuple[CompactHeader, bytes]:
    """Split a compact packet into its header and the payload it announces."""
    if len(data) < COMPACT_HEADER_LEN:
        raise PacketError(
            f"packet of {len(data)} bytes is shorter than the "
            f"{COMPACT_HEADER_LEN}-byte header"
        )
    first, packet_num, length = _HEADER.unpack_from(data)
    raw_type = first & 0x03
    packet_type: int = CompactType(raw_type)
    payload = bytes(data[COMPACT_HEADER_LEN : COMPACT_HEADER_LEN + length])
    if len(payload) < length:
        raise PacketError(f"payload announces {length} bytes but {len(payload)} follow")
    return CompactHeader(packet_type, first >> 2, packet_num, length), payload


@dataclass
class OutstandingPacket:
    """A sent packet kept for a possible retransmission."""

    packet_num: int
    sent_time: float
    data: bytes
    retransmit_count: int = 0


class CompactEndpoint:
    """Sends handshakes and acknowledges stream data in the compact layout."""

    def __init__(
        self,
        nonce_source: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.next_packet_num = 1
        self.outstanding: list[OutstandingPacket] = []
        self._nonce_source = nonce_source or (lambda: random.getrandbits(16))
        self._clock = clock

    def _take_packet_num(self) -> int:
        number = self.next_packet_num
        self.next_packet_num = (number + 1) & 0xFFFF
        return number

    def perform_handshake(self, send: SendFunc, peer: str) -> bytes:
        """Send a handshake packet to ``peer`` and remember it; return the packet."""
        body = HandshakeBody(version=1, cipher_suite=1, nonce=self._nonce_source())
        header = CompactHeader(CompactType.HANDSHAKE, 0, self._take_packet_num())
        packet = encode_compact(header, body.to_bytes())
        if len(self.outstanding) < MAX_OUTSTANDING_PACKETS:
            self.outstanding.append(
                OutstandingPacket(header.packet_num, self._clock(), packet)
            )
        send(packet, (peer, HANDSHAKE_PORT))
        return packet

    def handle_datagram(
        self, data: bytes, sender: Address, send: SendFunc
    ) -> Optional[bytes]:
        """Process one datagram; return the acknowledgement sent back, if any."""
        try:
            header, payload = decode_compact(data)
        except PacketError as exc:
            log.debug("Dropping datagram: %s", exc)
            return None

        if header.packet_type == CompactType.ACK:
            try:
                ack = AckBody.from_bytes(payload)
            except PacketError:
                log.warning("Malformed ACK payload")
                return None
            if ack.nack_packet_num != 0:
                log.info("Received NACK for packet %d", ack.nack_packet_num)
            else:
                log.info("Received ACK for packet %d", ack.ack_packet_num)
            return None

        if header.packet_type == CompactType.STREAM:
            log.info(
                "Received stream data on stream %d: %s",
                header.stream_id,
                payload.decode("utf-8", "replace"),
            )
            reply_header = CompactHeader(
                CompactType.ACK, header.stream_id, self._take_packet_num()
            )
            reply = encode_compact(
                reply_header, AckBody(ack_packet_num=header.packet_num).to_bytes()
            )
            send(reply, sender)
            return reply

        if header.packet_type == CompactType.HANDSHAKE:
            log.info("Handshake completed")
            return None

        log.info("Received unknown packet type: %d", int(header.packet_type))
        return None