import pytest

from quicsense.wire import (
    HEADER_LEN,
    PacketError,
    PacketType,
    QuicHeader,
    decode_packet,
    encode_packet,
)


def test_encode_layout_is_big_endian():
    header = QuicHeader(PacketType.ONE_RTT, 0x01, 0x01020304, 0x0506)
    assert encode_packet(header, b"hi") == b"\x03\x01\x01\x02\x03\x04\x05\x06hi"


def test_encode_without_payload_is_header_only():
    header = QuicHeader(PacketType.INITIAL, 1, 0, 0)
    packet = encode_packet(header)
    assert len(packet) == HEADER_LEN
    assert packet == bytes(HEADER_LEN - 7) + b"\x01" + bytes(6)


@pytest.mark.parametrize("ptype", list(PacketType))
def test_round_trip(ptype):
    header = QuicHeader(ptype, 0xAB, 0xFFFFFFFF, 0xFFFF)
    payload = b"QUIC Initial Handshake\x00"
    decoded, body = decode_packet(encode_packet(header, payload))
    assert decoded == header
    assert body == payload
    assert decoded.packet_type is ptype


def test_decode_unknown_type_keeps_int():
    data = bytes([0x09, 0x01, 0, 0, 0, 7, 0, 2])
    header, payload = decode_packet(data)
    assert header.packet_type == 0x09
    assert not isinstance(header.packet_type, PacketType)
    assert header.packet_number == 7
    assert header.stream_id == 2
    assert payload == b""


@pytest.mark.parametrize("length", range(HEADER_LEN))
def test_decode_short_packet_raises(length):
    with pytest.raises(PacketError):
        decode_packet(bytes(length))


@pytest.mark.parametrize(
    "header",
    [
        QuicHeader(256, 1, 0, 0),
        QuicHeader(0, 256, 0, 0),
        QuicHeader(0, 1, 1 << 32, 0),
        QuicHeader(0, 1, 0, 1 << 16),
        QuicHeader(0, 1, -1, 0),
    ],
)
def test_encode_out_of_range_raises(header):
    with pytest.raises(PacketError):
        encode_packet(header, b"")