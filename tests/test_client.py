import logging

import pytest

from quicsense.client import (
    CLOSE_PAYLOAD,
    INITIAL_CID,
    INITIAL_PAYLOAD,
    MAX_RETRIES,
    MAX_STREAMS,
    RETRANSMIT_SLOTS,
    RETRY_TIMEOUT,
    STREAM_TIMEOUT,
    ConnectionState,
    QuicClient,
    StreamState,
)
from quicsense.congestion import CC_MIN_WINDOW
from quicsense.dtls import DtlsError
from quicsense.frames import AckFrame, encode_ack_frame
from quicsense.wire import PacketType, QuicHeader, decode_packet, encode_packet


class FakeClock:
    def __init__(self):
        self.now = 1000

    def __call__(self):
        return self.now


@pytest.fixture
def setup():
    sent = []
    clock = FakeClock()
    client = QuicClient(sent.append, clock=clock)
    return client, sent, clock


def activate(client):
    client.start_handshake()
    client.send_initial_handshake()
    client.datagram_received(
        encode_packet(QuicHeader(PacketType.HANDSHAKE, 1, 0), b"hello")
    )


def retry_ack(frame):
    return encode_packet(QuicHeader(PacketType.RETRY, 1, 9), encode_ack_frame(frame))


def test_start_handshake_registers_session(setup):
    client, _, _ = setup
    client.start_handshake()
    assert client.state == ConnectionState.HANDSHAKE
    assert client.dtls_ctx.connections == [client.dtls_session]


def test_initial_handshake_packet(setup):
    client, sent, _ = setup
    packet = client.send_initial_handshake()
    assert sent == [packet]
    header, payload = decode_packet(packet)
    assert header == QuicHeader(PacketType.INITIAL, INITIAL_CID, 0, 0)
    assert payload == INITIAL_PAYLOAD
    assert client.next_packet_number == 1
    assert [p.packet_number for p in client.pending] == [0]
    assert client.cc.bytes_in_flight == len(packet)


def test_handshake_reply_activates_connection(setup):
    client, _, _ = setup
    activate(client)
    assert client.state == ConnectionState.ACTIVE
    assert client.handshake_complete
    assert len(client.pending) == 0
    assert client.data_deadline is not None


def test_no_data_before_active(setup):
    client, sent, _ = setup
    assert client.send_application_data() is None
    assert sent == []


def test_application_data_uses_successive_streams(setup):
    client, sent, _ = setup
    activate(client)
    first = client.send_application_data()
    second = client.send_application_data()
    assert sent[-2:] == [first, second]
    h1, p1 = decode_packet(first)
    h2, _ = decode_packet(second)
    assert h1.packet_type == PacketType.ONE_RTT
    assert (h1.stream_id, h2.stream_id) == (1, 2)
    assert p1.startswith(b"Data on stream 1, packet 1, cycle 0")
    assert p1.endswith(b"\x00")
    stream = client.streams[0]
    assert stream.state is StreamState.HALF_CLOSED_LOCAL
    assert stream.write_offset == len(p1) - 1


def test_energy_report_is_logged(setup, caplog):
    client, _, _ = setup
    client.energy_meter = lambda: (1.0, 0.0, 0.0, 0.0)
    activate(client)
    with caplog.at_level(logging.INFO, logger="quicsense.client"):
        client.send_application_data()
    assert "Energy (mJ): CPU=" in caplog.text


def test_ack_removes_pending_and_samples_rtt(setup):
    client, _, clock = setup
    client.start_handshake()
    client.send_initial_handshake()
    clock.now += 50
    client.datagram_received(retry_ack(AckFrame(largest_acked=0, ack_ranges=(0,))))
    assert len(client.pending) == 0
    assert client.rtt.latest == 50


def test_three_duplicate_acks_fast_retransmit(setup):
    client, sent, _ = setup
    client.start_handshake()
    packet = client.send_initial_handshake()
    for _ in range(3):
        client.datagram_received(retry_ack(AckFrame(largest_acked=0)))
    assert client.cc.cwnd == CC_MIN_WINDOW
    assert client.retry_count == 1
    assert sent[-1] == packet
    assert len(sent) == 2


def test_retries_exhausted_closes(setup):
    client, sent, _ = setup
    client.start_handshake()
    client.send_initial_handshake()
    for _ in range(MAX_RETRIES):
        assert client.retry_packet() is True
    assert client.retry_packet() is False
    assert client.state == ConnectionState.CLOSING
    assert len(sent) == MAX_RETRIES + 1


def test_poll_retransmits_when_due(setup):
    client, sent, clock = setup
    client.start_handshake()
    client.send_initial_handshake()
    clock.now += RETRY_TIMEOUT
    assert client._poll() is False
    assert len(sent) == 2
    assert sent[1] == sent[0]


def test_retransmit_queue_bounded(setup):
    client, sent, _ = setup
    client.start_handshake()
    for _ in range(RETRANSMIT_SLOTS):
        assert client.dtls_ctx.write(client.dtls_session, b"x") == 1
    assert len(client.pending) == RETRANSMIT_SLOTS - 1
    assert len(sent) == RETRANSMIT_SLOTS
    assert decode_packet(sent[0])[0].packet_type == PacketType.HANDSHAKE


def test_window_full_refuses_write(setup):
    client, sent, _ = setup
    client.start_handshake()
    client.cc.bytes_in_flight = client.cc.cwnd
    with pytest.raises(DtlsError):
        client.dtls_ctx.write(client.dtls_session, b"x")
    assert sent == []


def test_stream_exhaustion_and_recycling(setup):
    client, _, _ = setup
    for stream_id in range(1, MAX_STREAMS + 1):
        assert client.open_stream(stream_id).stream_id == stream_id
    assert client.open_stream(MAX_STREAMS + 1) is None
    assert client.current_stream_cycle == 1
    client.streams[5].state = StreamState.HALF_CLOSED_REMOTE
    recycled = client.open_stream(200)
    assert recycled is client.streams[5]
    assert recycled.state is StreamState.OPEN
    assert recycled.stream_id == 200


def test_stream_times_out(setup):
    client, _, clock = setup
    stream = client.open_stream(7)
    clock.now += STREAM_TIMEOUT
    client._poll()
    assert not stream.in_use
    assert stream.state is StreamState.CLOSED


def test_incoming_stream_data_half_closes(setup):
    client, _, _ = setup
    activate(client)
    stream = client.open_stream(9)
    client.datagram_received(encode_packet(QuicHeader(PacketType.ONE_RTT, 1, 3, 9), b"ok"))
    assert stream.state is StreamState.HALF_CLOSED_REMOTE
    assert client.largest_received_packet == 3


def test_graceful_close_then_timer_closes(setup):
    client, sent, _ = setup
    activate(client)
    client.open_stream(4)
    client.initiate_graceful_close()
    assert client.state == ConnectionState.CLOSING
    assert all(not s.in_use for s in client.streams)
    assert decode_packet(sent[-1])[1] == CLOSE_PAYLOAD
    count = len(sent)
    client.initiate_graceful_close()
    assert len(sent) == count
    assert client.on_retry_timer() is True
    assert client.state == ConnectionState.CLOSED
    assert client.dtls_ctx is None


def test_retry_timer_during_handshake_starts_close(setup):
    client, sent, _ = setup
    client.start_handshake()
    assert client.on_retry_timer() is False
    assert client.state == ConnectionState.CLOSING
    assert decode_packet(sent[-1])[1] == CLOSE_PAYLOAD


def test_reset_packet_counters(setup):
    client, _, _ = setup
    client.send_initial_handshake()
    client.datagram_received(b"\x00")
    assert client.total_packets_sent > 0
    client.reset_packet_counters()
    assert (
        client.total_packets_sent,
        client.total_packets_received,
        client.total_bytes_sent,
        client.total_bytes_received,
    ) == (0, 0, 0, 0)


def test_short_datagram_only_counted(setup):
    client, _, _ = setup
    client.datagram_received(b"\x03\x01")
    assert client.total_packets_received == 1
    assert client.total_bytes_received == 2
    assert client.largest_received_packet == 0


def test_unknown_packet_type_warns(setup, caplog):
    client, _, _ = setup
    with caplog.at_level(logging.WARNING, logger="quicsense.client"):
        client.datagram_received(encode_packet(QuicHeader(PacketType.INITIAL, 1, 1)))
    assert "Unknown packet type 0" in caplog.text