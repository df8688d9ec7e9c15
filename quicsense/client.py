"""Client side of the connection: handshake, streams, acknowledgements and closing."""

from __future__ import annotations

import argparse
import asyncio
import logging
import socket
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Callable, Optional

from .congestion import INITIAL_WINDOW_SIZE, CongestionController
from .dtls import DtlsContext, DtlsError, DtlsSession
from .energy import energy_consumption
from .frames import FrameError, decode_ack_frame
from .rtt import RttEstimator
from .wire import (
    CLIENT_CONNECTION_TIMEOUT,
    QUIC_CLIENT_PORT,
    QUIC_RETRY_TIMEOUT,
    QUIC_SERVER_PORT,
    PacketError,
    PacketType,
    QuicHeader,
    decode_packet,
    encode_packet,
)

log = logging.getLogger("quicsense.client")

CLOCK_SECOND = 1000
"""Clock ticks per second; the client clock counts milliseconds."""

SERVER_ADDR = "fe80::202:2:2:2"
INITIAL_CID = 0x01
MAX_RETRIES = 3
CONNECTION_TIMEOUT = CLOCK_SECOND * CLIENT_CONNECTION_TIMEOUT
RETRY_TIMEOUT = CLOCK_SECOND * QUIC_RETRY_TIMEOUT
MAX_STREAMS = 100
STREAM_TIMEOUT = CLOCK_SECOND
MIN_RTT_ESTIMATE = CLOCK_SECOND // 10
MAX_RTT_ESTIMATE = CLOCK_SECOND * 2
PACKET_COUNTER_RESET_INTERVAL = CLOCK_SECOND * 60
STARTUP_DELAY = CLOCK_SECOND * 2
FIRST_DATA_DELAY = CLOCK_SECOND * 5
RETRANSMIT_SLOTS = 4
"""Ring size of the retransmission queue; one slot always stays empty."""
PAYLOAD_LIMIT = 39
POLL_INTERVAL = 0.05

PSK = b"secret"
INITIAL_PAYLOAD = b"QUIC Initial Handshake\x00"
CLOSE_PAYLOAD = b"CONNECTION_CLOSE\x00"

EnergyMeter = Callable[[], "tuple[float, float, float, float]"]


class ConnectionState(IntEnum):
    INIT = 0
    HANDSHAKE = 1
    ACTIVE = 2
    CLOSING = 3
    CLOSED = 4


class StreamState(Enum):
    CLOSED = 0
    OPEN = 1
    HALF_CLOSED_LOCAL = 2
    HALF_CLOSED_REMOTE = 3
    RESET = 4


@dataclass
class ClientStream:
    """One stream slot; ``deadline`` is the tick at which it times out."""

    stream_id: int = 0
    read_offset: int = 0
    write_offset: int = 0
    max_data: int = INITIAL_WINDOW_SIZE
    state: StreamState = StreamState.CLOSED
    in_use: bool = False
    deadline: Optional[int] = None


@dataclass(eq=False)
class PendingPacket:
    """A packet awaiting acknowledgement, with its retransmission deadline."""

    data: bytes
    packet_number: int
    send_time: int
    interval: int
    deadline: Optional[int]


def _default_clock() -> int:
    return int(time.monotonic() * CLOCK_SECOND)


class QuicClient:
    """Connection state machine; datagrams go out through ``send``."""

    def __init__(
        self,
        send: Callable[[bytes], object],
        clock: Callable[[], int] = _default_clock,
        server_addr: str = SERVER_ADDR,
        server_port: int = QUIC_SERVER_PORT,
        energy_meter: Optional[EnergyMeter] = None,
    ) -> None:
        self._send = send
        self.clock = clock
        self.energy_meter = energy_meter
        self.state = ConnectionState.INIT
        self.connection_id = INITIAL_CID
        self.dtls_ctx: Optional[DtlsContext] = None
        self.dtls_session = DtlsSession(server_addr, server_port)

        self.largest_acked_packet = 0
        self.next_packet_number = 0
        self.largest_received_packet = 0
        self.pending: deque[PendingPacket] = deque()

        self.streams = [ClientStream() for _ in range(MAX_STREAMS)]
        self.flow_control_window = INITIAL_WINDOW_SIZE

        self.rtt = RttEstimator()
        self.cc = CongestionController()

        self.retry_count = 0
        self.handshake_complete = False

        self.total_packets_sent = 0
        self.total_packets_received = 0
        self.total_bytes_sent = 0
        self.total_bytes_received = 0
        self.current_stream_cycle = 0

        self.retry_deadline: Optional[int] = None
        self.data_deadline: Optional[int] = None
        self.counter_deadline: Optional[int] = None
        self.data_interval = FIRST_DATA_DELAY

        self._next_stream = 1
        self._data_counter = 0

    # --- bookkeeping -------------------------------------------------

    def _count_sent(self, length: int) -> None:
        self.total_packets_sent += 1
        self.total_bytes_sent += length

    def _transmit(self, packet: bytes, packet_number: int) -> None:
        self._send(packet)
        self.next_packet_number += 1
        self._count_sent(len(packet))
        self.cc.on_packet_sent(packet_number, len(packet))

    def _queue_for_retransmission(self, packet: bytes, packet_number: int) -> None:
        if len(self.pending) >= RETRANSMIT_SLOTS - 1:
            log.warning("Retransmit queue full, dropping packet %d", packet_number)
            return
        now = self.clock()
        interval = max(RETRY_TIMEOUT, self.rtt.smoothed * 2)
        self.pending.append(
            PendingPacket(packet, packet_number, now, interval, now + interval)
        )
        self._count_sent(len(packet))

    def _retry(self, pkt: PendingPacket) -> bool:
        if self.retry_count < MAX_RETRIES and self.state < ConnectionState.CLOSING:
            self.retry_count += 1
            log.info("Retry #%d for packet %d", self.retry_count, pkt.packet_number)
            self._send(pkt.data)
            pkt.deadline = self.clock() + pkt.interval
            return True
        self.cc.on_loss(self.next_packet_number)
        log.error("Max retries reached for packet %d", pkt.packet_number)
        pkt.deadline = None
        self.state = ConnectionState.CLOSING
        return False

    def retry_packet(self) -> bool:
        """Resend the oldest unacknowledged packet; False once retries are exhausted."""
        if not self.pending:
            return False
        return self._retry(self.pending[0])

    # --- acknowledgements --------------------------------------------

    def _handle_ack(self, ack) -> None:
        if ack.largest_acked == self.largest_acked_packet:
            if self.cc.on_dup_ack(self.next_packet_number):
                self.retry_packet()
        else:
            self.cc.dup_ack_count = 0
            self.largest_acked_packet = ack.largest_acked

        bytes_acked = 0
        for acked in ack.ack_ranges:
            if self.pending and acked == self.pending[0].packet_number:
                head = self.pending.popleft()
                self.rtt.update(self.clock() - head.send_time)
                bytes_acked += acked
        self.cc.on_ack(ack.largest_acked, bytes_acked)

        if ack.ack_delay > self.rtt.smoothed * 2:
            self.flow_control_window = max(
                INITIAL_WINDOW_SIZE, self.flow_control_window // 2
            )
        else:
            self.flow_control_window = min(
                self.flow_control_window + 1024, INITIAL_WINDOW_SIZE * 4
            )

    # --- streams -----------------------------------------------------

    def _claim(self, stream: ClientStream, stream_id: int) -> ClientStream:
        stream.stream_id = stream_id
        stream.state = StreamState.OPEN
        stream.read_offset = 0
        stream.write_offset = 0
        stream.max_data = INITIAL_WINDOW_SIZE
        stream.in_use = True
        stream.deadline = self.clock() + STREAM_TIMEOUT
        return stream

    def open_stream(self, stream_id: int) -> Optional[ClientStream]:
        """Take a free slot, else recycle a remotely closed one; None when full."""
        free = next((s for s in self.streams if not s.in_use), None)
        if free is not None:
            return self._claim(free, stream_id)
        recyclable = next(
            (s for s in self.streams if s.state is StreamState.HALF_CLOSED_REMOTE), None
        )
        if recyclable is not None:
            self.close_stream(recyclable)
            return self._claim(recyclable, stream_id)
        log.warning("No available streams, recycling stream IDs")
        self.current_stream_cycle += 1
        return None

    def close_stream(self, stream: Optional[ClientStream]) -> None:
        if stream is not None and stream.in_use:
            stream.deadline = None
            stream.state = StreamState.CLOSED
            stream.in_use = False
            log.debug("Stream %d closed", stream.stream_id)

    def reset_packet_counters(self) -> None:
        log.info(
            "Packet Counters Reset - Sent: %d, Received: %d, Bytes Sent: %d, "
            "Bytes Received: %d",
            self.total_packets_sent,
            self.total_packets_received,
            self.total_bytes_sent,
            self.total_bytes_received,
        )
        self.total_packets_sent = 0
        self.total_packets_received = 0
        self.total_bytes_sent = 0
        self.total_bytes_received = 0

    # --- DTLS handlers -----------------------------------------------

    def _send_to_peer(self, ctx: DtlsContext, session: DtlsSession, data: bytes) -> int:
        if not self.cc.can_send(len(data)):
            log.debug(
                "CC: Window full (in_flight=%d, cwnd=%d)",
                self.cc.bytes_in_flight,
                self.cc.cwnd,
            )
            raise DtlsError("congestion window full")
        packet_type = (
            PacketType.HANDSHAKE
            if self.state == ConnectionState.HANDSHAKE
            else PacketType.ONE_RTT
        )
        pn = self.next_packet_number
        packet = encode_packet(QuicHeader(packet_type, self.connection_id, pn), data)
        if self.state == ConnectionState.HANDSHAKE:
            self._queue_for_retransmission(packet, pn)
        self._transmit(packet, pn)
        log.debug("Sent DTLS message (%d bytes), PN: %d", len(data), pn)
        return len(data)

    def _read_from_peer(self, ctx: DtlsContext, session: DtlsSession, data: bytes) -> int:
        log.info(
            "Received DTLS message (%d bytes): %s",
            len(data),
            data.decode("utf-8", "replace"),
        )
        self.total_packets_received += 1
        self.total_bytes_received += len(data)
        if not self.handshake_complete:
            self.handshake_complete = True
            self.state = ConnectionState.ACTIVE
            log.info("DTLS handshake completed")
            self.pending.clear()
            self.retry_count = 0
            self.data_interval = self.rtt.smoothed * 3
            self.data_deadline = self.clock() + self.data_interval
        return 0

    @staticmethod
    def _psk_info(ctx: DtlsContext, session: DtlsSession, identity: bytes) -> bytes:
        return PSK

    # --- connection --------------------------------------------------

    def start_handshake(self) -> None:
        """Create the DTLS context and open a session to the server."""
        self.dtls_ctx = DtlsContext(
            write_handler=self._send_to_peer,
            read_handler=self._read_from_peer,
            psk_handler=self._psk_info,
            app_data=self,
        )
        try:
            self.dtls_ctx.connect(self.dtls_session)
        except DtlsError:
            log.error("DTLS connect failed")
            return
        self.state = ConnectionState.HANDSHAKE
        log.info("DTLS handshake initiated")

    def send_initial_handshake(self) -> bytes:
        """Send the Initial packet and queue it for retransmission."""
        pn = self.next_packet_number
        packet = encode_packet(
            QuicHeader(PacketType.INITIAL, self.connection_id, pn), INITIAL_PAYLOAD
        )
        self._queue_for_retransmission(packet, pn)
        self._transmit(packet, pn)
        log.info("Initial handshake packet sent (PN: %d)", pn)
        return packet

    def send_application_data(self) -> Optional[bytes]:
        """Send one data packet on the next stream; return it, or None if held back."""
        if self.state != ConnectionState.ACTIVE:
            log.warning("Cannot send data, connection not active")
            return None

        stream = self.open_stream(self._next_stream)
        if stream is None:
            self._next_stream = 1
            stream = self.open_stream(self._next_stream)
            if stream is None:
                log.error("Failed to open any stream")
                return None
        self._next_stream = self._next_stream % MAX_STREAMS + 1

        self._data_counter = (self._data_counter + 1) & 0xFF
        text = (
            f"Data on stream {stream.stream_id}, packet {self._data_counter}, "
            f"cycle {self.current_stream_cycle}"
        )[:PAYLOAD_LIMIT]
        pn = self.next_packet_number
        packet = encode_packet(
            QuicHeader(PacketType.ONE_RTT, self.connection_id, pn, stream.stream_id),
            text.encode() + b"\x00",
        )
        if self.energy_meter is not None:
            log.info("%s", energy_consumption(*self.energy_meter()).format())

        if stream.write_offset + len(text) > stream.max_data:
            log.warning("Stream %d flow control exceeded", stream.stream_id)
            return None
        if not self.cc.can_send(len(packet)):
            log.debug("CC: Window full, delaying stream %d data", stream.stream_id)
            return None

        self._transmit(packet, pn)
        stream.write_offset += len(text)
        stream.state = StreamState.HALF_CLOSED_LOCAL
        stream.deadline = self.clock() + STREAM_TIMEOUT
        log.info(
            "Sent data on stream %d (PN: %d, Offset: %d): %s",
            stream.stream_id,
            pn,
            stream.write_offset,
            text,
        )
        return packet

    def initiate_graceful_close(self) -> None:
        """Close every stream and tell the server the connection is ending."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self.state = ConnectionState.CLOSING
        for stream in self.streams:
            self.close_stream(stream)
        pn = self.next_packet_number
        self.next_packet_number += 1
        packet = encode_packet(
            QuicHeader(PacketType.ONE_RTT, self.connection_id, pn), CLOSE_PAYLOAD
        )
        self._send(packet)
        self._count_sent(len(packet))
        self.cc.on_packet_sent(pn, len(packet))
        log.info("Initiated graceful closure")
        self.retry_deadline = self.clock() + self.rtt.smoothed * 2

    def on_retry_timer(self) -> bool:
        """Handle the connection timer; True once the connection is closed."""
        if self.state == ConnectionState.CLOSING:
            if self.dtls_ctx is not None:
                self.dtls_ctx.close()
                self.dtls_ctx = None
            log.info("Connection closed")
            self.state = ConnectionState.CLOSED
            return True
        log.warning("Connection timeout")
        self.initiate_graceful_close()
        return False

    def datagram_received(self, data: bytes) -> None:
        """Process one datagram from the server."""
        self.total_packets_received += 1
        self.total_bytes_received += len(data)
        try:
            header, payload = decode_packet(data)
        except PacketError:
            return
        log.debug(
            "Packet type: %d, CID: %02x, PN: %d, Stream: %d",
            int(header.packet_type),
            header.connection_id,
            header.packet_number,
            header.stream_id,
        )
        if header.packet_number > self.largest_received_packet:
            self.largest_received_packet = header.packet_number

        if header.packet_type in (PacketType.HANDSHAKE, PacketType.ONE_RTT):
            if self.dtls_ctx is not None:
                self.dtls_ctx.handle_message(self.dtls_session, payload)
            if header.stream_id > 0:
                stream = next(
                    (s for s in self.streams if s.stream_id == header.stream_id), None
                )
                if stream is not None and stream.state is StreamState.OPEN:
                    stream.state = StreamState.HALF_CLOSED_REMOTE
                    stream.deadline = self.clock() + STREAM_TIMEOUT
        elif header.packet_type == PacketType.RETRY:
            try:
                ack = decode_ack_frame(payload)
            except FrameError:
                return
            self._handle_ack(ack)
        else:
            log.warning("Unknown packet type %d", int(header.packet_type))

    def _poll(self) -> bool:
        """Fire every timer that is due; True once the connection has closed."""
        now = self.clock()
        for stream in self.streams:
            if stream.in_use and stream.deadline is not None and now >= stream.deadline:
                log.warning("Stream %d timeout - closing", stream.stream_id)
                self.close_stream(stream)
        for pkt in list(self.pending):
            if pkt.deadline is not None and now >= pkt.deadline:
                self._retry(pkt)
        if self.data_deadline is not None and now >= self.data_deadline:
            self.send_application_data()
            self.data_deadline = now + max(self.data_interval, 1)
        if self.retry_deadline is not None and now >= self.retry_deadline:
            self.retry_deadline = None
            if self.on_retry_timer():
                return True
        if self.counter_deadline is not None and now >= self.counter_deadline:
            self.reset_packet_counters()
            self.counter_deadline = now + PACKET_COUNTER_RESET_INTERVAL
        return False


class _ClientProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.client: Optional[QuicClient] = None

    def datagram_received(self, data: bytes, addr) -> None:
        if self.client is not None:
            self.client.datagram_received(data)


async def run_client(
    host: str = SERVER_ADDR,
    port: int = QUIC_SERVER_PORT,
    local_port: int = QUIC_CLIENT_PORT,
) -> QuicClient:
    """Run a client against ``host``:``port`` until the connection closes."""
    loop = asyncio.get_running_loop()
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    bind = "::" if family == socket.AF_INET6 else "0.0.0.0"
    transport, protocol = await loop.create_datagram_endpoint(
        _ClientProtocol,
        local_addr=(bind, local_port),
        remote_addr=(host, port),
        family=family,
    )
    try:
        client = QuicClient(transport.sendto, server_addr=host, server_port=port)
        protocol.client = client
        log.info("Enhanced QUIC Client started:")
        log.info("- Local port: %d", local_port)
        log.info("- Server port: %d", port)
        log.info("%s", host)
        client.counter_deadline = client.clock() + PACKET_COUNTER_RESET_INTERVAL
        await asyncio.sleep(STARTUP_DELAY / CLOCK_SECOND)

        client.start_handshake()
        client.send_initial_handshake()
        now = client.clock()
        client.retry_deadline = now + CONNECTION_TIMEOUT
        client.data_deadline = now + FIRST_DATA_DELAY

        while not client._poll():
            await asyncio.sleep(POLL_INTERVAL)
    finally:
        transport.close()
    return client


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the lightweight QUIC client.")
    parser.add_argument("--host", default=SERVER_ADDR, help="server address")
    parser.add_argument("--port", type=int, default=QUIC_SERVER_PORT, help="server port")
    parser.add_argument(
        "--local-port", type=int, default=QUIC_CLIENT_PORT, help="local UDP port"
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    try:
        asyncio.run(run_client(args.host, args.port, args.local_port))
    except KeyboardInterrupt:
        return 130
    return 0