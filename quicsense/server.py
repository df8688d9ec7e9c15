"""Server side of the connection: one client at a time, echoing stream data back."""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .client import CLOCK_SECOND, ConnectionState, StreamState
from .congestion import INITIAL_WINDOW_SIZE
from .dtls import DtlsContext, DtlsError, DtlsSession
from .frames import AckFrame, FrameError, decode_ack_frame, encode_ack_frame
from .rtt import RttEstimator
from .wire import (
    QUIC_SERVER_PORT,
    SERVER_MAX_BUFFER_LEN,
    PacketError,
    PacketType,
    QuicHeader,
    decode_packet,
    encode_packet,
)

log = logging.getLogger("quicsense.server")

MAX_STREAMS = 10
MAX_RETRIES = 3
STREAM_TIMEOUT = CLOCK_SECOND * 30
ACK_DELAY_THRESHOLD = 2
RETRANSMIT_SLOTS = 8
"""Ring size of the retransmission queue; one slot always stays empty."""
SERVER_CID = 0x01
POLL_INTERVAL = 0.05

PSK = b"secret"
HANDSHAKE_PAYLOAD = b"QUIC Handshake Response\x00"
RESPONSE_PREFIX = b"ACK:"

Address = Tuple[str, int]
SendFunc = Callable[[bytes, Address], object]


def _default_clock() -> int:
    return int(time.monotonic() * CLOCK_SECOND)


@dataclass
class ServerStream:
    """One stream slot; ``deadline`` is the tick at which it times out."""

    stream_id: int = 0
    read_offset: int = 0
    write_offset: int = 0
    max_data: int = INITIAL_WINDOW_SIZE
    state: StreamState = StreamState.CLOSED
    deadline: Optional[int] = None


@dataclass(eq=False)
class _PendingPacket:
    data: bytes
    packet_number: int
    send_time: int
    interval: int
    deadline: Optional[int]
    retry_count: int = 0


class QuicServer:
    """Connection state machine for a single client; datagrams go out through ``send``."""

    def __init__(
        self, send: SendFunc, clock: Callable[[], int] = _default_clock
    ) -> None:
        self._send_func = send
        self.clock = clock
        self.state = ConnectionState.INIT
        self.connection_id = SERVER_CID
        self.client_addr: Optional[str] = None
        self.client_port = 0
        self.dtls_ctx: Optional[DtlsContext] = None

        self.next_packet_number = 0
        self.largest_received_packet = 0
        self.pending: deque[_PendingPacket] = deque()

        self.streams = [ServerStream() for _ in range(MAX_STREAMS)]
        self.next_stream_id = 0
        self.flow_control_window = 0
        self.rtt = RttEstimator()

    # --- sending -----------------------------------------------------

    def _send(self, packet: bytes) -> None:
        self._send_func(packet, (self.client_addr, self.client_port))

    def _take_packet_number(self) -> int:
        pn = self.next_packet_number
        self.next_packet_number += 1
        return pn

    def _send_ack(self, packet_number: int) -> None:
        header = QuicHeader(
            PacketType.ONE_RTT, self.connection_id, self._take_packet_number()
        )
        self._send(encode_packet(header, encode_ack_frame(AckFrame(packet_number))))

    def _queue_packet(self, packet: bytes, packet_number: int) -> None:
        if len(self.pending) >= RETRANSMIT_SLOTS - 1:
            return
        now = self.clock()
        interval = self.rtt.smoothed * 2 if self.rtt.smoothed else CLOCK_SECOND
        self.pending.append(
            _PendingPacket(packet, packet_number, now, interval, now + interval)
        )

    def _retry(self, pkt: _PendingPacket) -> bool:
        if pkt.retry_count < MAX_RETRIES and self.state < ConnectionState.CLOSING:
            pkt.retry_count += 1
            self._send(pkt.data)
            pkt.deadline = self.clock() + pkt.interval
            return True
        pkt.deadline = None
        self.state = ConnectionState.CLOSING
        return False

    def retry_packet(self) -> bool:
        """Resend the oldest unacknowledged packet; False once its retries run out."""
        if not self.pending:
            return False
        return self._retry(self.pending[0])

    # --- acknowledgements --------------------------------------------

    def _handle_ack(self, ack: AckFrame) -> None:
        for acked in ack.ack_ranges:
            if self.pending and acked == self.pending[0].packet_number:
                head = self.pending.popleft()
                self.rtt.update(self.clock() - head.send_time)

        if ack.ack_delay > self.rtt.smoothed * ACK_DELAY_THRESHOLD:
            self.flow_control_window = max(
                INITIAL_WINDOW_SIZE // 2, self.flow_control_window * 3 // 4
            )
        else:
            self.flow_control_window = min(
                INITIAL_WINDOW_SIZE * 2, self.flow_control_window + 1024
            )

    # --- streams -----------------------------------------------------

    def open_stream(self, stream_id: int) -> Optional[ServerStream]:
        """Take the first closed slot for ``stream_id``; None when all are busy."""
        slot = next((s for s in self.streams if s.state is StreamState.CLOSED), None)
        if slot is None:
            return None
        slot.stream_id = stream_id
        slot.state = StreamState.OPEN
        slot.read_offset = 0
        slot.write_offset = 0
        slot.max_data = INITIAL_WINDOW_SIZE
        slot.deadline = self.clock() + STREAM_TIMEOUT
        return slot

    def _send_stream_data(self, stream_id: int, data: bytes) -> None:
        header = QuicHeader(
            PacketType.ONE_RTT, self.connection_id, self.next_packet_number, stream_id
        )
        self._send(encode_packet(header, data + b"\x00"))
        self.next_packet_number += 1

    def _handle_stream_data(self, stream: ServerStream, data: bytes) -> None:
        text = data.split(b"\x00", 1)[0]
        response = (RESPONSE_PREFIX + text)[: SERVER_MAX_BUFFER_LEN - 1]
        self._send_stream_data(stream.stream_id, response)

    # --- DTLS handlers -----------------------------------------------

    def _send_to_peer(self, ctx: DtlsContext, session: DtlsSession, data: bytes) -> int:
        packet_type = (
            PacketType.HANDSHAKE
            if self.state == ConnectionState.HANDSHAKE
            else PacketType.ONE_RTT
        )
        pn = self.next_packet_number
        packet = encode_packet(QuicHeader(packet_type, self.connection_id, pn), data)
        if self.state == ConnectionState.HANDSHAKE:
            self._queue_packet(packet, pn)
        self._send(packet)
        self.next_packet_number += 1
        return len(data)

    def _read_from_peer(self, ctx: DtlsContext, session: DtlsSession, data: bytes) -> int:
        if self.state == ConnectionState.HANDSHAKE:
            self.state = ConnectionState.ACTIVE
            self.pending.clear()
        return 0

    @staticmethod
    def _psk_info(ctx: DtlsContext, session: DtlsSession, identity: bytes) -> bytes:
        return PSK

    # --- connection --------------------------------------------------

    def _accept(self, host: str, port: int) -> None:
        self.client_addr = host
        self.client_port = port
        self.connection_id = SERVER_CID
        self.state = ConnectionState.HANDSHAKE
        self.flow_control_window = INITIAL_WINDOW_SIZE
        self.next_stream_id = 1
        self.dtls_ctx = DtlsContext(
            write_handler=self._send_to_peer,
            read_handler=self._read_from_peer,
            psk_handler=self._psk_info,
            app_data=self,
        )
        self._send_handshake_response()

    def _send_handshake_response(self) -> None:
        try:
            self.dtls_ctx.connect(DtlsSession(self.client_addr, self.client_port))
        except DtlsError:
            log.error("DTLS connect failed")
            return
        pn = self.next_packet_number
        packet = encode_packet(
            QuicHeader(PacketType.HANDSHAKE, self.connection_id, pn), HANDSHAKE_PAYLOAD
        )
        self._queue_packet(packet, pn)
        self._send(packet)
        self.next_packet_number += 1

    def datagram_received(self, data: bytes, addr) -> None:
        """Process one datagram from ``addr``; the first one opens the connection."""
        host, port = addr[0], addr[1]
        if self.state == ConnectionState.INIT:
            self._accept(host, port)
            return

        try:
            header, payload = decode_packet(data)
        except PacketError:
            return
        if header.packet_number > self.largest_received_packet:
            self.largest_received_packet = header.packet_number
        self._send_ack(header.packet_number)

        if header.packet_type in (PacketType.HANDSHAKE, PacketType.ONE_RTT):
            if self.dtls_ctx is not None:
                self.dtls_ctx.handle_message(DtlsSession(host, port), payload)
            if header.stream_id > 0 and self.state == ConnectionState.ACTIVE:
                stream = next(
                    (s for s in self.streams if s.stream_id == header.stream_id), None
                )
                if stream is None:
                    stream = self.open_stream(header.stream_id)
                if stream is not None:
                    stream.deadline = self.clock() + STREAM_TIMEOUT
                    self._handle_stream_data(stream, payload)
        elif header.packet_type == PacketType.RETRY:
            try:
                ack = decode_ack_frame(payload)
            except FrameError:
                return
            self._handle_ack(ack)

    def poll(self) -> bool:
        """Fire due timers; True when a closing connection was torn down."""
        now = self.clock()
        for stream in self.streams:
            if stream.deadline is not None and now >= stream.deadline:
                stream.state = StreamState.CLOSED
                stream.deadline = None
        for pkt in list(self.pending):
            if pkt.deadline is not None and now >= pkt.deadline:
                self._retry(pkt)
        if self.state == ConnectionState.CLOSING:
            if self.dtls_ctx is not None:
                self.dtls_ctx.close()
                self.dtls_ctx = None
            log.info("Connection closed")
            self.state = ConnectionState.INIT
            return True
        return False


class _ServerProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.server: Optional[QuicServer] = None

    def datagram_received(self, data: bytes, addr) -> None:
        if self.server is not None:
            self.server.datagram_received(data, addr)


async def run_server(host: str = "::", port: int = QUIC_SERVER_PORT) -> None:
    """Serve on ``host``:``port`` until cancelled."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _ServerProtocol, local_addr=(host, port)
    )
    try:
        server = QuicServer(transport.sendto)
        protocol.server = server
        log.info("QUIC Server started on port %d with %d streams", port, MAX_STREAMS)
        while True:
            server.poll()
            await asyncio.sleep(POLL_INTERVAL)
    finally:
        transport.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the lightweight QUIC server.")
    parser.add_argument("--host", default="::", help="address to listen on")
    parser.add_argument("--port", type=int, default=QUIC_SERVER_PORT, help="UDP port")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    try:
        asyncio.run(run_server(args.host, args.port))
    except KeyboardInterrupt:
        return 130
    return 0