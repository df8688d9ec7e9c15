# quicsense

`quicsense` is a small QUIC-style transport for constrained networks such as
wireless sensor nodes. It runs over plain UDP. Every packet has a fixed
8-byte header: packet type, connection id, a 32-bit packet number and a
16-bit stream id, all in network byte order. On top of that it provides:

- a connection state machine that moves from *init* through *handshake* to
  *active*, then to *closing* and *closed*;
- a small DTLS session registry (`DtlsContext`) that passes outgoing and
  incoming records to handler functions;
- a bounded retransmission queue with a retry limit of three;
- smoothed round-trip-time estimation;
- a congestion window with slow start, congestion avoidance, fast
  retransmit after three duplicate ACKs, and loss recovery;
- per-stream flow control, with stream timeouts and recycling of streams
  the peer has finished with;
- ACK frames built from variable-length integers;
- an energy estimate in millijoules, computed from CPU, low-power, transmit
  and listen times;
- a second, compact bit-packed packet layout with a minimal endpoint.

It has no dependencies outside the standard library and needs Python 3.10
or later.

## Installation

```
pip install quicsense
```

## Running a server and a client

Start the server. By default it listens on UDP port 5688 on all IPv6
addresses:

```
quicsense-server
```

Options: `--host` (address to listen on, default `::`) and `--port`
(default 5688). It runs until interrupted.

In another terminal, start the client:

```
quicsense-client --host ::1
```

Options: `--host` (server address, default `fe80::202:2:2:2`), `--port`
(server port, default 5688) and `--local-port` (local UDP port, default
8765).

The client waits two seconds, opens a DTLS session and sends an Initial
packet. The server treats the first datagram it receives as the start of a
connection and answers with a Handshake packet. Once the client receives a
Handshake or 1-RTT packet, its connection becomes active, and it sends a
short data message on the next stream at an interval of three smoothed
RTTs. The server acknowledges every packet after the first and, once its
own connection is active, answers each stream message with an
`ACK:`-prefixed echo on the same stream.

Thirty seconds after the handshake starts, the client's connection timer
fires: the client closes all streams, sends `CONNECTION_CLOSE` and shuts
down shortly afterwards. The client also closes the connection once a
packet in its retransmission queue has been resent three times without an
acknowledgement. Both sides log through the standard `logging` module
under names starting with `quicsense.`.

## Using the library

Each module can be used on its own:

| Module | Contents |
| --- | --- |
| `quicsense.wire` | `QuicHeader`, `PacketType`, `encode_packet`, `decode_packet`, `PacketError`, port and limit settings |
| `quicsense.frames` | `AckFrame`, `encode_varint`, `decode_varint`, `encode_ack_frame`, `decode_ack_frame`, `FrameError` |
| `quicsense.dtls` | `DtlsContext`, `DtlsSession`, `DtlsError` |
| `quicsense.rtt` | `RttEstimator` |
| `quicsense.congestion` | `CongestionController` |
| `quicsense.energy` | `energy_consumption`, `EnergyReport` |
| `quicsense.packet_format` | `CompactHeader`, `CompactType`, `HandshakeBody`, `AckBody`, `encode_compact`, `decode_compact`, `CompactEndpoint` |
| `quicsense.client` | `QuicClient`, `ClientStream`, `ConnectionState`, `StreamState`, `run_client`, `main` |
| `quicsense.server` | `QuicServer`, `ServerStream`, `run_server`, `main` |

`QuicClient` and `QuicServer` do no I/O of their own. They take a `send`
callable and an optional `clock` (in milliseconds), and you feed them
datagrams with `datagram_received`. `run_client` and `run_server` are the
asyncio coroutines that wire them to UDP sockets.

Errors are raised as exceptions:

- `decode_packet` raises `PacketError` for data shorter than the 8-byte
  header, and `encode_packet` raises it for a field that does not fit;
- `decode_ack_frame` raises `FrameError` for an empty frame, a frame type
  other than `0x02`, or a truncated varint;
- `DtlsContext.connect` raises `DtlsError` when no connection slot is free,
  and `DtlsContext.write` raises it when no write handler is installed.

Round trip of a packet:

```python
from quicsense.wire import PacketType, QuicHeader, decode_packet, encode_packet

packet = encode_packet(QuicHeader(PacketType.ONE_RTT, 1, 42, stream_id=3), b"hello")
header, payload = decode_packet(packet)
assert header.packet_number == 42 and payload == b"hello"
```

Energy estimate:

```python
from quicsense.energy import energy_consumption

report = energy_consumption(1.5, 30.0, 0.02, 0.4)
print(report.format())
```

## What it does not do

- The DTLS layer performs no encryption or authentication. `DtlsContext`
  only records sessions and hands data unchanged to its handlers; the
  pre-shared key returned by the PSK handler is never used to protect
  traffic.
- The server handles one client connection at a time.
- The commands do not print energy figures. `QuicClient` logs an energy
  report only when it is given an `energy_meter` callable, and
  `run_client` does not give it one.
- `CompactEndpoint` and the compact layout are not used by the client or
  the server commands.

## Development

```
pip install -e ".[test]"
pytest
```