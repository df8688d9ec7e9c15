"""Window-based congestion control: slow start, avoidance and fast retransmit."""

from __future__ import annotations

import logging

log = logging.getLogger("quicsense.congestion")

INITIAL_WINDOW_SIZE = 2048
CC_INITIAL_WINDOW = 2 * INITIAL_WINDOW_SIZE
CC_MIN_WINDOW = INITIAL_WINDOW_SIZE
CC_MAX_WINDOW = 10 * INITIAL_WINDOW_SIZE
CC_FAST_RETRANS_THRESH = 3
CC_ALPHA = 0.125
CC_BETA = 0.25
UINT32_MAX = 0xFFFFFFFF


class CongestionController:
    """Tracks the congestion window and the bytes currently in flight."""

    def __init__(self) -> None:
        self.cwnd = CC_INITIAL_WINDOW
        self.ssthresh = UINT32_MAX
        self.bytes_in_flight = 0
        self.dup_ack_count = 0
        self.recovery_pn = 0

    def can_send(self, length: int) -> bool:
        """Whether ``length`` more bytes fit in the window."""
        return self.bytes_in_flight + length <= self.cwnd

    def on_packet_sent(self, packet_number: int, length: int) -> None:
        self.bytes_in_flight += length
        log.debug(
            "CC: Packet %d sent, cwnd=%d, in_flight=%d",
            packet_number,
            self.cwnd,
            self.bytes_in_flight,
        )

    def on_ack(self, acked_pn: int, bytes_acked: int) -> None:
        """Grow the window for an acknowledgement outside recovery."""
        if acked_pn <= self.recovery_pn:
            return
        if self.cwnd < self.ssthresh:
            self.cwnd += bytes_acked
            log.debug("CC: Slow Start, cwnd=%d", self.cwnd)
        else:
            self.cwnd += (INITIAL_WINDOW_SIZE * INITIAL_WINDOW_SIZE) // self.cwnd
            log.debug("CC: Congestion Avoidance, cwnd=%d", self.cwnd)
        self.bytes_in_flight = max(0, self.bytes_in_flight - bytes_acked)

    def on_loss(self, next_packet_number: int) -> None:
        """Halve the threshold, shrink the window and enter recovery."""
        self.ssthresh = max(self.cwnd // 2, CC_MIN_WINDOW)
        self.cwnd = CC_MIN_WINDOW
        self.recovery_pn = next_packet_number
        log.warning("CC: Congestion! New cwnd=%d, ssthresh=%d", self.cwnd, self.ssthresh)

    def on_dup_ack(self, next_packet_number: int) -> bool:
        """Count a duplicate ACK; return True when a fast retransmit is due."""
        self.dup_ack_count += 1
        if self.dup_ack_count == CC_FAST_RETRANS_THRESH:
            log.debug("CC: Fast Retransmit triggered")
            self.on_loss(next_packet_number)
            return True
        return False