"""A small DTLS session registry that routes records through user handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .wire import QUIC_MAX_CONNECTIONS

log = logging.getLogger("quicsense.dtls")


@dataclass(frozen=True)
class DtlsSession:
    """The peer a DTLS session talks to."""

    addr: str
    port: int


class DtlsError(RuntimeError):
    """Raised when a DTLS operation cannot be carried out."""


WriteHandler = Callable[["DtlsContext", DtlsSession, bytes], int]
ReadHandler = Callable[["DtlsContext", DtlsSession, bytes], Any]
PskHandler = Callable[["DtlsContext", DtlsSession, bytes], bytes]


class DtlsContext:
    """Holds the open sessions and the handlers records are passed to."""

    def __init__(
        self,
        write_handler: Optional[WriteHandler] = None,
        read_handler: Optional[ReadHandler] = None,
        psk_handler: Optional[PskHandler] = None,
        app_data: Any = None,
        max_connections: int = QUIC_MAX_CONNECTIONS,
    ) -> None:
        self.write_handler = write_handler
        self.read_handler = read_handler
        self.psk_handler = psk_handler
        self.app_data = app_data
        self.max_connections = max_connections
        self.connections: list[DtlsSession] = []

    def __enter__(self) -> "DtlsContext":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self, session: DtlsSession) -> None:
        """Register a new session; the newest comes first."""
        if len(self.connections) >= self.max_connections:
            log.warning("No memory for new DTLS connection")
            raise DtlsError("no room for a new DTLS connection")
        self.connections.insert(0, session)
        log.info("New DTLS connection to [%s]:%d", session.addr, session.port)

    def write(self, session: DtlsSession, data: bytes) -> int:
        """Hand data to the write handler and return what it returns."""
        if self.write_handler is None:
            raise DtlsError("no write handler installed")
        return self.write_handler(self, session, bytes(data))

    def handle_message(self, session: DtlsSession, data: bytes) -> None:
        """Pass an incoming record to the read handler, if there is one."""
        if self.read_handler is not None:
            self.read_handler(self, session, bytes(data))

    def close(self) -> None:
        """Drop every session."""
        self.connections.clear()