"""Line-oriented TCP client used to talk to other nodes."""

from __future__ import annotations

import socket
from typing import Optional, Union

FIELD_DELIMITER = "?"
ENTRY_DELIMITER = "\n"

_CHUNK_SIZE = 128


class NetworkHandler:
    """A single outgoing TCP connection that sends text and reads replies."""

    def __init__(self, connect_timeout: float = 10.0) -> None:
        self.connect_timeout = connect_timeout
        self._sock: Optional[socket.socket] = None

    def __enter__(self) -> "NetworkHandler":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open_connection(self, server: str, port: Union[str, int]) -> None:
        """Connect to ``server`` on ``port``; raises OSError if that fails."""
        self.close()
        sock = socket.create_connection((server, int(port)), timeout=self.connect_timeout)
        sock.settimeout(None)
        self._sock = sock

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise ConnectionError("No open connection.")
        return self._sock

    def send_data(self, data: Union[str, bytes]) -> None:
        """Send all of ``data`` over the connection."""
        payload = data.encode() if isinstance(data, str) else bytes(data)
        self._socket().sendall(payload)

    def receive_data(self, stop_on_newline: bool = True) -> str:
        """Read from the connection.

        With ``stop_on_newline`` reading stops once the received data ends in a
        newline, which is left off the result; a peer that closes before that
        raises ConnectionError. Otherwise reading continues until the peer
        closes the connection.
        """
        sock = self._socket()
        buffer = bytearray()
        while True:
            chunk = sock.recv(_CHUNK_SIZE)
            if not chunk:
                if stop_on_newline:
                    raise ConnectionError("No data received, meaning the other side dropped out.")
                return buffer.decode(errors="replace")
            buffer += chunk
            if stop_on_newline and buffer.endswith(ENTRY_DELIMITER.encode()):
                return buffer[:-1].decode(errors="replace")

    def close(self) -> None:
        """Close the connection, waking any thread blocked reading from it."""
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()