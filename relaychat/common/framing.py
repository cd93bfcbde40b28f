"""
Newline-delimited framing over a blocking stream socket.

Each frame is one UTF-8 line: a record rendered without embedded line feeds,
followed by exactly one "\\n". The transport may batch or split frames, so the
reader buffers until it sees a line feed.
"""

import socket
from typing import Iterator, Optional

from relaychat.common.protocol import Record, dump_record


MAX_FRAME_SIZE = 1024 * 1024  # 1 MiB without a line feed means a broken peer
RECV_SIZE = 4096


class FrameTooLarge(ConnectionError):
    """Peer sent more than MAX_FRAME_SIZE bytes without a line feed."""


def send_frame(sock: socket.socket, payload: str) -> None:
    """
    Send one payload terminated by a newline.
    """
    if "\n" in payload:
        raise ValueError("Frame payload must not contain a line feed")
    sock.sendall((payload + "\n").encode("utf-8"))


def send_record(sock: socket.socket, record: Record) -> None:
    send_frame(sock, dump_record(record))


class FrameReader:
    """
    Reads newline-terminated frames from a socket, keeping leftovers between calls.
    """

    def __init__(self, sock: socket.socket, max_frame_size: int = MAX_FRAME_SIZE):
        self.sock = sock
        self.max_frame_size = max_frame_size
        self._buf = b""

    def read_frame(self) -> Optional[bytes]:
        """
        Return the next frame without its line feed, or None at end of stream.

        A partial frame left over when the peer closes is dropped.
        """
        while True:
            line, sep, rest = self._buf.partition(b"\n")
            if sep:
                self._buf = rest
                return line.rstrip(b"\r")

            if len(self._buf) > self.max_frame_size:
                raise FrameTooLarge(
                    f"Frame exceeds {self.max_frame_size} bytes without a line feed"
                )

            chunk = self.sock.recv(RECV_SIZE)
            if not chunk:
                self._buf = b""
                return None
            self._buf += chunk

    def __iter__(self) -> Iterator[bytes]:
        while True:
            frame = self.read_frame()
            if frame is None:
                return
            yield frame
