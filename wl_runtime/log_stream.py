"""
Decoder for the Docker Engine multiplexed log stream.

When a container runs without a TTY, ``GET /containers/{id}/logs`` returns a
sequence of frames. Each frame is an 8-byte header followed by a payload:

    [stream_type, 0, 0, 0, size_b1, size_b2, size_b3, size_b4]

The last four header bytes are the payload length as a big-endian unsigned
integer. Frames can arrive split across any number of reads.
"""

import struct

HEADER_SIZE = 8


class LogFrameDecoder:
    """
    Incremental frame decoder.

    Feed it raw bytes as they arrive; complete frames come back as trimmed
    text lines, partial frames stay buffered until the rest arrives.
    """

    def __init__(self):
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for the rest of their frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[str]:
        """
        Add bytes to the buffer and return the lines of every complete frame.

        Payloads that are empty after trimming are consumed but not returned.
        """
        self._buffer.extend(data)
        lines: list[str] = []

        while len(self._buffer) >= HEADER_SIZE:
            (size,) = struct.unpack_from(">I", self._buffer, 4)
            end = HEADER_SIZE + size
            if len(self._buffer) < end:
                break

            payload = bytes(self._buffer[HEADER_SIZE:end])
            del self._buffer[:end]

            line = payload.decode("utf-8", errors="replace").strip()
            if line:
                lines.append(line)

        return lines
