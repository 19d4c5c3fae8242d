"""
Response Buffer - cursor based reader over a raw server response

Protocols wrap received chunks in a Buffer and pull fields off the front.
All multi-byte integers are little-endian, which is what the game query
protocols shipped here use on the wire.
"""
import struct

from gamequery.exceptions import BufferUnderflowError


class Buffer:
    """Sequential reader over a bytes payload."""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.index = 0

    def get_length(self) -> int:
        """Bytes left to read."""
        return max(len(self.data) - self.index, 0)

    def get_data(self) -> bytes:
        """Everything from the cursor to the end, without consuming it."""
        return self.data[self.index:]

    def read(self, length: int = 1) -> bytes:
        """Read ``length`` bytes and advance the cursor."""
        if length < 0 or length > self.get_length():
            raise BufferUnderflowError(
                f"Unable to read {length} bytes, {self.get_length()} remaining",
                details={"offset": self.index, "length": length},
            )
        chunk = self.data[self.index:self.index + length]
        self.index += length
        return chunk

    def lookahead(self, length: int = 1) -> bytes:
        """Peek at up to ``length`` bytes without moving the cursor."""
        return self.data[self.index:self.index + length]

    def skip(self, length: int = 1) -> None:
        self.read(length)

    def read_string(self, delimiter: bytes = b"\x00") -> str:
        """
        Read up to ``delimiter`` and consume it.

        A missing delimiter consumes the rest of the buffer.
        """
        end = self.data.find(delimiter, self.index)
        if end == -1:
            raw = self.data[self.index:]
            self.index = len(self.data)
        else:
            raw = self.data[self.index:end]
            self.index = end + len(delimiter)
        return raw.decode("utf-8", errors="replace")

    def _unpack(self, fmt: str) -> int:
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self.read(size))[0]

    def read_int8(self) -> int:
        return self._unpack("<b")

    def read_uint8(self) -> int:
        return self._unpack("<B")

    def read_int16(self) -> int:
        return self._unpack("<h")

    def read_uint16(self) -> int:
        return self._unpack("<H")

    def read_int32(self) -> int:
        return self._unpack("<i")

    def read_uint32(self) -> int:
        return self._unpack("<I")

    def read_uint64(self) -> int:
        return self._unpack("<Q")

    def read_float32(self) -> float:
        return self._unpack("<f")
