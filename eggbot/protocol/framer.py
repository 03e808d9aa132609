"""Line framer for the EBB response stream.

Turns arbitrarily chunked text or bytes into complete protocol lines.
"""
import codecs
import logging
import re
import threading
from typing import List

logger = logging.getLogger(__name__)

LINE_SPLIT_PATTERN = re.compile(r"\r\n|\n|\r")


class LineFramer:
    """Thread-safe line framer holding back the unterminated tail.

    Lines may end with ``\\r\\n``, ``\\n`` or ``\\r``. Emitted lines are
    trimmed and empty lines are dropped, so the output does not depend on
    where the transport happened to cut its chunks.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._encoding = encoding
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._lock = threading.Lock()

    def consume(self, chunk: str) -> List[str]:
        """Append a text chunk and return every line it completes.

        Args:
            chunk: Text fragment of any length.

        Returns:
            Trimmed, non-empty lines in arrival order.
        """
        with self._lock:
            self._buffer += str(chunk or "")
            parts = LINE_SPLIT_PATTERN.split(self._buffer)
            self._buffer = parts.pop()

        lines = []
        for part in parts:
            line = part.strip()
            if line:
                lines.append(line)
        return lines

    def consume_bytes(self, data: bytes) -> List[str]:
        """Decode a byte chunk as streaming UTF-8, then frame it.

        Multi-byte sequences split across chunks are held in the decoder
        until complete.
        """
        if not data:
            return []
        with self._lock:
            text = self._decoder.decode(bytes(data))
        return self.consume(text)

    def reset(self) -> None:
        """Drop the pending tail and any partial multi-byte sequence."""
        with self._lock:
            if self._buffer:
                logger.debug(f"Discarding {len(self._buffer)} unterminated characters")
            self._buffer = ""
            self._decoder.reset()

    @property
    def pending(self) -> str:
        """Unterminated text waiting for its line ending."""
        with self._lock:
            return self._buffer
