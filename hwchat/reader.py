import asyncio
import logging
from typing import AsyncIterator, Iterator

from .framing import IncompleteFrame, decode

"""
reader.py - turn a TCP byte stream into decoded catalog messages.

A read() on a stream socket returns whatever happens to be there: half a
frame, exactly one, or three and a bit. So we never assume one frame per
read. Bytes go into a growable accumulator and we peel complete frames off
the front after every read.

Outcomes per decode attempt:
- a message          -> drop its bytes from the accumulator, hand it out
- IncompleteFrame    -> stop, wait for the next read
- any other error    -> raise; the stream is out of sync and the caller
                        should drop the connection
"""

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 2048


class FrameBuffer:
    """Accumulates raw bytes and yields every complete frame in them."""

    def __init__(self, catalog) -> None:
        self.catalog = catalog
        self._buf = bytearray()

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet part of a decoded frame."""
        return len(self._buf)

    def drain(self) -> Iterator[object]:
        while self._buf:
            try:
                message, consumed = decode(self._buf, self.catalog)
            except IncompleteFrame:
                return
            del self._buf[:consumed]
            yield message


async def read_messages(
    reader: asyncio.StreamReader,
    catalog,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> AsyncIterator[object]:
    """
    Yield messages from `reader` until end-of-stream.

    A zero-byte read ends the generator normally. If the stream closes with
    a partial frame still buffered, that is logged and discarded.
    DecodeError (other than IncompleteFrame) and I/O errors propagate.
    """
    frames = FrameBuffer(catalog)
    while True:
        chunk = await reader.read(buffer_size)
        if not chunk:
            if frames.pending:
                logger.debug("stream closed with %d bytes of a partial frame", frames.pending)
            return
        frames.feed(chunk)
        for message in frames.drain():
            yield message
