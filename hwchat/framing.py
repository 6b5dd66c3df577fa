import asyncio
import struct
import time
import zlib
from dataclasses import dataclass
from typing import Optional, Tuple

"""
framing.py - binary frame codec for the chat wire protocol.

Frame layout (all integers little-endian):
- u8  type tag       (meaning depends on the catalog: client or server traffic)
- u64 timestamp      (seconds since the epoch, set by the sender)
- u32 checksum       (CRC-32 of the field block)
- u32 block length   (number of bytes in the field block)
- field block        (one `u32 len` + `len` UTF-8 bytes per field)

The field block is not self-describing: how many strings to read, and in
which order, comes from the message class registered for the tag. That is
why decode() always takes a catalog.

Decoding is pure. It never reads past the frame it is given and reports how
many bytes the frame used, so a stream reader can call it on an accumulator
that holds several frames (or only half of one).
"""

HEADER_STRUCT = struct.Struct("<BQII")  # tag, timestamp, crc32, block length
FIELD_LEN_STRUCT = struct.Struct("<I")
HEADER_SIZE = HEADER_STRUCT.size  # 17 bytes

U32_MAX = 0xFFFFFFFF
MAX_FIELD_BLOCK = 4 * 1024 * 1024  # 4 MiB hard limit per frame


class FramingError(Exception):
    """Base class for everything the codec raises."""


class EncodeOverflow(FramingError):
    """A field does not fit a u32 length prefix, or the block exceeds MAX_FIELD_BLOCK."""


class DecodeError(FramingError):
    """Base class for decode failures."""


class TruncatedFrame(DecodeError):
    """The frame or one of its fields ends before its declared length."""


class IncompleteFrame(TruncatedFrame):
    """
    The buffer ends before the frame does.

    Unlike a plain TruncatedFrame (a field overrunning a complete block),
    more bytes from the stream may still complete this one.
    """


class UnknownType(DecodeError):
    def __init__(self, tag: int, catalog_name: str) -> None:
        super().__init__(f"unknown {catalog_name} message tag {tag}")
        self.tag = tag


class ChecksumMismatch(DecodeError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"checksum mismatch: header {expected:#010x}, block {actual:#010x}")
        self.expected = expected
        self.actual = actual


class InvalidEncoding(DecodeError):
    """A field's bytes are not valid UTF-8."""


class MalformedFrame(DecodeError):
    """The field block holds bytes past the variant's last field."""


class FrameTooLarge(DecodeError):
    """The declared field block is above MAX_FIELD_BLOCK."""


@dataclass(frozen=True)
class Frame:
    """A raw frame: header values plus the undecoded field strings."""
    tag: int
    timestamp: int
    checksum: int
    fields: Tuple[str, ...]


def crc32(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def now_s() -> int:
    """Current Unix time in whole seconds (the frame timestamp unit)."""
    return int(time.time())


def pack_fields(values) -> bytes:
    """Serialize strings into a field block, each with its u32 length prefix."""
    block = bytearray()
    for value in values:
        raw = value.encode("utf-8")
        if len(raw) > U32_MAX:
            raise EncodeOverflow(f"field of {len(raw)} bytes exceeds the u32 range")
        block += FIELD_LEN_STRUCT.pack(len(raw))
        block += raw
    if len(block) > U32_MAX:
        raise EncodeOverflow(f"field block of {len(block)} bytes exceeds the u32 range")
    # Peers refuse anything above MAX_FIELD_BLOCK, so never produce it.
    if len(block) > MAX_FIELD_BLOCK:
        raise EncodeOverflow(f"field block of {len(block)} bytes exceeds {MAX_FIELD_BLOCK}")
    return bytes(block)


def pack(tag: int, values, timestamp: Optional[int] = None) -> bytes:
    """Build a complete frame from a tag and an ordered list of strings."""
    block = pack_fields(values)
    ts = now_s() if timestamp is None else timestamp
    return HEADER_STRUCT.pack(tag, ts, crc32(block), len(block)) + block


def unpack_fields(block: bytes, count: int) -> Tuple[str, ...]:
    """
    Read exactly `count` strings from a field block.

    Raises:
        TruncatedFrame: a length prefix or a field runs past the block.
        InvalidEncoding: a field is not UTF-8.
        MalformedFrame: bytes are left over after the last field.
    """
    values = []
    offset = 0
    for index in range(count):
        if offset + FIELD_LEN_STRUCT.size > len(block):
            raise TruncatedFrame(f"field {index}: length prefix runs past the field block")
        (length,) = FIELD_LEN_STRUCT.unpack_from(block, offset)
        offset += FIELD_LEN_STRUCT.size
        if offset + length > len(block):
            raise TruncatedFrame(f"field {index}: {length} bytes declared, {len(block) - offset} left")
        try:
            values.append(block[offset:offset + length].decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise InvalidEncoding(f"field {index} is not valid UTF-8: {exc.reason}") from exc
        offset += length
    if offset != len(block):
        raise MalformedFrame(f"{len(block) - offset} trailing bytes after field {count - 1}")
    return tuple(values)


def _split(data: bytes, catalog) -> Tuple[int, int, int, bytes, int]:
    # Header checks, in wire order.
    if not data:
        raise IncompleteFrame("empty buffer")
    tag = data[0]
    if tag not in catalog:
        raise UnknownType(tag, catalog.name)
    if len(data) < HEADER_SIZE:
        raise IncompleteFrame(f"header needs {HEADER_SIZE} bytes, have {len(data)}")
    tag, timestamp, checksum, length = HEADER_STRUCT.unpack_from(data, 0)
    if length > MAX_FIELD_BLOCK:
        raise FrameTooLarge(f"field block of {length} bytes exceeds {MAX_FIELD_BLOCK}")
    end = HEADER_SIZE + length
    if len(data) < end:
        raise IncompleteFrame(f"field block needs {length} bytes, have {len(data) - HEADER_SIZE}")
    block = bytes(data[HEADER_SIZE:end])
    actual = crc32(block)
    if actual != checksum:
        raise ChecksumMismatch(checksum, actual)
    return tag, timestamp, checksum, block, end


def unpack(data: bytes, catalog, count: Optional[int] = None) -> Tuple[Frame, int]:
    """
    Split the frame at the front of `data` into a Frame.

    `count` overrides the number of fields; by default it comes from the
    variant the catalog registers for the tag.
    """
    tag, timestamp, checksum, block, end = _split(data, catalog)
    if count is None:
        count = len(catalog.fields_of(catalog.variant_for(tag)))
    return Frame(tag, timestamp, checksum, unpack_fields(block, count)), end


def encode(message, catalog=None, timestamp: Optional[int] = None) -> bytes:
    """
    Encode a catalog message into a complete frame.

    The catalog is looked up from the message class when not given.
    """
    if catalog is None:
        catalog = type(message).CATALOG
    tag = catalog.tag_of(message)
    values = [getattr(message, name) for name in catalog.fields_of(type(message))]
    return pack(int(tag), values, timestamp)


def decode(data: bytes, catalog):
    """
    Decode the frame at the front of `data` using `catalog`.

    Returns:
        (message, consumed) where consumed is the frame's length in bytes.
        Bytes after the frame are left alone.

    Raises:
        IncompleteFrame: the buffer ends before the frame does.
        UnknownType / ChecksumMismatch / TruncatedFrame / InvalidEncoding /
        MalformedFrame / FrameTooLarge: the frame itself is bad.
    """
    frame, consumed = unpack(data, catalog)
    cls = catalog.variant_for(frame.tag)
    return cls(*frame.fields), consumed


async def write_frame(writer: asyncio.StreamWriter, message, timeout: Optional[float] = None) -> None:
    """
    Encode `message` and write it to `writer` as a single chunk.

    One write() per frame keeps frames from interleaving when several
    tasks share a writer. `timeout` bounds the drain; asyncio.TimeoutError
    propagates to the caller.
    """
    writer.write(encode(message))
    if timeout is None:
        await writer.drain()
    else:
        await asyncio.wait_for(writer.drain(), timeout)
