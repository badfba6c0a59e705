"""
Byte cursor and primitive decoders for marketplace event payloads.

Payloads are tightly packed: integers are big-endian and fixed width,
addresses are 20 raw bytes, hashes 32 raw bytes, and strings, string
arrays and byte blobs carry a uint32 big-endian length prefix.
"""

from typing import Tuple

from web3 import Web3

from .base import CursorInvariantError, PayloadDecodeError, TruncatedPayloadError
from ...config.marketplace_config import (
    ADDRESS_SIZE,
    HASH_SIZE,
    LENGTH_PREFIX_SIZE,
    UINT256_SIZE,
)


class ByteCursor:
    """Read cursor over an immutable payload. Each read advances by exactly its width."""

    __slots__ = ('_data', '_offset')

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        if offset < 0 or offset > len(self._data):
            raise CursorInvariantError(f"offset {offset} outside buffer of {len(self._data)} bytes")
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def __len__(self) -> int:
        return len(self._data)

    def read(self, size: int) -> bytes:
        if size < 0:
            raise CursorInvariantError(f"negative read size {size}")
        if size > self.remaining:
            raise TruncatedPayloadError(size, self._offset, len(self._data))
        start = self._offset
        self._offset += size
        return self._data[start:self._offset]

    def read_remaining(self) -> bytes:
        return self.read(self.remaining)


def _decode_uint(cursor: ByteCursor, width: int) -> int:
    return int.from_bytes(cursor.read(width), 'big')


def decode_bool(cursor: ByteCursor) -> bool:
    return cursor.read(1)[0] != 0


def decode_uint8(cursor: ByteCursor) -> int:
    return _decode_uint(cursor, 1)


def decode_uint16(cursor: ByteCursor) -> int:
    return _decode_uint(cursor, 2)


def decode_uint32(cursor: ByteCursor) -> int:
    return _decode_uint(cursor, 4)


def decode_uint256(cursor: ByteCursor) -> int:
    return _decode_uint(cursor, UINT256_SIZE)


def decode_bytes32(cursor: ByteCursor) -> str:
    return "0x" + cursor.read(HASH_SIZE).hex()


def decode_address(cursor: ByteCursor) -> str:
    return Web3.to_checksum_address("0x" + cursor.read(ADDRESS_SIZE).hex())


def decode_bytes(cursor: ByteCursor) -> bytes:
    length = _decode_uint(cursor, LENGTH_PREFIX_SIZE)
    return cursor.read(length)


def decode_string(cursor: ByteCursor) -> str:
    raw = decode_bytes(cursor)
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise PayloadDecodeError(f"invalid UTF-8 string at offset {cursor.offset - len(raw)}: {e}") from e


def decode_string_array(cursor: ByteCursor) -> Tuple[str, ...]:
    count = _decode_uint(cursor, LENGTH_PREFIX_SIZE)
    return tuple(decode_string(cursor) for _ in range(count))


def decode_utf8_remainder(cursor: ByteCursor) -> str:
    raw = cursor.read_remaining()
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise PayloadDecodeError(f"invalid UTF-8 text: {e}") from e
