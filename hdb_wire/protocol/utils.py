"""
HANA Protocol Utility Functions
===============================

Byte cursor, CESU-8 text handling and debugging helpers shared by the codec
and the value marshaler.
"""

import struct
from typing import Optional

from ..errors import DecodeError
from .constants import (
    MAX_1_BYTE_LENGTH, MAX_2_BYTE_LENGTH, LENGTH_INDICATOR_2BYTE,
    LENGTH_INDICATOR_4BYTE, LENGTH_INDICATOR_NULL,
)


def padsize(size: int) -> int:
    """Number of zero bytes needed to align a part payload to 8 bytes"""
    if size == 0:
        return 0
    return 7 - (size - 1) % 8


def utf16_units(text: str) -> str:
    """Text with every non-BMP character split into its surrogate pair"""
    if text.isascii():
        return text
    chars = []
    for ch in text:
        code = ord(ch)
        if code > 0xFFFF:
            code -= 0x10000
            chars.append(chr(0xD800 + (code >> 10)))
            chars.append(chr(0xDC00 + (code & 0x3FF)))
        else:
            chars.append(ch)
    return ''.join(chars)


def join_surrogates(units: str) -> str:
    """Inverse of utf16_units(); unpaired surrogates are kept as they are"""
    if units.isascii():
        return units
    return units.encode('utf-16-le', 'surrogatepass').decode('utf-16-le', 'surrogatepass')


def is_high_surrogate(unit: str) -> bool:
    return '\ud800' <= unit <= '\udbff'


def cesu8_encode(text: str) -> bytes:
    """Encode text as CESU-8 (non-BMP characters as surrogate pairs)"""
    if text.isascii():
        return text.encode('ascii')
    return utf16_units(text).encode('utf-8', 'surrogatepass')


def cesu8_decode_units(data: bytes) -> str:
    """
    Decode CESU-8 bytes to UTF-16 code units, one str character per unit.

    Surrogate pairs are not joined, so the result may end with half a pair.
    """
    try:
        return utf16_units(data.decode('utf-8', 'surrogatepass'))
    except UnicodeError as e:
        raise DecodeError(f"Invalid CESU-8 data: {e}") from e


def cesu8_decode(data: bytes) -> str:
    """Decode CESU-8 bytes, joining surrogate pairs"""
    text = cesu8_decode_units(data)
    if text.isascii():
        return text
    try:
        return text.encode('utf-16-le', 'surrogatepass').decode('utf-16-le')
    except UnicodeError as e:
        raise DecodeError(f"Invalid CESU-8 data: {e}") from e


def utf16_length(text: str) -> int:
    """Length of text in UTF-16 code units, the unit of character LOB offsets"""
    return len(utf16_units(text))


def encode_length_indicator(length: int) -> bytes:
    """
    Length prefix of a variable-length value:
    up to 245 in one byte, otherwise 246 + I2 or 247 + I4.
    """
    if length <= MAX_1_BYTE_LENGTH:
        return bytes([length])
    if length <= MAX_2_BYTE_LENGTH:
        return struct.pack('<Bh', LENGTH_INDICATOR_2BYTE, length)
    return struct.pack('<Bi', LENGTH_INDICATOR_4BYTE, length)


def encode_lengthed(data: bytes) -> bytes:
    """Length indicator followed by the bytes"""
    return encode_length_indicator(len(data)) + data


def encode_lengthed_string(text: str) -> bytes:
    return encode_lengthed(cesu8_encode(text))


class ByteReader:
    """
    Forward-only cursor over a received buffer.

    Every read checks the remaining size and raises DecodeError instead of
    returning short data.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self._pos = offset

    @property
    def position(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def read(self, size: int) -> bytes:
        if size < 0:
            raise DecodeError(f"Negative read size {size}")
        end = self._pos + size
        if end > len(self._data):
            raise DecodeError(
                f"Requested {size} bytes at offset {self._pos}, "
                f"only {len(self._data) - self._pos} available"
            )
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def skip(self, size: int):
        self.read(size)

    def slice(self, start: int, size: int) -> bytes:
        """Bytes at an absolute offset, without moving the cursor"""
        if start < 0 or size < 0 or start + size > len(self._data):
            raise DecodeError(
                f"Range {start}..{start + size} outside buffer of {len(self._data)} bytes"
            )
        return self._data[start:start + size]

    def read_lengthed(self) -> Optional[bytes]:
        """Read a length-indicated value; None for the NULL indicator"""
        indicator = self.read_u8()
        if indicator <= MAX_1_BYTE_LENGTH:
            length = indicator
        elif indicator == LENGTH_INDICATOR_2BYTE:
            length = self.read_i16()
        elif indicator == LENGTH_INDICATOR_4BYTE:
            length = self.read_i32()
        elif indicator == LENGTH_INDICATOR_NULL:
            return None
        else:
            raise DecodeError(f"Invalid length indicator {indicator}")
        if length < 0:
            raise DecodeError(f"Negative length {length}")
        return self.read(length)

    def read_remaining(self) -> bytes:
        return self.read(self.remaining)

    def peek_u8(self) -> int:
        if self._pos >= len(self._data):
            raise DecodeError("Unexpected end of data")
        return self._data[self._pos]

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def read_i8(self) -> int:
        return self.unpack('<b')[0]

    def read_u8(self) -> int:
        return self.unpack('<B')[0]

    def read_i16(self) -> int:
        return self.unpack('<h')[0]

    def read_u16(self) -> int:
        return self.unpack('<H')[0]

    def read_i32(self) -> int:
        return self.unpack('<i')[0]

    def read_u32(self) -> int:
        return self.unpack('<I')[0]

    def read_i64(self) -> int:
        return self.unpack('<q')[0]

    def read_u64(self) -> int:
        return self.unpack('<Q')[0]


def hexdump(data: bytes, prefix: str = "") -> str:
    """Create hex dump of data for debugging"""
    lines = []
    for i in range(0, len(data), 16):
        hex_part = ' '.join(f'{b:02x}' for b in data[i:i+16])
        ascii_part = ''.join(chr(b) if 32 <= b < 127 else '.' for b in data[i:i+16])
        lines.append(f"{prefix}{i:04x}  {hex_part:<48}  {ascii_part}")
    return '\n'.join(lines)
