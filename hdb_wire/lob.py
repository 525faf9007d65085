"""
HANA LOB Handles
================

Lazily loaded BLOB/CLOB/NCLOB values. A handle carries the locator, the
declared lengths and the prefix that arrived with the row; the rest is
requested through the result set that produced it, chunk by chunk.

A handle is bound to the generation of its result set's cursor. Once the
cursor moves to the next chunk of rows the handle is invalid and using it
raises StateError.
"""

import logging
from typing import List

from .errors import StateError
from .protocol.constants import TypeCode
from .protocol.utils import cesu8_decode_units, is_high_surrogate, join_surrogates

logger = logging.getLogger(__name__)


class Lob:
    """Base class for LOB handles"""

    type_code: TypeCode = None

    def __init__(self, locator: int, char_length: int, byte_length: int,
                 data: bytes = b'', complete: bool = False):
        self.locator = locator
        self.char_length = char_length
        self.byte_length = byte_length
        self._complete = complete
        self._position = 0
        self._source = None
        self._generation = None
        self._init_buffer()
        self._append(data)
        if self.received_length >= self.total_length:
            self._complete = True

    # Binding ------------------------------------------------------------------------------------
    def bind(self, source, generation: int):
        """
        Attach the handle to the result set that produced it.

        ``source`` must provide ``generation``, ``lob_read_length`` and an
        awaitable ``read_lob(locator, offset, length)`` returning
        ``(data, is_last)``.
        """
        self._source = source
        self._generation = generation

    @property
    def is_valid(self) -> bool:
        return self._source is None or self._source.generation == self._generation

    def _check_valid(self):
        if not self.is_valid:
            raise StateError(
                f"{type(self).__name__} handle (locator {self.locator}) was invalidated "
                f"when its result set advanced"
            )

    # State --------------------------------------------------------------------------------------
    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def total_length(self) -> int:
        """Total length in the unit used for offsets (bytes or characters)"""
        raise NotImplementedError

    @property
    def received_length(self) -> int:
        raise NotImplementedError

    @property
    def prefix(self):
        """Everything received so far"""
        raise NotImplementedError

    def _init_buffer(self):
        raise NotImplementedError

    def _append(self, data: bytes):
        raise NotImplementedError

    def _slice(self, start: int, end: int):
        raise NotImplementedError

    def _align(self, end: int) -> int:
        """Smallest read end at or after ``end`` that does not split a value"""
        return end

    # Reading ------------------------------------------------------------------------------------
    async def _fetch(self, wanted: int):
        if self._source is None:
            raise StateError(f"{type(self).__name__} handle is not attached to a result set")

        length = max(wanted, self._source.lob_read_length)
        length = min(length, self.total_length - self.received_length)
        offset = self.received_length + 1
        logger.debug(f"Reading LOB {self.locator}: offset {offset}, length {length}")

        data, last = await self._source.read_lob(self.locator, offset, length)
        before = self.received_length
        self._append(data)
        if last or self.received_length >= self.total_length:
            self._complete = True
        elif self.received_length == before:
            raise StateError(f"Server returned no data for LOB {self.locator} at offset {offset}")

    async def read(self, size: int = -1):
        """
        Return up to ``size`` units from the current read position.

        A negative size reads to the end. An empty result means the end was
        reached. Character LOBs never split a surrogate pair, so a read may
        return one unit more than asked for.
        """
        self._check_valid()
        if size < 0:
            await self._load_all()
            end = self.received_length
        else:
            end = self._position + size
            while True:
                while self.received_length < end and not self._complete:
                    await self._fetch(end - self.received_length)
                end = min(end, self.received_length)
                aligned = self._align(end)
                if aligned == end:
                    break
                end = aligned

        chunk = self._slice(self._position, end)
        self._position = end
        return chunk

    async def read_all(self):
        """Return the complete value"""
        self._check_valid()
        await self._load_all()
        return self.prefix

    async def _load_all(self):
        while not self._complete:
            await self._fetch(self.total_length - self.received_length)

    def __repr__(self):
        return (f"<{type(self).__name__} locator={self.locator} "
                f"length={self.total_length} received={self.received_length}>")


class BLob(Lob):
    """Binary LOB, offsets in bytes"""

    type_code = TypeCode.BLOB

    def _init_buffer(self):
        self._buffer = bytearray()

    def _append(self, data: bytes):
        self._buffer.extend(data)

    @property
    def total_length(self) -> int:
        return self.byte_length

    @property
    def received_length(self) -> int:
        return len(self._buffer)

    @property
    def prefix(self) -> bytes:
        return bytes(self._buffer)

    def _slice(self, start: int, end: int) -> bytes:
        return bytes(self._buffer[start:end])


class CLob(Lob):
    """Character LOB, offsets in UTF-16 code units"""

    type_code = TypeCode.CLOB

    def _init_buffer(self):
        # One str character per UTF-16 code unit; a chunk may end inside a pair
        self._parts: List[str] = []
        self._units = 0

    def _append(self, data: bytes):
        if data:
            units = cesu8_decode_units(data)
            self._parts.append(units)
            self._units += len(units)

    @property
    def total_length(self) -> int:
        return self.char_length

    @property
    def received_length(self) -> int:
        return self._units

    def _received_units(self) -> str:
        if len(self._parts) > 1:
            self._parts = [''.join(self._parts)]
        return self._parts[0] if self._parts else ''

    def _complete_units(self) -> int:
        """Units that form whole characters; a trailing high surrogate waits for its pair"""
        units = self._received_units()
        if units and not self._complete and is_high_surrogate(units[-1]):
            return len(units) - 1
        return len(units)

    @property
    def prefix(self) -> str:
        return join_surrogates(self._received_units()[:self._complete_units()])

    def _slice(self, start: int, end: int) -> str:
        return join_surrogates(self._received_units()[start:end])

    def _align(self, end: int) -> int:
        units = self._received_units()
        if end >= self._units and self._complete:
            return end
        if 0 < end < self.total_length and is_high_surrogate(units[end - 1]):
            return end + 1
        return end


class NClob(CLob):
    """Unicode character LOB"""

    type_code = TypeCode.NCLOB


_LOB_TYPES = {
    TypeCode.BLOB: BLob,
    TypeCode.CLOB: CLob,
    TypeCode.NCLOB: NClob,
}


def lob_for_type(type_code: int, locator: int, char_length: int, byte_length: int,
                 data: bytes, complete: bool) -> Lob:
    """Create the handle class matching a column type"""
    return _LOB_TYPES[type_code](locator, char_length, byte_length, data, complete)
