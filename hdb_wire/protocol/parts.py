"""
HANA Part Builders and Parsers
==============================

Typed views of the part kinds the client sends and understands. Each class
turns itself into a raw :class:`~hdb_wire.protocol.message.Part` via
``to_part()`` and is recovered from one via ``parse()``. Kinds without a
class come back as :class:`RawPart`.
"""

import struct
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import DecodeError
from .constants import (
    PartKind, PartAttributes, OptionType, ConnectOption, StatementContextOption,
    TransactionFlag, ParameterMode, ParameterDirection, LobOptions, NO_NAME_OFFSET,
)
from .message import Part
from .utils import (
    ByteReader, cesu8_encode, cesu8_decode, encode_lengthed_string, padsize,
)
from . import values

logger = logging.getLogger(__name__)

_PART_TYPES: Dict[int, type] = {}


def register(kind: PartKind):
    """Class decorator binding a typed part to its kind"""
    def decorator(cls):
        cls.kind = kind
        _PART_TYPES[kind] = cls
        return cls
    return decorator


def parse_part(part: Part):
    """Return the typed view of a raw part (RawPart for unknown kinds)"""
    part_type = _PART_TYPES.get(part.kind)
    if part_type is None:
        return RawPart(kind=int(part.kind), payload=part.payload,
                       argument_count=part.argument_count, attributes=part.attributes)
    try:
        return part_type.parse(part)
    except struct.error as e:
        raise DecodeError(f"Malformed {PartKind(part.kind).name} part: {e}") from e


@dataclass
class RawPart:
    """Part of a kind this client does not interpret"""
    kind: int
    payload: bytes
    argument_count: int = 1
    attributes: int = PartAttributes.NONE

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=self.payload,
                    argument_count=self.argument_count, attributes=self.attributes)


# Field lists --------------------------------------------------------------------------------------
class Fields:
    """Authentication field list: I2 count, then each field length-prefixed"""

    @staticmethod
    def pack(fields: Sequence[bytes]) -> bytes:
        buffer = bytearray(struct.pack('<H', len(fields)))
        for value in fields:
            size = len(value)
            if size < 250:
                buffer.append(size)
            elif size <= 0xFFFF:
                buffer.append(0xFF)
                buffer.extend(struct.pack('<H', size))
            else:
                raise ValueError(f"Authentication field too long ({size} bytes)")
            buffer.extend(value)
        return bytes(buffer)

    @staticmethod
    def unpack(data: bytes) -> List[bytes]:
        reader = ByteReader(data)
        count = reader.read_u16()
        fields = []
        for _ in range(count):
            size = reader.read_u8()
            if size == 0xFF:
                size = reader.read_u16()
            elif size >= 250:
                raise DecodeError(f"Invalid field length byte {size}")
            fields.append(reader.read(size))
        return fields


@register(PartKind.AUTHENTICATION)
@dataclass
class Authentication:
    fields: List[bytes] = field(default_factory=list)

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=Fields.pack(self.fields))

    @classmethod
    def parse(cls, part: Part) -> 'Authentication':
        return cls(fields=Fields.unpack(part.payload))


# Simple parts -------------------------------------------------------------------------------------
@register(PartKind.COMMAND)
@dataclass
class Command:
    sql: str

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=cesu8_encode(self.sql))

    @classmethod
    def parse(cls, part: Part) -> 'Command':
        return cls(sql=cesu8_decode(part.payload))


@register(PartKind.CLIENT_ID)
@dataclass
class ClientId:
    value: bytes

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=self.value)

    @classmethod
    def parse(cls, part: Part) -> 'ClientId':
        return cls(value=part.payload)


@register(PartKind.STATEMENT_ID)
@dataclass
class StatementId:
    value: int

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=struct.pack('<Q', self.value))

    @classmethod
    def parse(cls, part: Part) -> 'StatementId':
        return cls(value=ByteReader(part.payload).read_u64())


@register(PartKind.RESULT_SET_ID)
@dataclass
class ResultSetId:
    value: int

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=struct.pack('<Q', self.value))

    @classmethod
    def parse(cls, part: Part) -> 'ResultSetId':
        return cls(value=ByteReader(part.payload).read_u64())


@register(PartKind.FETCH_SIZE)
@dataclass
class FetchSize:
    value: int

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=struct.pack('<I', self.value))

    @classmethod
    def parse(cls, part: Part) -> 'FetchSize':
        return cls(value=ByteReader(part.payload).read_u32())


@register(PartKind.ROWS_AFFECTED)
@dataclass
class RowsAffected:
    """One I4 per executed parameter row (-2 success without count, -3 failed)"""
    counts: List[int] = field(default_factory=list)

    def to_part(self) -> Part:
        payload = struct.pack(f'<{len(self.counts)}i', *self.counts)
        return Part(kind=self.kind, payload=payload, argument_count=len(self.counts))

    @classmethod
    def parse(cls, part: Part) -> 'RowsAffected':
        reader = ByteReader(part.payload)
        return cls(counts=[reader.read_i32() for _ in range(part.argument_count)])


@register(PartKind.TABLE_LOCATION)
@dataclass
class TableLocation:
    """Volume ids of the servers holding the tables of a prepared statement"""
    volume_ids: List[int] = field(default_factory=list)

    def to_part(self) -> Part:
        payload = struct.pack(f'<{len(self.volume_ids)}i', *self.volume_ids)
        return Part(kind=self.kind, payload=payload, argument_count=len(self.volume_ids))

    @classmethod
    def parse(cls, part: Part) -> 'TableLocation':
        reader = ByteReader(part.payload)
        return cls(volume_ids=[reader.read_i32() for _ in range(part.argument_count)])


@register(PartKind.CLIENT_INFO)
@dataclass
class ClientInfo:
    """Key/value strings attached to the session (APPLICATION, DRIVER, ...)"""
    entries: Dict[str, str] = field(default_factory=dict)

    def to_part(self) -> Part:
        payload = b''.join(
            encode_lengthed_string(key) + encode_lengthed_string(value)
            for key, value in self.entries.items()
        )
        return Part(kind=self.kind, payload=payload, argument_count=2 * len(self.entries))

    @classmethod
    def parse(cls, part: Part) -> 'ClientInfo':
        reader = ByteReader(part.payload)
        entries = {}
        for _ in range(part.argument_count // 2):
            key = reader.read_lengthed() or b''
            value = reader.read_lengthed() or b''
            entries[cesu8_decode(key)] = cesu8_decode(value)
        return cls(entries=entries)


# Option parts -------------------------------------------------------------------------------------
def _option_type(value, force_bigint: bool) -> OptionType:
    if isinstance(value, bool):
        return OptionType.BOOLEAN
    if isinstance(value, int):
        if force_bigint or not -2**31 <= value < 2**31:
            return OptionType.BIGINT
        return OptionType.INT
    if isinstance(value, float):
        return OptionType.DOUBLE
    if isinstance(value, str):
        return OptionType.STRING
    if isinstance(value, (bytes, bytearray)):
        return OptionType.BSTRING
    raise TypeError(f"Unsupported option value {value!r}")


@dataclass
class OptionPart:
    """
    Base for parts made of (id, type, value) triples.

    Ids are kept as the subclass's enum when known, as plain ints otherwise.
    """
    options: Dict[int, Any] = field(default_factory=dict)

    OPTION_IDS = None
    BIGINT_OPTIONS = frozenset()

    def get(self, option_id: int, default=None):
        return self.options.get(option_id, default)

    def to_part(self) -> Part:
        buffer = bytearray()
        for option_id, value in self.options.items():
            option_type = _option_type(value, option_id in self.BIGINT_OPTIONS)
            buffer.extend(struct.pack('<bb', int(option_id), option_type))
            if option_type == OptionType.BOOLEAN:
                buffer.append(1 if value else 0)
            elif option_type == OptionType.INT:
                buffer.extend(struct.pack('<i', value))
            elif option_type == OptionType.BIGINT:
                buffer.extend(struct.pack('<q', value))
            elif option_type == OptionType.DOUBLE:
                buffer.extend(struct.pack('<d', value))
            else:
                data = cesu8_encode(value) if option_type == OptionType.STRING else bytes(value)
                buffer.extend(struct.pack('<h', len(data)))
                buffer.extend(data)
        return Part(kind=self.kind, payload=bytes(buffer), argument_count=len(self.options))

    @classmethod
    def parse(cls, part: Part):
        reader = ByteReader(part.payload)
        options = {}
        for _ in range(part.argument_count):
            option_id, option_type = reader.unpack('<bb')
            if option_type == OptionType.BOOLEAN:
                value = reader.read_u8() != 0
            elif option_type == OptionType.INT:
                value = reader.read_i32()
            elif option_type == OptionType.BIGINT:
                value = reader.read_i64()
            elif option_type == OptionType.DOUBLE:
                value = reader.unpack('<d')[0]
            elif option_type in (OptionType.STRING, OptionType.BSTRING):
                data = reader.read(reader.read_i16())
                value = cesu8_decode(data) if option_type == OptionType.STRING else data
            else:
                raise DecodeError(f"Unknown option type {option_type} for option {option_id}")
            options[cls._option_id(option_id)] = value
        return cls(options=options)

    @classmethod
    def _option_id(cls, option_id: int):
        if cls.OPTION_IDS is not None:
            try:
                return cls.OPTION_IDS(option_id)
            except ValueError:
                logger.debug(f"Unknown {cls.__name__} option id {option_id}")
        return option_id


@register(PartKind.CONNECT_OPTIONS)
@dataclass
class ConnectOptions(OptionPart):
    OPTION_IDS = ConnectOption


@register(PartKind.STATEMENT_CONTEXT)
@dataclass
class StatementContext(OptionPart):
    OPTION_IDS = StatementContextOption
    BIGINT_OPTIONS = frozenset({StatementContextOption.SERVER_PROCESSING_TIME})

    @property
    def sequence_info(self) -> Optional[bytes]:
        return self.options.get(StatementContextOption.STATEMENT_SEQUENCE_INFO)

    @property
    def server_processing_time(self) -> int:
        return self.options.get(StatementContextOption.SERVER_PROCESSING_TIME, 0)


@register(PartKind.TRANSACTION_FLAGS)
@dataclass
class TransactionFlags(OptionPart):
    OPTION_IDS = TransactionFlag

    def is_set(self, flag: TransactionFlag) -> bool:
        return bool(self.options.get(flag, False))


# Errors -------------------------------------------------------------------------------------------
@dataclass
class ServerErrorInfo:
    """One entry of an ERROR part"""
    code: int
    position: int
    level: int
    sql_state: str
    message: str

    _STRUCT = struct.Struct('<iiib5s')

    def pack(self) -> bytes:
        text = cesu8_encode(self.message)
        entry = self._STRUCT.pack(
            self.code, self.position, len(text), self.level,
            self.sql_state.encode('ascii')[:5].ljust(5, b' '),
        ) + text
        return entry + b'\x00' * padsize(len(entry))


@register(PartKind.ERROR)
@dataclass
class Error:
    errors: List[ServerErrorInfo] = field(default_factory=list)

    def to_part(self) -> Part:
        payload = b''.join(error.pack() for error in self.errors)
        return Part(kind=self.kind, payload=payload, argument_count=len(self.errors))

    @classmethod
    def parse(cls, part: Part) -> 'Error':
        reader = ByteReader(part.payload)
        errors = []
        for _ in range(part.argument_count):
            start = reader.position
            code, position, text_length, level, sql_state = reader.unpack('<iiib5s')
            message = cesu8_decode(reader.read(text_length))
            entry_size = reader.position - start
            reader.skip(min(padsize(entry_size), reader.remaining))
            errors.append(ServerErrorInfo(
                code=code,
                position=position,
                level=level,
                sql_state=sql_state.decode('ascii', 'replace'),
                message=message,
            ))
        return cls(errors=errors)


# Metadata -----------------------------------------------------------------------------------------
class _NameBlock:
    """Length-prefixed names referenced by offset from metadata entries"""

    def __init__(self):
        self._offsets: Dict[str, int] = {}
        self._buffer = bytearray()

    def offset(self, name: Optional[str]) -> int:
        if name is None:
            return NO_NAME_OFFSET
        if name not in self._offsets:
            data = cesu8_encode(name)
            self._offsets[name] = len(self._buffer)
            self._buffer.append(len(data))
            self._buffer.extend(data)
        return self._offsets[name]

    def to_bytes(self) -> bytes:
        return bytes(self._buffer)

    @staticmethod
    def lookup(block: bytes, offset: int) -> Optional[str]:
        if offset == NO_NAME_OFFSET:
            return None
        reader = ByteReader(block, offset)
        return cesu8_decode(reader.read(reader.read_u8()))


@dataclass(frozen=True)
class ColumnDescriptor:
    """Description of one result-set column"""
    name: Optional[str]
    type_code: int
    nullable: bool = True
    length: int = 0
    fraction: int = 0
    table_name: Optional[str] = None
    schema_name: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class ParameterDescriptor:
    """Description of one statement parameter"""
    type_code: int
    nullable: bool = True
    direction: ParameterDirection = ParameterDirection.IN
    length: int = 0
    fraction: int = 0
    name: Optional[str] = None


@register(PartKind.RESULT_SET_METADATA)
@dataclass
class ResultSetMetadata:
    columns: Tuple[ColumnDescriptor, ...] = ()

    _ENTRY = struct.Struct('<BBhh2xIIII')

    def to_part(self) -> Part:
        names = _NameBlock()
        entries = bytearray()
        for column in self.columns:
            options = ParameterMode.OPTIONAL if column.nullable else ParameterMode.MANDATORY
            entries.extend(self._ENTRY.pack(
                options, column.type_code, column.fraction, column.length,
                names.offset(column.table_name),
                names.offset(column.schema_name),
                names.offset(column.name),
                names.offset(column.display_name if column.display_name is not None else column.name),
            ))
        return Part(kind=self.kind, payload=bytes(entries) + names.to_bytes(),
                    argument_count=len(self.columns))

    @classmethod
    def parse(cls, part: Part) -> 'ResultSetMetadata':
        reader = ByteReader(part.payload)
        raw = [reader.unpack(cls._ENTRY.format) for _ in range(part.argument_count)]
        block = reader.read_remaining()
        columns = []
        for options, type_code, fraction, length, table, schema, name, display in raw:
            columns.append(ColumnDescriptor(
                name=_NameBlock.lookup(block, name),
                type_code=type_code,
                nullable=bool(options & ParameterMode.OPTIONAL),
                length=length,
                fraction=fraction,
                table_name=_NameBlock.lookup(block, table),
                schema_name=_NameBlock.lookup(block, schema),
                display_name=_NameBlock.lookup(block, display),
            ))
        return cls(columns=tuple(columns))


@register(PartKind.PARAMETER_METADATA)
@dataclass
class ParameterMetadata:
    parameters: Tuple[ParameterDescriptor, ...] = ()

    _ENTRY = struct.Struct('<BBBxIhh4x')

    def to_part(self) -> Part:
        names = _NameBlock()
        entries = bytearray()
        for parameter in self.parameters:
            options = ParameterMode.OPTIONAL if parameter.nullable else ParameterMode.MANDATORY
            entries.extend(self._ENTRY.pack(
                options, parameter.type_code, parameter.direction,
                names.offset(parameter.name), parameter.length, parameter.fraction,
            ))
        return Part(kind=self.kind, payload=bytes(entries) + names.to_bytes(),
                    argument_count=len(self.parameters))

    @classmethod
    def parse(cls, part: Part) -> 'ParameterMetadata':
        reader = ByteReader(part.payload)
        raw = [reader.unpack(cls._ENTRY.format) for _ in range(part.argument_count)]
        block = reader.read_remaining()
        parameters = []
        for options, type_code, direction, name, length, fraction in raw:
            try:
                direction = ParameterDirection(direction)
            except ValueError as e:
                raise DecodeError(f"Invalid parameter direction {direction}") from e
            parameters.append(ParameterDescriptor(
                type_code=type_code,
                nullable=bool(options & ParameterMode.OPTIONAL),
                direction=direction,
                length=length,
                fraction=fraction,
                name=_NameBlock.lookup(block, name),
            ))
        return cls(parameters=tuple(parameters))


# Row data -----------------------------------------------------------------------------------------
@register(PartKind.PARAMETERS)
@dataclass
class Parameters:
    """Encoded parameter rows; decoding needs the parameter metadata"""
    data: bytes = b''
    row_count: int = 0

    @classmethod
    def from_rows(cls, rows: Sequence[bytes]) -> 'Parameters':
        return cls(data=b''.join(rows), row_count=len(rows))

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=self.data, argument_count=self.row_count)

    @classmethod
    def parse(cls, part: Part) -> 'Parameters':
        return cls(data=part.payload, row_count=part.argument_count)

    def decode_rows(self, parameters: Sequence[ParameterDescriptor]) -> List[tuple]:
        reader = ByteReader(self.data)
        return [values.decode_parameter_row(reader, parameters) for _ in range(self.row_count)]


@register(PartKind.RESULT_SET)
@dataclass
class ResultSet:
    """A chunk of result rows; decoding needs the result-set metadata"""
    data: bytes = b''
    row_count: int = 0
    attributes: int = PartAttributes.NONE

    @classmethod
    def from_rows(cls, rows: Sequence[Sequence[Any]], columns: Sequence[ColumnDescriptor],
                  attributes: int = PartAttributes.NONE) -> 'ResultSet':
        data = b''.join(values.encode_row(row, columns) for row in rows)
        return cls(data=data, row_count=len(rows), attributes=attributes)

    @property
    def is_last(self) -> bool:
        return bool(self.attributes & PartAttributes.LAST_PACKET)

    @property
    def is_closed(self) -> bool:
        return bool(self.attributes & PartAttributes.RESULT_SET_CLOSED)

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=self.data, argument_count=self.row_count,
                    attributes=self.attributes)

    @classmethod
    def parse(cls, part: Part) -> 'ResultSet':
        return cls(data=part.payload, row_count=part.argument_count, attributes=part.attributes)

    def decode_rows(self, columns: Sequence[ColumnDescriptor]) -> List[tuple]:
        reader = ByteReader(self.data)
        rows = [values.decode_row(reader, columns) for _ in range(self.row_count)]
        if reader.remaining:
            raise DecodeError(f"{reader.remaining} bytes left after {self.row_count} rows")
        return rows


# LOB access ---------------------------------------------------------------------------------------
@register(PartKind.READ_LOB_REQUEST)
@dataclass
class ReadLobRequest:
    """Locator, 1-based offset (characters for character LOBs) and length"""
    locator: int
    offset: int
    length: int

    _STRUCT = struct.Struct('<Qqi4x')

    def to_part(self) -> Part:
        return Part(kind=self.kind, payload=self._STRUCT.pack(self.locator, self.offset, self.length))

    @classmethod
    def parse(cls, part: Part) -> 'ReadLobRequest':
        return cls(*ByteReader(part.payload).unpack(cls._STRUCT.format))


@register(PartKind.READ_LOB_REPLY)
@dataclass
class ReadLobReply:
    locator: int
    options: int
    data: bytes

    _HEADER = struct.Struct('<QBi3x')

    @property
    def is_last(self) -> bool:
        return bool(self.options & LobOptions.LAST_DATA)

    def to_part(self) -> Part:
        payload = self._HEADER.pack(self.locator, self.options, len(self.data)) + self.data
        return Part(kind=self.kind, payload=payload)

    @classmethod
    def parse(cls, part: Part) -> 'ReadLobReply':
        reader = ByteReader(part.payload)
        locator, options, chunk_length = reader.unpack(cls._HEADER.format)
        return cls(locator=locator, options=options, data=reader.read(chunk_length))
