"""
HANA Value Marshaler
====================

Conversion between typed wire cells and Python values.

Two cell layouts exist. Result-set rows use ``NullEncoding.INDICATOR``:
integers carry a leading NULL indicator byte, other types use a sentinel
value (all-ones floats, length byte 255, out-of-range dates). Parameter rows
use ``NullEncoding.TYPE_PREFIX``: every cell starts with its type code, with
bit 0x80 set and no data for NULL.

Python value domains:

    TINYINT..BIGINT         int
    DECIMAL, SMALLDECIMAL   decimal.Decimal (exact)
    REAL, DOUBLE            float
    character types         str
    binary types            bytes
    BOOLEAN                 bool
    DAYDATE                 datetime.date
    SECONDTIME              datetime.time (seconds)
    SECONDDATE              datetime.datetime (seconds)
    LONGDATE                datetime.datetime (microseconds)
    BLOB/CLOB/NCLOB         Lob handle when decoded, bytes/str when bound
"""

import struct
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence, Union

from ..errors import BindError, DecodeError, TypeMismatch
from ..lob import Lob, lob_for_type
from .constants import (
    TypeCode, LobOptions, ParameterDirection, NULL_TYPE_FLAG,
)
from .utils import (
    ByteReader, cesu8_encode, cesu8_decode, encode_lengthed, utf16_length,
)

logger = logging.getLogger(__name__)


class NullEncoding(Enum):
    """How NULL is represented in a row"""
    INDICATOR = "indicator"         # result-set rows
    TYPE_PREFIX = "type_prefix"     # parameter rows


# Type families ------------------------------------------------------------------------------------
INTEGER_TYPES = {
    TypeCode.TINYINT: (0, 255, '<B'),
    TypeCode.SMALLINT: (-2**15, 2**15 - 1, '<h'),
    TypeCode.INT: (-2**31, 2**31 - 1, '<i'),
    TypeCode.BIGINT: (-2**63, 2**63 - 1, '<q'),
}
DECIMAL_TYPES = {TypeCode.DECIMAL, TypeCode.SMALLDECIMAL}
FLOAT_TYPES = {TypeCode.REAL: '<f', TypeCode.DOUBLE: '<d'}
STRING_TYPES = {
    TypeCode.CHAR, TypeCode.VARCHAR, TypeCode.NCHAR, TypeCode.NVARCHAR,
    TypeCode.STRING, TypeCode.NSTRING, TypeCode.TEXT, TypeCode.SHORTTEXT,
}
BINARY_TYPES = {TypeCode.BINARY, TypeCode.VARBINARY, TypeCode.BSTRING}
LOB_TYPES = {TypeCode.BLOB, TypeCode.CLOB, TypeCode.NCLOB}
DATETIME_TYPES = {
    TypeCode.DAYDATE, TypeCode.SECONDTIME, TypeCode.SECONDDATE, TypeCode.LONGDATE,
}

# Type code written into parameter cells
_PARAMETER_WIRE_TYPE = {code: code for code in TypeCode}
_PARAMETER_WIRE_TYPE.update({code: TypeCode.STRING for code in STRING_TYPES})
_PARAMETER_WIRE_TYPE.update({code: TypeCode.BSTRING for code in BINARY_TYPES})
_PARAMETER_WIRE_TYPE[TypeCode.SMALLDECIMAL] = TypeCode.DECIMAL
_PARAMETER_WIRE_TYPE[TypeCode.NSTRING] = TypeCode.NSTRING
_PARAMETER_WIRE_TYPE[TypeCode.NCHAR] = TypeCode.NSTRING
_PARAMETER_WIRE_TYPE[TypeCode.NVARCHAR] = TypeCode.NSTRING


def parameter_wire_type(type_code: int) -> int:
    try:
        return _PARAMETER_WIRE_TYPE[type_code]
    except KeyError:
        raise TypeMismatch(f"Unsupported parameter type code {type_code}") from None


def _type_name(type_code: int) -> str:
    try:
        return TypeCode(type_code).name
    except ValueError:
        return str(type_code)


# Decimal ------------------------------------------------------------------------------------------
DECIMAL_SIZE = 16
DECIMAL_EXPONENT_BIAS = 6176
DECIMAL_MIN_EXPONENT = -6176
DECIMAL_MAX_EXPONENT = 6111
DECIMAL_MAX_COEFFICIENT = 10**34 - 1
DECIMAL_NULL = bytes(15) + b'\x70'

_COEFFICIENT_MASK = (1 << 113) - 1


def encode_decimal(value: Decimal) -> bytes:
    """Encode a Decimal as 16 byte decimal128 (binary integer coefficient)"""
    if not value.is_finite():
        raise TypeMismatch(f"{value} cannot be stored in a DECIMAL")

    sign, digits, exponent = value.as_tuple()
    coefficient = int(''.join(map(str, digits))) if digits else 0

    # Trade trailing zeros against the exponent until it fits
    while exponent > DECIMAL_MAX_EXPONENT and coefficient * 10 <= DECIMAL_MAX_COEFFICIENT:
        coefficient *= 10
        exponent -= 1
    while exponent < DECIMAL_MIN_EXPONENT and coefficient % 10 == 0 and coefficient:
        coefficient //= 10
        exponent += 1
    if coefficient > DECIMAL_MAX_COEFFICIENT or \
            not DECIMAL_MIN_EXPONENT <= exponent <= DECIMAL_MAX_EXPONENT:
        raise TypeMismatch(f"{value} exceeds the DECIMAL range")

    raw = (sign << 127) | ((exponent + DECIMAL_EXPONENT_BIAS) << 113) | coefficient
    return raw.to_bytes(DECIMAL_SIZE, 'little')


def decode_decimal(data: bytes) -> Decimal:
    """Decode 16 byte decimal128 exactly (raises DecodeError for NULL or bad exponents)"""
    if len(data) != DECIMAL_SIZE:
        raise DecodeError(f"DECIMAL needs {DECIMAL_SIZE} bytes, got {len(data)}")
    raw = int.from_bytes(data, 'little')
    sign = raw >> 127
    exponent = ((raw >> 113) & 0x3FFF) - DECIMAL_EXPONENT_BIAS
    coefficient = raw & _COEFFICIENT_MASK

    if not DECIMAL_MIN_EXPONENT <= exponent <= DECIMAL_MAX_EXPONENT:
        raise DecodeError(f"DECIMAL exponent {exponent} out of range")
    if coefficient > DECIMAL_MAX_COEFFICIENT:
        raise DecodeError("DECIMAL coefficient exceeds 34 digits")
    return Decimal((sign, tuple(int(d) for d in str(coefficient)), exponent))


# Date and time ------------------------------------------------------------------------------------
# Every encoding counts from 0001-01-01 and stores value + 1, 0 means "empty"
DAYDATE_NULL = 3652062
SECONDTIME_NULL = 86402
SECONDDATE_NULL = 315538070401
LONGDATE_NULL = 3155380704000000001

_SECONDS_PER_DAY = 86400
_TICKS_PER_SECOND = 10**7
_MAX_DAYDATE = date.max.toordinal()
_MAX_SECONDDATE = (_MAX_DAYDATE - 1) * _SECONDS_PER_DAY + _SECONDS_PER_DAY
_MAX_LONGDATE = _MAX_SECONDDATE * _TICKS_PER_SECOND
_EPOCH = datetime(1, 1, 1)


def _seconds_of_day(value) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def _check_naive(value):
    if value.tzinfo is not None:
        raise TypeMismatch(f"Timezone-aware value {value!r} is not supported")


def encode_daydate(value: date) -> int:
    if isinstance(value, datetime) or not isinstance(value, date):
        raise TypeMismatch(f"DAYDATE requires a date, got {type(value).__name__}")
    return value.toordinal()


def decode_daydate(raw: int) -> Optional[date]:
    if raw == DAYDATE_NULL:
        return None
    if raw == 0:
        return _EPOCH.date()
    if not 1 <= raw <= _MAX_DAYDATE:
        raise DecodeError(f"DAYDATE value {raw} out of range")
    return date.fromordinal(raw)


def encode_secondtime(value: time) -> int:
    if not isinstance(value, time):
        raise TypeMismatch(f"SECONDTIME requires a time, got {type(value).__name__}")
    _check_naive(value)
    if value.microsecond:
        raise TypeMismatch(f"SECONDTIME has second precision, got {value}")
    return _seconds_of_day(value) + 1


def decode_secondtime(raw: int) -> Optional[time]:
    if raw == SECONDTIME_NULL:
        return None
    if raw == 0:
        return time(0)
    if not 1 <= raw <= _SECONDS_PER_DAY:
        raise DecodeError(f"SECONDTIME value {raw} out of range")
    seconds = raw - 1
    return time(seconds // 3600, seconds % 3600 // 60, seconds % 60)


def encode_seconddate(value: datetime) -> int:
    if not isinstance(value, datetime):
        raise TypeMismatch(f"SECONDDATE requires a datetime, got {type(value).__name__}")
    _check_naive(value)
    if value.microsecond:
        raise TypeMismatch(f"SECONDDATE has second precision, got {value}")
    return (value.toordinal() - 1) * _SECONDS_PER_DAY + _seconds_of_day(value) + 1


def decode_seconddate(raw: int) -> Optional[datetime]:
    if raw == SECONDDATE_NULL:
        return None
    if raw == 0:
        return _EPOCH
    if not 1 <= raw <= _MAX_SECONDDATE:
        raise DecodeError(f"SECONDDATE value {raw} out of range")
    return _EPOCH + timedelta(seconds=raw - 1)


def encode_longdate(value: datetime) -> int:
    if not isinstance(value, datetime):
        raise TypeMismatch(f"LONGDATE requires a datetime, got {type(value).__name__}")
    _check_naive(value)
    seconds = (value.toordinal() - 1) * _SECONDS_PER_DAY + _seconds_of_day(value)
    return seconds * _TICKS_PER_SECOND + value.microsecond * 10 + 1


def decode_longdate(raw: int) -> Optional[datetime]:
    """100ns ticks; the sub-microsecond digit is dropped"""
    if raw == LONGDATE_NULL:
        return None
    if raw == 0:
        return _EPOCH
    if not 1 <= raw <= _MAX_LONGDATE:
        raise DecodeError(f"LONGDATE value {raw} out of range")
    seconds, ticks = divmod(raw - 1, _TICKS_PER_SECOND)
    return _EPOCH + timedelta(seconds=seconds, microseconds=ticks // 10)


_DATETIME_CODECS = {
    TypeCode.DAYDATE: ('<i', encode_daydate, decode_daydate, DAYDATE_NULL),
    TypeCode.SECONDTIME: ('<i', encode_secondtime, decode_secondtime, SECONDTIME_NULL),
    TypeCode.SECONDDATE: ('<q', encode_seconddate, decode_seconddate, SECONDDATE_NULL),
    TypeCode.LONGDATE: ('<q', encode_longdate, decode_longdate, LONGDATE_NULL),
}


# Value checks -------------------------------------------------------------------------------------
def _coerce(value: Any, type_code: int):
    """Validate value against a declared type, returning the value to encode"""
    if type_code in INTEGER_TYPES:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeMismatch(f"{_type_name(type_code)} requires int, got {type(value).__name__}")
        low, high, _ = INTEGER_TYPES[type_code]
        if not low <= value <= high:
            raise TypeMismatch(f"{value} out of range for {_type_name(type_code)}")
        return value

    if type_code in DECIMAL_TYPES:
        if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
            raise TypeMismatch(f"DECIMAL requires Decimal or int, got {type(value).__name__}")
        return Decimal(value)

    if type_code in FLOAT_TYPES:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeMismatch(f"{_type_name(type_code)} requires float, got {type(value).__name__}")
        return float(value)

    if type_code in STRING_TYPES:
        if not isinstance(value, str):
            raise TypeMismatch(f"{_type_name(type_code)} requires str, got {type(value).__name__}")
        return value

    if type_code in BINARY_TYPES:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeMismatch(f"{_type_name(type_code)} requires bytes, got {type(value).__name__}")
        return bytes(value)

    if type_code == TypeCode.BOOLEAN:
        if not isinstance(value, bool):
            raise TypeMismatch(f"BOOLEAN requires bool, got {type(value).__name__}")
        return value

    if type_code in LOB_TYPES:
        if isinstance(value, Lob):
            if not value.is_complete:
                raise TypeMismatch("Cannot bind a partially loaded LOB, call read_all() first")
            value = value.prefix
        if type_code == TypeCode.BLOB:
            if not isinstance(value, (bytes, bytearray, memoryview)):
                raise TypeMismatch(f"BLOB requires bytes, got {type(value).__name__}")
            return bytes(value)
        if not isinstance(value, str):
            raise TypeMismatch(f"{_type_name(type_code)} requires str, got {type(value).__name__}")
        return value

    if type_code in DATETIME_TYPES:
        # Range and precision checks happen in the encoders
        return value

    raise TypeMismatch(f"Unsupported type code {type_code}")


def _encode_plain(value: Any, type_code: int) -> bytes:
    """Data bytes of a non-NULL, non-LOB value (shared by both row layouts)"""
    if type_code in INTEGER_TYPES:
        return struct.pack(INTEGER_TYPES[type_code][2], value)
    if type_code in DECIMAL_TYPES:
        return encode_decimal(value)
    if type_code in FLOAT_TYPES:
        try:
            return struct.pack(FLOAT_TYPES[type_code], value)
        except (OverflowError, struct.error) as e:
            raise TypeMismatch(f"{value} out of range for {_type_name(type_code)}") from e
    if type_code in STRING_TYPES:
        return encode_lengthed(cesu8_encode(value))
    if type_code in BINARY_TYPES:
        return encode_lengthed(value)
    if type_code == TypeCode.BOOLEAN:
        return b'\x01' if value else b'\x00'
    if type_code in _DATETIME_CODECS:
        fmt, encoder, _, _ = _DATETIME_CODECS[type_code]
        return struct.pack(fmt, encoder(value))
    raise TypeMismatch(f"Unsupported type code {type_code}")


def _lob_bytes(value: Union[bytes, str], type_code: int):
    """(data, char_length) of a bound LOB value"""
    if type_code == TypeCode.BLOB:
        return value, len(value)
    return cesu8_encode(value), utf16_length(value)


# Parameter rows (TYPE_PREFIX) ---------------------------------------------------------------------
_LOB_PARAMETER_HEADER = struct.Struct('<Bii')


def input_parameters(descriptors: Sequence) -> list:
    """Descriptors of the parameters a caller supplies values for"""
    return [d for d in descriptors if d.direction != ParameterDirection.OUT]


def encode_parameter_row(row: Sequence[Any], descriptors: Sequence) -> bytes:
    """
    Encode one parameter row.

    LOB data follows the fixed part of the row; each LOB cell carries the
    1-based position of its data relative to the start of the row.
    """
    descriptors = input_parameters(descriptors)
    if len(row) != len(descriptors):
        raise BindError(f"Expected {len(descriptors)} parameters, got {len(row)}")

    cells = []
    lobs = []
    for index, (value, descriptor) in enumerate(zip(row, descriptors), start=1):
        type_code = descriptor.type_code
        wire_type = parameter_wire_type(type_code)
        try:
            if value is None:
                if not descriptor.nullable:
                    raise TypeMismatch("NULL for a non-nullable parameter")
                cells.append(bytes([wire_type | NULL_TYPE_FLAG]))
                continue

            value = _coerce(value, type_code)
            if type_code in LOB_TYPES:
                data, _ = _lob_bytes(value, type_code)
                cells.append(None)
                lobs.append((len(cells) - 1, wire_type, data))
            else:
                cells.append(bytes([wire_type]) + _encode_plain(value, type_code))
        except TypeMismatch as e:
            raise TypeMismatch(f"Parameter {index}: {e}") from None

    fixed_length = sum(len(cell) if cell is not None else 1 + _LOB_PARAMETER_HEADER.size
                       for cell in cells)
    position = fixed_length + 1
    for cell_index, wire_type, data in lobs:
        options = LobOptions.DATA_INCLUDED | LobOptions.LAST_DATA
        cells[cell_index] = bytes([wire_type]) + _LOB_PARAMETER_HEADER.pack(
            options, len(data), position
        )
        position += len(data)

    return b''.join(cells) + b''.join(data for _, _, data in lobs)


def encode_parameter(value: Any, descriptor) -> bytes:
    """Encode a single parameter cell (a one-column parameter row)"""
    return encode_parameter_row([value], [descriptor])


def decode_parameter_row(reader: ByteReader, descriptors: Sequence) -> tuple:
    """Decode one parameter row written by encode_parameter_row()"""
    row_start = reader.position
    values = []
    data_end = 0
    for descriptor in input_parameters(descriptors):
        value, end = _decode_parameter_cell(reader, descriptor, row_start)
        values.append(value)
        data_end = max(data_end, end)
    if data_end > reader.position:
        reader.skip(data_end - reader.position)
    return tuple(values)


def _decode_parameter_cell(reader: ByteReader, column, row_start: int):
    type_code = column.type_code
    wire_type = reader.read_u8()
    expected = _PARAMETER_WIRE_TYPE.get(type_code)
    if expected is None:
        raise DecodeError(f"Unknown type code {type_code}")
    if wire_type & 0x7F != expected:
        raise DecodeError(
            f"Parameter cell of type {_type_name(wire_type & 0x7F)} "
            f"where {_type_name(expected)} was declared"
        )
    if wire_type & NULL_TYPE_FLAG:
        if not column.nullable:
            raise DecodeError(f"NULL in non-nullable {_type_name(type_code)} parameter")
        return None, 0

    if type_code in LOB_TYPES:
        options, length, position = reader.unpack(_LOB_PARAMETER_HEADER.format)
        if position < 1:
            raise DecodeError(f"Invalid LOB data position {position}")
        start = row_start + position - 1
        data = reader.slice(start, length)
        if type_code == TypeCode.BLOB:
            return data, start + length
        return cesu8_decode(data), start + length

    return _decode_plain(reader, type_code, column.nullable, NullEncoding.TYPE_PREFIX), 0


# Result rows (INDICATOR) --------------------------------------------------------------------------
_LOB_CELL_HEADER = struct.Struct('<BB2xqqQi')


def encode_lob_cell(type_code: int, locator: int, char_length: int, byte_length: int,
                    chunk: bytes, last: bool) -> bytes:
    """LOB descriptor cell carrying a (possibly partial) prefix of the value"""
    options = LobOptions.DATA_INCLUDED
    if last:
        options |= LobOptions.LAST_DATA
    return _LOB_CELL_HEADER.pack(
        type_code, options, char_length, byte_length, locator, len(chunk)
    ) + chunk


def encode_cell(value: Any, column) -> bytes:
    """Encode a result-set cell"""
    type_code = column.type_code
    if value is None:
        if not column.nullable:
            raise TypeMismatch(f"NULL for non-nullable column {column.name}")
        return _encode_null_cell(type_code)

    value = _coerce(value, type_code)
    if type_code in INTEGER_TYPES:
        return b'\x01' + _encode_plain(value, type_code)
    if type_code == TypeCode.BOOLEAN and column.nullable:
        return b'\x01' + _encode_plain(value, type_code)
    if type_code in LOB_TYPES:
        data, char_length = _lob_bytes(value, type_code)
        return encode_lob_cell(type_code, 0, char_length, len(data), data, True)
    return _encode_plain(value, type_code)


def _encode_null_cell(type_code: int) -> bytes:
    if type_code in INTEGER_TYPES or type_code == TypeCode.BOOLEAN:
        return b'\x00'
    if type_code in DECIMAL_TYPES:
        return DECIMAL_NULL
    if type_code == TypeCode.REAL:
        return b'\xff' * 4
    if type_code == TypeCode.DOUBLE:
        return b'\xff' * 8
    if type_code in STRING_TYPES or type_code in BINARY_TYPES:
        return b'\xff'
    if type_code in _DATETIME_CODECS:
        fmt, _, _, null = _DATETIME_CODECS[type_code]
        return struct.pack(fmt, null)
    if type_code in LOB_TYPES:
        return bytes([type_code, LobOptions.NULL])
    raise TypeMismatch(f"Unsupported type code {type_code}")


def encode_row(row: Sequence[Any], columns: Sequence) -> bytes:
    if len(row) != len(columns):
        raise TypeMismatch(f"Row has {len(row)} values for {len(columns)} columns")
    return b''.join(encode_cell(value, column) for value, column in zip(row, columns))


def decode_row(reader: ByteReader, columns: Sequence) -> tuple:
    return tuple(decode_cell(reader, column) for column in columns)


def decode_cell(source: Union[ByteReader, bytes], column,
                null_encoding: NullEncoding = NullEncoding.INDICATOR):
    """
    Decode one cell.

    ``source`` is a ByteReader positioned at the cell, or the cell's bytes.
    LOB cells in result rows become Lob handles holding the received prefix.
    """
    reader = source if isinstance(source, ByteReader) else ByteReader(source)
    if null_encoding is NullEncoding.TYPE_PREFIX:
        return _decode_parameter_cell(reader, column, reader.position)[0]

    type_code = column.type_code
    if type_code in LOB_TYPES:
        return _decode_lob_cell(reader, column)
    return _decode_plain(reader, type_code, column.nullable, NullEncoding.INDICATOR)


def _decode_plain(reader: ByteReader, type_code: int, nullable: bool,
                  null_encoding: NullEncoding):
    indicated = null_encoding is NullEncoding.INDICATOR

    if type_code in INTEGER_TYPES:
        if indicated and _read_null_indicator(reader, type_code, nullable):
            return None
        return reader.unpack(INTEGER_TYPES[type_code][2])[0]

    if type_code == TypeCode.BOOLEAN:
        if indicated and nullable and _read_null_indicator(reader, type_code, nullable):
            return None
        return reader.read_u8() != 0

    if type_code in DECIMAL_TYPES:
        data = reader.read(DECIMAL_SIZE)
        if indicated and data == DECIMAL_NULL:
            return _null(type_code, nullable)
        return decode_decimal(data)

    if type_code in FLOAT_TYPES:
        fmt = FLOAT_TYPES[type_code]
        data = reader.read(struct.calcsize(fmt))
        if indicated and data == b'\xff' * len(data):
            return _null(type_code, nullable)
        return struct.unpack(fmt, data)[0]

    if type_code in STRING_TYPES or type_code in BINARY_TYPES:
        data = reader.read_lengthed()
        if data is None:
            if not indicated:
                raise DecodeError("NULL length indicator inside a parameter cell")
            return _null(type_code, nullable)
        return cesu8_decode(data) if type_code in STRING_TYPES else data

    if type_code in _DATETIME_CODECS:
        fmt, _, decoder, null = _DATETIME_CODECS[type_code]
        raw = reader.unpack(fmt)[0]
        if raw == null:
            if not indicated:
                raise DecodeError(f"NULL sentinel inside a {_type_name(type_code)} parameter cell")
            return _null(type_code, nullable)
        return decoder(raw)

    raise DecodeError(f"Unknown type code {type_code}")


def _read_null_indicator(reader: ByteReader, type_code: int, nullable: bool) -> bool:
    if reader.read_u8() == 0:
        _null(type_code, nullable)
        return True
    return False


def _null(type_code: int, nullable: bool):
    if not nullable:
        raise DecodeError(f"NULL in non-nullable {_type_name(type_code)} column")
    return None


def _decode_lob_cell(reader: ByteReader, column) -> Optional[Lob]:
    type_code = reader.read_u8()
    options = LobOptions(reader.read_u8())
    if options & LobOptions.NULL:
        return _null(column.type_code, column.nullable)
    if type_code not in LOB_TYPES:
        raise DecodeError(f"Invalid LOB type code {type_code}")

    reader.skip(2)
    char_length, byte_length, locator, chunk_length = reader.unpack('<qqQi')
    if char_length < 0 or byte_length < 0 or chunk_length < 0:
        raise DecodeError("Negative LOB length")
    data = reader.read(chunk_length) if options & LobOptions.DATA_INCLUDED else b''
    return lob_for_type(column.type_code, locator, char_length, byte_length,
                        data, bool(options & LobOptions.LAST_DATA))
