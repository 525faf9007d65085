"""
HANA SQL Command Network Protocol
=================================

This package implements the message framing, part encodings and value
marshaling of the SAP HANA SQL command network protocol.
"""

from .constants import (
    SegmentKind,
    MessageType,
    FunctionCode,
    PartKind,
    PartAttributes,
    TypeCode,
    ParameterDirection,
    LobOptions,
    CommandOptions,
)
from .utils import hexdump, ByteReader
from .message import (
    MessageHeader,
    Part,
    Segment,
    Message,
    encode_message,
    decode_message,
    fragment_payload,
    reassemble,
    join_fragments,
)
from .values import (
    NullEncoding,
    encode_parameter,
    encode_parameter_row,
    encode_cell,
    decode_cell,
)
from .parts import ColumnDescriptor, ParameterDescriptor, parse_part

__all__ = [
    # Constants
    "SegmentKind",
    "MessageType",
    "FunctionCode",
    "PartKind",
    "PartAttributes",
    "TypeCode",
    "ParameterDirection",
    "LobOptions",
    "CommandOptions",
    # Messages
    "MessageHeader",
    "Part",
    "Segment",
    "Message",
    "encode_message",
    "decode_message",
    "fragment_payload",
    "reassemble",
    "join_fragments",
    # Values
    "NullEncoding",
    "encode_parameter",
    "encode_parameter_row",
    "encode_cell",
    "decode_cell",
    # Parts
    "ColumnDescriptor",
    "ParameterDescriptor",
    "parse_part",
    # Utils
    "hexdump",
    "ByteReader",
]
