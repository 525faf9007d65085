"""
HANA Message Structures
=======================

Core framing structures for HANA protocol communication: a message header
owning segments, each segment owning length-prefixed parts.
"""

import struct
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ..errors import FramingError
from .constants import (
    MESSAGE_HEADER_SIZE, SEGMENT_HEADER_SIZE, PART_HEADER_SIZE,
    SegmentKind, PartKind, PartAttributes,
)
from .utils import padsize

logger = logging.getLogger(__name__)

_KNOWN_PART_KINDS = {kind.value for kind in PartKind}


@dataclass
class MessageHeader:
    """Message Header (32 bytes)"""
    session_id: int
    packet_count: int
    varpart_length: int
    varpart_size: int
    segment_count: int = 1
    packet_options: int = 0

    HEADER_SIZE = MESSAGE_HEADER_SIZE
    _STRUCT = struct.Struct('<qiIIhb9x')

    def pack(self) -> bytes:
        """Pack header to bytes"""
        return self._STRUCT.pack(
            self.session_id,
            self.packet_count,
            self.varpart_length,
            self.varpart_size,
            self.segment_count,
            self.packet_options,
        )

    @classmethod
    def unpack(cls, data: bytes) -> 'MessageHeader':
        """Unpack header from bytes"""
        if len(data) < cls.HEADER_SIZE:
            raise FramingError(f"Message header requires {cls.HEADER_SIZE} bytes, got {len(data)}")

        session_id, packet_count, varpart_length, varpart_size, segment_count, options = \
            cls._STRUCT.unpack(data[:cls.HEADER_SIZE])
        return cls(
            session_id=session_id,
            packet_count=packet_count,
            varpart_length=varpart_length,
            varpart_size=varpart_size,
            segment_count=segment_count,
            packet_options=options,
        )


@dataclass
class PartHeader:
    """Part Header (16 bytes)"""
    kind: int
    attributes: int
    argument_count: int
    big_argument_count: int
    buffer_length: int
    buffer_size: int

    HEADER_SIZE = PART_HEADER_SIZE
    _STRUCT = struct.Struct('<bBhiii')

    def pack(self) -> bytes:
        return self._STRUCT.pack(
            self.kind,
            self.attributes,
            self.argument_count,
            self.big_argument_count,
            self.buffer_length,
            self.buffer_size,
        )

    @classmethod
    def unpack(cls, data: bytes) -> 'PartHeader':
        if len(data) < cls.HEADER_SIZE:
            raise FramingError(f"Part header requires {cls.HEADER_SIZE} bytes, got {len(data)}")
        return cls(*cls._STRUCT.unpack(data[:cls.HEADER_SIZE]))


@dataclass
class Part:
    """A typed, length-prefixed payload inside a segment"""
    kind: int
    payload: bytes = b''
    argument_count: int = 1
    attributes: int = PartAttributes.NONE

    @property
    def padded_size(self) -> int:
        return PART_HEADER_SIZE + len(self.payload) + padsize(len(self.payload))

    def has_attribute(self, flag: PartAttributes) -> bool:
        return bool(self.attributes & flag)

    def pack(self, remaining_size: int) -> bytes:
        """Pack part header + padded payload"""
        argument_count = self.argument_count
        big_argument_count = 0
        if argument_count > 32767:
            big_argument_count = argument_count
            argument_count = -1
        header = PartHeader(
            kind=int(self.kind),
            attributes=int(self.attributes),
            argument_count=argument_count,
            big_argument_count=big_argument_count,
            buffer_length=len(self.payload),
            buffer_size=remaining_size,
        )
        return header.pack() + self.payload + b'\x00' * padsize(len(self.payload))


@dataclass
class Segment:
    """
    A request, reply or error segment.

    Request segments carry message_type/commit/command_options, reply and
    error segments carry function_code.
    """
    kind: int
    parts: List[Part] = field(default_factory=list)
    message_type: int = 0
    commit: bool = False
    command_options: int = 0
    function_code: int = 0
    segment_number: int = 1

    _REQUEST_STRUCT = struct.Struct('<iihhbbbB8x')
    _REPLY_STRUCT = struct.Struct('<iihhbxh8x')

    @property
    def size(self) -> int:
        return SEGMENT_HEADER_SIZE + sum(part.padded_size for part in self.parts)

    def find(self, kind: int) -> Optional[Part]:
        """First part of the given kind, if any"""
        for part in self.parts:
            if part.kind == kind:
                return part
        return None

    def pack(self, offset: int, remaining_size: int) -> bytes:
        """Pack segment header and all parts"""
        size = self.size
        if self.kind == SegmentKind.REQUEST:
            header = self._REQUEST_STRUCT.pack(
                size, offset, len(self.parts), self.segment_number, int(self.kind),
                int(self.message_type), 1 if self.commit else 0, self.command_options,
            )
        else:
            header = self._REPLY_STRUCT.pack(
                size, offset, len(self.parts), self.segment_number, int(self.kind),
                int(self.function_code),
            )

        buffer = bytearray(header)
        remaining_size -= SEGMENT_HEADER_SIZE
        for part in self.parts:
            buffer.extend(part.pack(remaining_size))
            remaining_size -= part.padded_size
        return bytes(buffer)


@dataclass
class Message:
    """Complete HANA message"""
    session_id: int
    packet_count: int
    segments: List[Segment] = field(default_factory=list)

    @property
    def varpart_length(self) -> int:
        return sum(segment.size for segment in self.segments)

    @property
    def segment(self) -> Segment:
        """The first (in practice the only) segment"""
        if not self.segments:
            raise FramingError("Message has no segments")
        return self.segments[0]

    @property
    def parts(self) -> List[Part]:
        return [part for segment in self.segments for part in segment.parts]

    def pack(self, varpart_size: Optional[int] = None) -> bytes:
        return encode_message(self, varpart_size)

    @classmethod
    def unpack(cls, data: bytes, strict: bool = True) -> 'Message':
        return decode_message(data, strict)

    @classmethod
    def request(cls, session_id: int, packet_count: int, message_type: int,
                parts: Iterable[Part], commit: bool = False,
                command_options: int = 0) -> 'Message':
        """Create a single-segment request message"""
        segment = Segment(
            kind=SegmentKind.REQUEST,
            parts=list(parts),
            message_type=message_type,
            commit=commit,
            command_options=command_options,
        )
        return cls(session_id=session_id, packet_count=packet_count, segments=[segment])

    @classmethod
    def reply(cls, session_id: int, packet_count: int, function_code: int,
              parts: Iterable[Part], kind: int = SegmentKind.REPLY) -> 'Message':
        """Create a single-segment reply message"""
        segment = Segment(kind=kind, parts=list(parts), function_code=function_code)
        return cls(session_id=session_id, packet_count=packet_count, segments=[segment])


def encode_message(message: Message, varpart_size: Optional[int] = None) -> bytes:
    """
    Encode a message to bytes.

    Segment and part sizes are computed up front so every length field is
    the exact byte count of what follows it.
    """
    varpart_length = message.varpart_length
    if varpart_size is None or varpart_size < varpart_length:
        varpart_size = varpart_length

    header = MessageHeader(
        session_id=message.session_id,
        packet_count=message.packet_count,
        varpart_length=varpart_length,
        varpart_size=varpart_size,
        segment_count=len(message.segments),
    )

    buffer = bytearray(header.pack())
    offset = 0
    remaining = varpart_size
    for number, segment in enumerate(message.segments, start=1):
        segment.segment_number = number
        buffer.extend(segment.pack(offset, remaining))
        offset += segment.size
        remaining -= segment.size

    if len(buffer) != MESSAGE_HEADER_SIZE + varpart_length:
        raise FramingError(
            f"Encoded {len(buffer)} bytes, expected {MESSAGE_HEADER_SIZE + varpart_length}"
        )
    return bytes(buffer)


def decode_message(data: bytes, strict: bool = True) -> Message:
    """
    Decode a complete message.

    Raises FramingError when the declared lengths do not match the data,
    when a segment kind is unknown, or (strict mode) when a part kind is
    unknown. A partial message is never returned.
    """
    header = MessageHeader.unpack(data)
    available = len(data) - MESSAGE_HEADER_SIZE
    if header.varpart_length != available:
        raise FramingError(
            f"Message declares {header.varpart_length} bytes after the header, got {available}"
        )
    if header.segment_count < 1:
        raise FramingError(f"Invalid segment count {header.segment_count}")

    message = Message(session_id=header.session_id, packet_count=header.packet_count)
    offset = MESSAGE_HEADER_SIZE
    for expected_number in range(1, header.segment_count + 1):
        segment, size = _decode_segment(data, offset, strict)
        if segment.segment_number != expected_number:
            logger.warning(
                f"Segment number {segment.segment_number} where {expected_number} was expected"
            )
        message.segments.append(segment)
        offset += size

    if offset != len(data):
        raise FramingError(f"{len(data) - offset} trailing bytes after last segment")
    return message


def _decode_segment(data: bytes, offset: int, strict: bool):
    if offset + SEGMENT_HEADER_SIZE > len(data):
        raise FramingError("Truncated segment header")

    raw = data[offset:offset + SEGMENT_HEADER_SIZE]
    kind = raw[12]
    if kind == SegmentKind.REQUEST:
        (length, seg_offset, part_count, number, kind,
         message_type, commit, command_options) = Segment._REQUEST_STRUCT.unpack(raw)
        segment = Segment(
            kind=SegmentKind.REQUEST,
            message_type=message_type,
            commit=bool(commit),
            command_options=command_options,
            segment_number=number,
        )
    elif kind in (SegmentKind.REPLY, SegmentKind.ERROR):
        length, seg_offset, part_count, number, kind, function_code = \
            Segment._REPLY_STRUCT.unpack(raw)
        segment = Segment(
            kind=SegmentKind(kind),
            function_code=function_code,
            segment_number=number,
        )
    else:
        raise FramingError(f"Unknown segment kind {kind}")

    if seg_offset != offset - MESSAGE_HEADER_SIZE:
        raise FramingError(
            f"Segment offset {seg_offset} does not match position {offset - MESSAGE_HEADER_SIZE}"
        )
    if length < SEGMENT_HEADER_SIZE or offset + length > len(data):
        raise FramingError(f"Segment length {length} exceeds the message")
    if part_count < 0:
        raise FramingError(f"Invalid part count {part_count}")

    end = offset + length
    position = offset + SEGMENT_HEADER_SIZE
    for _ in range(part_count):
        part, size = _decode_part(data, position, end, strict)
        segment.parts.append(part)
        position += size

    if position != end:
        raise FramingError(
            f"Segment declares {length} bytes, parts occupy {position - offset}"
        )
    return segment, length


def _decode_part(data: bytes, offset: int, end: int, strict: bool):
    if offset + PART_HEADER_SIZE > end:
        raise FramingError("Truncated part header")

    header = PartHeader.unpack(data[offset:offset + PART_HEADER_SIZE])
    if header.buffer_length < 0:
        raise FramingError(f"Negative part length {header.buffer_length}")

    payload_start = offset + PART_HEADER_SIZE
    padded = header.buffer_length + padsize(header.buffer_length)
    if payload_start + header.buffer_length > end:
        raise FramingError(
            f"Part of kind {header.kind} declares {header.buffer_length} bytes, "
            f"only {end - payload_start} left in segment"
        )
    # The final part of a segment may omit its padding
    size = PART_HEADER_SIZE + min(padded, end - payload_start)

    kind = header.kind
    if kind in _KNOWN_PART_KINDS:
        kind = PartKind(kind)
    elif strict:
        raise FramingError(f"Unknown part kind {kind}")
    else:
        logger.warning(f"Keeping unknown part kind {kind} as raw payload")

    argument_count = header.argument_count
    if argument_count == -1:
        argument_count = header.big_argument_count

    part = Part(
        kind=kind,
        payload=data[payload_start:payload_start + header.buffer_length],
        argument_count=argument_count,
        attributes=PartAttributes(header.attributes),
    )
    return part, size


def fragment_payload(kind: int, payload: bytes, max_size: int,
                     argument_count: int = 1) -> List[Part]:
    """
    Split a payload over consecutive parts of at most max_size bytes.

    A single fragment is flagged LAST_PACKET; longer sequences are flagged
    FIRST_PACKET, NEXT_PACKET ... LAST_PACKET.
    """
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    chunks = [payload[i:i + max_size] for i in range(0, len(payload), max_size)] or [b'']
    parts = []
    for index, chunk in enumerate(chunks):
        if len(chunks) == 1:
            attributes = PartAttributes.LAST_PACKET
        elif index == 0:
            attributes = PartAttributes.FIRST_PACKET
        elif index == len(chunks) - 1:
            attributes = PartAttributes.LAST_PACKET
        else:
            attributes = PartAttributes.NEXT_PACKET
        parts.append(Part(kind=kind, payload=chunk, argument_count=argument_count,
                          attributes=attributes))
    return parts


def reassemble(parts: Iterable[Part]) -> bytes:
    """Join a fragment sequence produced by fragment_payload()"""
    parts = list(parts)
    if not parts:
        raise FramingError("No fragments to reassemble")

    kind = parts[0].kind
    if len(parts) == 1:
        if not parts[0].has_attribute(PartAttributes.LAST_PACKET):
            raise FramingError("Single fragment is not flagged as last")
        return parts[0].payload

    if not parts[0].has_attribute(PartAttributes.FIRST_PACKET):
        raise FramingError("Fragment sequence does not start with a first packet")
    for part in parts[1:-1]:
        if not part.has_attribute(PartAttributes.NEXT_PACKET):
            raise FramingError("Fragment sequence is missing a continuation flag")
    if not parts[-1].has_attribute(PartAttributes.LAST_PACKET):
        raise FramingError("Fragment sequence does not end with a last packet")
    if any(part.kind != kind for part in parts):
        raise FramingError("Fragment sequence mixes part kinds")
    return b''.join(part.payload for part in parts)


def join_fragments(parts: Iterable[Part]) -> List[Part]:
    """
    Replace every fragment sequence in a segment's parts by one part.

    A sequence starts at a part flagged FIRST_PACKET and runs through the
    following parts of the same kind up to the one flagged LAST_PACKET.
    Parts outside a sequence are returned unchanged.
    """
    joined: List[Part] = []
    sequence: List[Part] = []
    for part in parts:
        if sequence:
            sequence.append(part)
            if part.has_attribute(PartAttributes.LAST_PACKET) or part.kind != sequence[0].kind:
                joined.append(_joined_part(sequence))
                sequence = []
        elif part.has_attribute(PartAttributes.FIRST_PACKET):
            sequence.append(part)
        else:
            joined.append(part)
    if sequence:
        raise FramingError(f"Fragment sequence of part kind {sequence[0].kind} is not terminated")
    return joined


def _joined_part(sequence: List[Part]) -> Part:
    payload = reassemble(sequence)
    logger.debug(f"Reassembled {len(sequence)} fragments of part kind {sequence[0].kind} "
                 f"({len(payload)} bytes)")
    return Part(
        kind=sequence[0].kind,
        payload=payload,
        argument_count=sequence[0].argument_count,
        attributes=PartAttributes(sequence[-1].attributes
                                  & ~(PartAttributes.FIRST_PACKET | PartAttributes.NEXT_PACKET)),
    )
