"""
Tests for HANA Protocol Implementation
======================================

Run with: pytest tests/
"""

import pytest
import struct

from hdb_wire.errors import DecodeError, FramingError
from hdb_wire.protocol import (
    MessageHeader, Part, Message, MessageType, FunctionCode, PartKind, PartAttributes,
    SegmentKind, TypeCode, ParameterDirection, ColumnDescriptor, ParameterDescriptor,
    encode_message, decode_message, fragment_payload, reassemble, join_fragments, parse_part,
    hexdump,
)
from hdb_wire.protocol import parts
from hdb_wire.protocol.constants import (
    ConnectOption, ErrorLevel, StatementContextOption, TransactionFlag,
    MESSAGE_HEADER_SIZE, SEGMENT_HEADER_SIZE, PART_HEADER_SIZE,
)
from hdb_wire.protocol.utils import (
    ByteReader, padsize, cesu8_encode, cesu8_decode, cesu8_decode_units, utf16_length,
    encode_length_indicator, is_high_surrogate, join_surrogates,
)


def command_message(sql: str = "select 1 from dummy", **kwargs) -> Message:
    return Message.request(
        session_id=5,
        packet_count=3,
        message_type=MessageType.EXECUTE_DIRECT,
        parts=[parts.Command(sql).to_part()],
        **kwargs,
    )


class TestMessageHeader:
    """Tests for message header packing"""

    def test_header_pack_unpack(self):
        """Test header round-trip"""
        header = MessageHeader(
            session_id=0x1122334455,
            packet_count=7,
            varpart_length=96,
            varpart_size=131072,
            segment_count=1,
        )

        packed = header.pack()
        assert len(packed) == MessageHeader.HEADER_SIZE

        unpacked = MessageHeader.unpack(packed)
        assert unpacked == header

    def test_header_is_little_endian(self):
        """Test field layout of a packed header"""
        packed = MessageHeader(session_id=1, packet_count=2, varpart_length=3,
                               varpart_size=4).pack()

        assert packed[0:8] == struct.pack('<q', 1)
        assert packed[8:12] == struct.pack('<i', 2)
        assert packed[12:16] == struct.pack('<I', 3)
        assert packed[16:20] == struct.pack('<I', 4)
        assert packed[20:22] == struct.pack('<h', 1)

    def test_header_invalid_data(self):
        """Test header unpacking with insufficient data"""
        with pytest.raises(FramingError):
            MessageHeader.unpack(bytes([0x01, 0x02]))


class TestMessageCodec:
    """Tests for message encoding and decoding"""

    def test_encode_sizes(self):
        """Test every length field matches the encoded bytes"""
        data = encode_message(command_message())

        # 19 bytes of SQL padded to 24
        assert len(data) == MESSAGE_HEADER_SIZE + SEGMENT_HEADER_SIZE + PART_HEADER_SIZE + 24
        header = MessageHeader.unpack(data)
        assert header.varpart_length == len(data) - MESSAGE_HEADER_SIZE

    def test_round_trip(self):
        """Test request round-trip"""
        data = encode_message(command_message(commit=True))
        message = decode_message(data)

        assert message.session_id == 5
        assert message.packet_count == 3
        assert message.segment.kind == SegmentKind.REQUEST
        assert message.segment.message_type == MessageType.EXECUTE_DIRECT
        assert message.segment.commit is True
        assert message.parts[0].kind == PartKind.COMMAND
        assert parse_part(message.parts[0]).sql == "select 1 from dummy"

    def test_reply_round_trip(self):
        """Test reply segments carry the function code"""
        reply = Message.reply(
            session_id=9, packet_count=1, function_code=FunctionCode.INSERT,
            parts=[parts.RowsAffected(counts=[1, -2, -3]).to_part()],
        )
        message = decode_message(encode_message(reply))

        assert message.segment.kind == SegmentKind.REPLY
        assert message.segment.function_code == FunctionCode.INSERT
        assert parse_part(message.parts[0]).counts == [1, -2, -3]

    def test_varpart_size(self):
        """Test the announced buffer size is kept"""
        data = encode_message(command_message(), varpart_size=131072)
        assert MessageHeader.unpack(data).varpart_size == 131072

    def test_truncated_message(self):
        """Test a message shorter than its header announces"""
        data = encode_message(command_message())
        with pytest.raises(FramingError):
            decode_message(data[:-8])

    def test_trailing_bytes(self):
        """Test bytes after the announced length are rejected"""
        data = encode_message(command_message())
        with pytest.raises(FramingError):
            decode_message(data + b'\x00' * 8)

    def test_unknown_segment_kind(self):
        """Test an unknown segment kind is a framing error"""
        data = bytearray(encode_message(command_message()))
        data[MESSAGE_HEADER_SIZE + 12] = 9
        with pytest.raises(FramingError):
            decode_message(bytes(data))

    def test_wrong_segment_offset(self):
        """Test a segment offset that does not match its position"""
        data = bytearray(encode_message(command_message()))
        data[MESSAGE_HEADER_SIZE + 4:MESSAGE_HEADER_SIZE + 8] = struct.pack('<i', 8)
        with pytest.raises(FramingError):
            decode_message(bytes(data))

    def test_part_exceeding_segment(self):
        """Test a part length beyond the segment end"""
        data = bytearray(encode_message(command_message()))
        offset = MESSAGE_HEADER_SIZE + SEGMENT_HEADER_SIZE + 8
        data[offset:offset + 4] = struct.pack('<i', 1000)
        with pytest.raises(FramingError):
            decode_message(bytes(data))

    def test_unknown_part_kind_strict(self):
        """Test strict decoding rejects unknown part kinds"""
        message = Message.request(0, 0, MessageType.EXECUTE, [Part(kind=99, payload=b'abc')])
        with pytest.raises(FramingError):
            decode_message(encode_message(message))

    def test_unknown_part_kind_lenient(self):
        """Test lenient decoding keeps unknown parts as raw payload"""
        message = Message.request(0, 0, MessageType.EXECUTE, [Part(kind=99, payload=b'abc')])
        decoded = decode_message(encode_message(message), strict=False)

        raw = parse_part(decoded.parts[0])
        assert isinstance(raw, parts.RawPart)
        assert raw.kind == 99
        assert raw.payload == b'abc'

    def test_big_argument_count(self):
        """Test argument counts beyond I2 use the I4 field"""
        part = Part(kind=PartKind.PARAMETERS, payload=b'\x01' * 8, argument_count=40000)
        message = decode_message(encode_message(Message.request(0, 0, MessageType.EXECUTE, [part])))
        assert message.parts[0].argument_count == 40000

    def test_multiple_parts(self):
        """Test part order and attributes survive a round trip"""
        message = Message.request(1, 1, MessageType.FETCH_NEXT, [
            parts.ResultSetId(77).to_part(),
            parts.FetchSize(32).to_part(),
        ])
        decoded = decode_message(encode_message(message))

        typed = [parse_part(part) for part in decoded.parts]
        assert typed == [parts.ResultSetId(77), parts.FetchSize(32)]


class TestFragmentation:
    """Tests for splitting payloads over several parts"""

    def test_single_fragment(self):
        """Test a small payload is one last packet"""
        fragments = fragment_payload(PartKind.RESULT_SET, b'abc', 8)
        assert len(fragments) == 1
        assert fragments[0].attributes == PartAttributes.LAST_PACKET
        assert reassemble(fragments) == b'abc'

    def test_fragment_sequence(self):
        """Test FIRST / NEXT / LAST flags of a split payload"""
        payload = bytes(range(20))
        fragments = fragment_payload(PartKind.RESULT_SET, payload, 8)

        assert [len(f.payload) for f in fragments] == [8, 8, 4]
        assert fragments[0].has_attribute(PartAttributes.FIRST_PACKET)
        assert fragments[1].has_attribute(PartAttributes.NEXT_PACKET)
        assert fragments[2].has_attribute(PartAttributes.LAST_PACKET)
        assert reassemble(fragments) == payload

    def test_missing_last_fragment(self):
        """Test an incomplete sequence is rejected"""
        fragments = fragment_payload(PartKind.RESULT_SET, bytes(20), 8)
        with pytest.raises(FramingError):
            reassemble(fragments[:-1])

    def test_mixed_kinds(self):
        """Test fragments of different kinds are rejected"""
        fragments = fragment_payload(PartKind.RESULT_SET, bytes(20), 8)
        fragments[1].kind = PartKind.PARAMETERS
        with pytest.raises(FramingError):
            reassemble(fragments)

    def test_join_fragments(self):
        """Test a fragment sequence among other parts becomes one part"""
        before = parts.StatementId(9).to_part()
        after = parts.ResultSet(data=b'', row_count=0).to_part()
        payload = bytes(range(30))
        received = [before] + fragment_payload(PartKind.PARAMETER_METADATA, payload, 8, 3) + [after]

        joined = join_fragments(received)

        assert len(joined) == 3
        assert joined[0] is before
        assert joined[1].kind == PartKind.PARAMETER_METADATA
        assert joined[1].payload == payload
        assert joined[1].argument_count == 3
        assert not joined[1].has_attribute(PartAttributes.FIRST_PACKET)
        assert joined[2] is after

    def test_join_unterminated_sequence(self):
        fragments = fragment_payload(PartKind.PARAMETER_METADATA, bytes(20), 8)
        with pytest.raises(FramingError):
            join_fragments(fragments[:-1])


class TestParts:
    """Tests for typed part builders and parsers"""

    def test_fields_round_trip(self):
        """Test authentication field lists, including a long field"""
        fields = [b'SYSTEM', b'SCRAMSHA256', b'x' * 300, b'']
        assert parts.Fields.unpack(parts.Fields.pack(fields)) == fields

    def test_fields_invalid_length(self):
        """Test reserved length bytes are rejected"""
        with pytest.raises(DecodeError):
            parts.Fields.unpack(b'\x01\x00\xfb')

    def test_fields_truncated(self):
        """Test a field shorter than its length"""
        with pytest.raises(DecodeError):
            parts.Fields.unpack(b'\x01\x00\x05abc')

    def test_connect_options(self):
        """Test every option value type"""
        options = parts.ConnectOptions(options={
            ConnectOption.CONNECTION_ID: 4711,
            ConnectOption.COMPLETE_ARRAY_EXECUTION: True,
            ConnectOption.CLIENT_LOCALE: "en_US",
            ConnectOption.SYSTEM_ID: b'HDB',
            ConnectOption.DATABASE_NAME: "SYSTEMDB",
        })
        parsed = parse_part(options.to_part())

        assert parsed.options == options.options
        assert parsed.get(ConnectOption.CONNECTION_ID) == 4711

    def test_unknown_option_id(self):
        """Test unknown option ids are kept as ints"""
        part = parts.ConnectOptions(options={99: 1}).to_part()
        assert parse_part(part).options == {99: 1}

    def test_statement_context(self):
        """Test sequence info and processing time accessors"""
        context = parts.StatementContext(options={
            StatementContextOption.STATEMENT_SEQUENCE_INFO: b'\x01\x02',
            StatementContextOption.SERVER_PROCESSING_TIME: 250,
        })
        parsed = parse_part(context.to_part())

        assert parsed.sequence_info == b'\x01\x02'
        assert parsed.server_processing_time == 250

    def test_transaction_flags(self):
        """Test flag lookup"""
        flags = parts.TransactionFlags(options={TransactionFlag.COMMITTED: True})
        parsed = parse_part(flags.to_part())

        assert parsed.is_set(TransactionFlag.COMMITTED)
        assert not parsed.is_set(TransactionFlag.ROLLED_BACK)

    def test_error_entries(self):
        """Test several error entries with padding between them"""
        error = parts.Error(errors=[
            parts.ServerErrorInfo(code=301, position=0, level=ErrorLevel.ERROR,
                                  sql_state="23000", message="unique constraint violated"),
            parts.ServerErrorInfo(code=1, position=5, level=ErrorLevel.WARNING,
                                  sql_state="01000", message="ok"),
        ])
        parsed = parse_part(error.to_part())

        assert parsed.errors == error.errors

    def test_client_info(self):
        """Test key/value entries"""
        info = parts.ClientInfo(entries={"APPLICATION": "tests", "DRIVER": "hdb_wire"})
        part = info.to_part()

        assert part.argument_count == 4
        assert parse_part(part).entries == info.entries

    def test_result_set_metadata(self):
        """Test column descriptors and their shared name block"""
        columns = (
            ColumnDescriptor("ID", TypeCode.INT, nullable=False, length=10,
                             table_name="T", schema_name="S", display_name="ID"),
            ColumnDescriptor("NAME", TypeCode.NVARCHAR, length=100,
                             table_name="T", schema_name="S", display_name="N"),
        )
        parsed = parse_part(parts.ResultSetMetadata(columns=columns).to_part())
        assert parsed.columns == columns

    def test_parameter_metadata(self):
        """Test parameter descriptors, with and without names"""
        parameters = (
            ParameterDescriptor(TypeCode.DECIMAL, nullable=False, length=18, fraction=2, name="P1"),
            ParameterDescriptor(TypeCode.NVARCHAR, direction=ParameterDirection.OUT, length=20),
        )
        parsed = parse_part(parts.ParameterMetadata(parameters=parameters).to_part())
        assert parsed.parameters == parameters

    def test_read_lob_parts(self):
        """Test LOB request and reply layouts"""
        request = parse_part(parts.ReadLobRequest(locator=9, offset=5, length=100).to_part())
        assert (request.locator, request.offset, request.length) == (9, 5, 100)

        reply = parse_part(parts.ReadLobReply(locator=9, options=0x06, data=b'chunk').to_part())
        assert reply.data == b'chunk'
        assert reply.is_last

    def test_result_set_flags(self):
        """Test cursor state attributes of a result set part"""
        chunk = parts.ResultSet(row_count=0,
                                attributes=PartAttributes.LAST_PACKET | PartAttributes.RESULT_SET_CLOSED)
        parsed = parse_part(chunk.to_part())

        assert parsed.is_last
        assert parsed.is_closed

    def test_malformed_part(self):
        """Test a short payload raises DecodeError"""
        with pytest.raises(DecodeError):
            parse_part(Part(kind=PartKind.STATEMENT_ID, payload=b'\x01\x02'))


class TestUtils:
    """Tests for codec helpers"""

    def test_padsize(self):
        assert [padsize(n) for n in (0, 1, 7, 8, 9, 16)] == [0, 7, 1, 0, 7, 0]

    def test_length_indicator(self):
        """Test the three length indicator widths"""
        assert encode_length_indicator(245) == bytes([245])
        assert encode_length_indicator(246) == b'\xf6' + struct.pack('<h', 246)
        assert encode_length_indicator(40000) == b'\xf7' + struct.pack('<i', 40000)

    def test_read_lengthed(self):
        reader = ByteReader(b'\x03abc\xff' + b'\xf6' + struct.pack('<h', 300) + b'x' * 300)
        assert reader.read_lengthed() == b'abc'
        assert reader.read_lengthed() is None
        assert reader.read_lengthed() == b'x' * 300
        assert reader.remaining == 0

    def test_reader_short_read(self):
        """Test reads past the end raise DecodeError"""
        with pytest.raises(DecodeError):
            ByteReader(b'\x01\x02').read_i32()

    def test_cesu8_supplementary(self):
        """Test characters outside the BMP become surrogate pairs"""
        text = "a\U0001F600b"
        encoded = cesu8_encode(text)

        assert len(encoded) == 8
        assert encoded != text.encode('utf-8')
        assert cesu8_decode(encoded) == text
        assert utf16_length(text) == 4

    def test_cesu8_units_keep_half_pairs(self):
        """Test a chunk ending inside a surrogate pair decodes to code units"""
        encoded = cesu8_encode("a\U0001F600")
        units = cesu8_decode_units(encoded[:4])

        assert units == "a\ud83d"
        assert is_high_surrogate(units[-1])
        assert join_surrogates(units + cesu8_decode_units(encoded[4:])) == "a\U0001F600"
        with pytest.raises(DecodeError):
            cesu8_decode(encoded[:4])

    def test_cesu8_invalid(self):
        with pytest.raises(DecodeError):
            cesu8_decode(b'\xff\xfe')


class TestHexdump:
    """Tests for hexdump utility"""

    def test_hexdump_basic(self):
        """Test basic hexdump output"""
        data = b"Hello, World!"
        output = hexdump(data)

        assert "48 65 6c 6c 6f" in output  # "Hello" in hex
        assert "Hello" in output  # ASCII representation

    def test_hexdump_with_prefix(self):
        """Test hexdump with prefix"""
        output = hexdump(b"\x00\x01\x02\x03", prefix="TX: ")
        assert output.startswith("TX: ")

    def test_hexdump_multiline(self):
        """Test hexdump with more than 16 bytes"""
        lines = hexdump(bytes(range(32))).split('\n')
        assert len(lines) == 2


class TestConstants:
    """Tests for protocol constant values"""

    def test_message_types(self):
        assert MessageType.EXECUTE_DIRECT == 2
        assert MessageType.PREPARE == 3
        assert MessageType.EXECUTE == 13
        assert MessageType.AUTHENTICATE == 65
        assert MessageType.CONNECT == 66
        assert MessageType.FETCH_NEXT == 71

    def test_part_kinds(self):
        assert PartKind.COMMAND == 3
        assert PartKind.RESULT_SET == 5
        assert PartKind.ERROR == 6
        assert PartKind.AUTHENTICATION == 33


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
