"""
HANA Protocol Constants
=======================

Enumerations and constants for the HANA SQL command network protocol.
"""

from enum import IntEnum, IntFlag


# Fixed header sizes (bytes)
MESSAGE_HEADER_SIZE = 32
SEGMENT_HEADER_SIZE = 24
PART_HEADER_SIZE = 16

# Sent once after the TCP connect, answered by 8 bytes of version info
INITIALIZATION_REQUEST = bytes([0xFF, 0xFF, 0xFF, 0xFF, 4, 20, 0, 4, 1, 0, 0, 1, 1, 1])
INITIALIZATION_REPLY_SIZE = 8

DEFAULT_MAX_MESSAGE_SIZE = 131072


class SegmentKind(IntEnum):
    """Segment kinds (segment header byte 12)"""
    INVALID = 0
    REQUEST = 1
    REPLY = 2
    ERROR = 5


class MessageType(IntEnum):
    """Request message types"""
    NIL = 0
    EXECUTE_DIRECT = 2
    PREPARE = 3
    ABAP_STREAM = 4
    XA_START = 5
    XA_JOIN = 6
    EXECUTE = 13
    READ_LOB = 16
    WRITE_LOB = 17
    FIND_LOB = 18
    AUTHENTICATE = 65
    CONNECT = 66
    COMMIT = 67
    ROLLBACK = 68
    CLOSE_RESULT_SET = 69
    DROP_STATEMENT_ID = 70
    FETCH_NEXT = 71
    FETCH_ABSOLUTE = 72
    FETCH_RELATIVE = 73
    FETCH_FIRST = 74
    FETCH_LAST = 75
    DISCONNECT = 77
    EXECUTE_ITAB = 78
    FETCH_NEXT_ITAB = 79
    INSERT_NEXT_ITAB = 80


class FunctionCode(IntEnum):
    """Reply function codes (what kind of statement was processed)"""
    NIL = 0
    DDL = 1
    INSERT = 2
    UPDATE = 3
    DELETE = 4
    SELECT = 5
    SELECT_FOR_UPDATE = 6
    EXPLAIN = 7
    DB_PROCEDURE_CALL = 8
    DB_PROCEDURE_CALL_WITH_RESULT = 9
    FETCH = 10
    COMMIT = 11
    ROLLBACK = 12
    SAVEPOINT = 13
    CONNECT = 14
    WRITE_LOB = 15
    READ_LOB = 16
    PING = 17
    DISCONNECT = 18
    CLOSE_CURSOR = 19
    FIND_LOB = 20
    ABAP_STREAM = 21
    XA_START = 22
    XA_JOIN = 23


class PartKind(IntEnum):
    """Part kinds (part header byte 0)"""
    COMMAND = 3                 # SQL command text
    RESULT_SET = 5              # Tabular result set data
    ERROR = 6                   # Error information
    STATEMENT_ID = 10           # Prepared statement identifier
    TRANSACTION_ID = 11
    ROWS_AFFECTED = 12          # Number of affected rows
    RESULT_SET_ID = 13          # Result set identifier
    TOPOLOGY_INFORMATION = 15
    TABLE_LOCATION = 16
    READ_LOB_REQUEST = 17       # Request for reading (part of) a lob
    READ_LOB_REPLY = 18         # Reply of request for reading (part of) a lob
    COMMAND_INFO = 27
    WRITE_LOB_REQUEST = 28
    CLIENT_CONTEXT = 29
    WRITE_LOB_REPLY = 30
    PARAMETERS = 32             # Parameter data
    AUTHENTICATION = 33         # Authentication data
    SESSION_CONTEXT = 34
    CLIENT_ID = 35
    PROFILE = 38
    STATEMENT_CONTEXT = 39      # Statement visibility context
    PARTITION_INFORMATION = 40
    OUTPUT_PARAMETERS = 41
    CONNECT_OPTIONS = 42        # Connect options
    COMMIT_OPTIONS = 43
    FETCH_OPTIONS = 44
    FETCH_SIZE = 45             # Number of rows to fetch
    PARAMETER_METADATA = 47     # Parameter metadata (type and length information)
    RESULT_SET_METADATA = 48    # Result set metadata (type, length, and name information)
    FIND_LOB_REQUEST = 49
    FIND_LOB_REPLY = 50
    CLIENT_INFO = 57
    TRANSACTION_FLAGS = 64      # Transaction handling flags


class PartAttributes(IntFlag):
    """Part attribute bits (part header byte 1)"""
    NONE = 0
    LAST_PACKET = 0x01          # Last part of a data sequence
    NEXT_PACKET = 0x02          # Part of a data sequence, more to follow
    FIRST_PACKET = 0x04         # First part of a data sequence
    ROW_NOT_FOUND = 0x08
    RESULT_SET_CLOSED = 0x10


class TypeCode(IntEnum):
    """Column and parameter type codes"""
    NULL = 0
    TINYINT = 1
    SMALLINT = 2
    INT = 3
    BIGINT = 4
    DECIMAL = 5
    REAL = 6
    DOUBLE = 7
    CHAR = 8
    VARCHAR = 9
    NCHAR = 10
    NVARCHAR = 11
    BINARY = 12
    VARBINARY = 13
    CLOB = 25
    NCLOB = 26
    BLOB = 27
    BOOLEAN = 28
    STRING = 29
    NSTRING = 30
    BSTRING = 33
    SMALLDECIMAL = 47
    TEXT = 51
    SHORTTEXT = 52
    LONGDATE = 61
    SECONDDATE = 62
    DAYDATE = 63
    SECONDTIME = 64


# Set on the type byte of a parameter cell that carries NULL
NULL_TYPE_FLAG = 0x80


class ParameterMode(IntFlag):
    """Parameter / column option bits"""
    NONE = 0
    MANDATORY = 0x01
    OPTIONAL = 0x02             # Nullable
    DEFAULT = 0x04


class ParameterDirection(IntEnum):
    """Direction of a statement parameter"""
    IN = 1
    INOUT = 2
    OUT = 4


class ErrorLevel(IntEnum):
    """Severity of a server error entry"""
    WARNING = 0
    ERROR = 1
    FATAL = 2


class RowsAffected(IntEnum):
    """Special values of a ROWSAFFECTED entry"""
    SUCCESS_NO_INFO = -2
    EXECUTION_FAILED = -3


class CommandOptions(IntFlag):
    """Command options byte of a request segment"""
    NONE = 0
    HOLD_CURSORS_OVER_COMMIT = 0x08


class LobOptions(IntFlag):
    """Options byte of a LOB descriptor"""
    NONE = 0
    NULL = 0x01
    DATA_INCLUDED = 0x02
    LAST_DATA = 0x04


class OptionType(IntEnum):
    """Value type tags used inside option parts"""
    BOOLEAN = 28
    INT = 3
    BIGINT = 4
    DOUBLE = 7
    STRING = 29
    BSTRING = 33


class ConnectOption(IntEnum):
    """Connect option identifiers"""
    CONNECTION_ID = 1
    COMPLETE_ARRAY_EXECUTION = 2
    CLIENT_LOCALE = 3
    SUPPORTS_LARGE_BULK_OPERATIONS = 4
    LARGE_NUMBER_OF_PARAMETERS_SUPPORT = 10
    SYSTEM_ID = 11
    DATA_FORMAT_VERSION = 12
    SELECT_FOR_UPDATE_SUPPORTED = 14
    CLIENT_DISTRIBUTION_MODE = 15
    ENGINE_DATA_FORMAT_VERSION = 16
    DISTRIBUTION_PROTOCOL_VERSION = 17
    SPLIT_BATCH_COMMANDS = 18
    USE_TRANSACTION_FLAGS_ONLY = 19
    IGNORE_UNKNOWN_PART_KINDS = 21
    DATA_FORMAT_VERSION2 = 23
    FULL_VERSION_STRING = 44
    DATABASE_NAME = 45


class TransactionFlag(IntEnum):
    """Transaction flag identifiers"""
    ROLLED_BACK = 0
    COMMITTED = 1
    NEW_ISOLATION_LEVEL = 2
    DDL_COMMIT_MODE_CHANGED = 3
    WRITE_TRANSACTION_STARTED = 4
    NO_WRITE_TRANSACTION_STARTED = 5
    SESSION_CLOSING_TRANSACTION_ERROR = 6


class StatementContextOption(IntEnum):
    """Statement context identifiers"""
    STATEMENT_SEQUENCE_INFO = 1
    SERVER_PROCESSING_TIME = 2
    SCHEMA_NAME = 3


# Data format version announced in the connect options
DATA_FORMAT_VERSION = 4

# Length indicator bytes for variable-length cells
MAX_1_BYTE_LENGTH = 245
LENGTH_INDICATOR_2BYTE = 246
LENGTH_INDICATOR_4BYTE = 247
LENGTH_INDICATOR_NULL = 255
MAX_2_BYTE_LENGTH = 32767

# Name offset marking a missing table/schema/column name in metadata parts
NO_NAME_OFFSET = 0xFFFFFFFF
