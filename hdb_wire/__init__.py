"""
HANA Wire Client
================

An asyncio client for the SAP HANA SQL command network protocol.
"""

__version__ = "1.0.0"

from .errors import (
    HdbWireError,
    RecoverableError,
    FatalError,
    ServerError,
    BindError,
    TypeMismatch,
    StateError,
    ConnectionClosed,
    ConnectionFailed,
    ConnectionBusy,
    TransportError,
    ProtocolError,
    FramingError,
    DecodeError,
    AuthError,
    AuthFailureReason,
)
from .protocol import ColumnDescriptor, ParameterDescriptor, TypeCode
from .lob import Lob, BLob, CLob, NClob
from .params import BusyPolicy, ConnectParams
from .auth import Session, TransactionState
from .statement import (
    PreparedStatement,
    ResultSet,
    RowsAffected,
    ResultSetOutcome,
    Success,
    BatchOutcome,
    ItemSuccess,
    ItemFailure,
    ItemNotExecuted,
)
from .connection import Connection, ConnectionState, connect
from .config import default_params, load_params, load_params_with_env

__all__ = [
    # Connection
    "connect",
    "Connection",
    "ConnectionState",
    "ConnectParams",
    "BusyPolicy",
    "Session",
    "TransactionState",
    # Statements
    "PreparedStatement",
    "ResultSet",
    "RowsAffected",
    "ResultSetOutcome",
    "Success",
    "BatchOutcome",
    "ItemSuccess",
    "ItemFailure",
    "ItemNotExecuted",
    # Values
    "ColumnDescriptor",
    "ParameterDescriptor",
    "TypeCode",
    "Lob",
    "BLob",
    "CLob",
    "NClob",
    # Errors
    "HdbWireError",
    "RecoverableError",
    "FatalError",
    "ServerError",
    "BindError",
    "TypeMismatch",
    "StateError",
    "ConnectionClosed",
    "ConnectionFailed",
    "ConnectionBusy",
    "TransportError",
    "ProtocolError",
    "FramingError",
    "DecodeError",
    "AuthError",
    "AuthFailureReason",
    # Config
    "default_params",
    "load_params",
    "load_params_with_env",
]
