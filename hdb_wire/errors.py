"""
HANA Client Errors
==================

Two-tier exception hierarchy. RecoverableError subclasses leave the
connection usable; FatalError subclasses force the connection into the
FAILED state and the caller has to reconnect.
"""

import asyncio
import ssl
import struct
from enum import Enum
from typing import Optional


class HdbWireError(Exception):
    """Base class for all exceptions raised by hdb_wire."""


# Recoverable ------------------------------------------------------------------------------------
class RecoverableError(HdbWireError):
    """The connection remains usable; retry the statement with corrected input."""


class ServerError(RecoverableError):
    """SQL or server-side rejection reported in an ERROR part."""

    def __init__(self, code: int, sql_state: str, message: str,
                 level: int = 1, position: int = 0):
        self.code = code
        self.sql_state = sql_state
        self.message = message
        self.level = level
        self.position = position
        super().__init__(f"[{code}] ({sql_state}) {message}")

    @property
    def is_fatal(self) -> bool:
        """The server signalled that the session cannot continue"""
        return self.level >= 2

    @property
    def is_warning(self) -> bool:
        return self.level == 0


class BindError(RecoverableError):
    """Parameter set does not match the prepared parameter metadata."""


class TypeMismatch(BindError):
    """A value's domain is incompatible with the declared parameter type."""


class StateError(RecoverableError):
    """Operation attempted on a closed/failed connection or a dead statement."""


class ConnectionClosed(StateError):
    """The connection has been closed."""


class ConnectionFailed(StateError):
    """The connection failed earlier and must be recreated."""


class ConnectionBusy(StateError):
    """A request is already in flight and the busy policy rejects waiting."""


# Fatal ------------------------------------------------------------------------------------------
class FatalError(HdbWireError):
    """The connection is no longer usable."""


class TransportError(FatalError):
    """I/O failure, connection reset or TLS failure on the byte stream."""


class ProtocolError(FatalError):
    """The byte stream violates the protocol; client and server are out of sync."""


class FramingError(ProtocolError):
    """Message, segment or part length fields are inconsistent."""


class DecodeError(ProtocolError):
    """A cell or part payload is malformed."""


class AuthFailureReason(Enum):
    """Why an authentication attempt was rejected"""
    INVALID_CREDENTIALS = "invalid_credentials"
    NEGOTIATION_EXHAUSTED = "negotiation_exhausted"
    UNSUPPORTED_MECHANISM = "unsupported_mechanism"
    MALFORMED_CHALLENGE = "malformed_challenge"


class AuthError(FatalError):
    """Authentication failed; no session was established."""

    def __init__(self, reason: AuthFailureReason, message: str = ""):
        self.reason = reason
        super().__init__(f"{reason.value}: {message}" if message else reason.value)


# Classification ---------------------------------------------------------------------------------
def classify_exception(exc: BaseException) -> HdbWireError:
    """Map a low-level exception onto the hdb_wire taxonomy."""
    if isinstance(exc, HdbWireError):
        return exc
    if isinstance(exc, asyncio.IncompleteReadError):
        return TransportError(
            f"Connection closed by server after {len(exc.partial)} of "
            f"{exc.expected} expected bytes"
        )
    if isinstance(exc, asyncio.TimeoutError):
        return TransportError("Timed out waiting for the server")
    if isinstance(exc, ssl.SSLError):
        return TransportError(f"TLS failure: {exc}")
    if isinstance(exc, OSError):
        return TransportError(f"I/O failure: {exc}")
    if isinstance(exc, (struct.error, UnicodeDecodeError)):
        return DecodeError(str(exc))
    return ProtocolError(f"Unexpected failure: {exc!r}")


def server_error_from_info(info) -> ServerError:
    """Build a ServerError from a decoded ERROR part entry."""
    return ServerError(
        code=info.code,
        sql_state=info.sql_state,
        message=info.message,
        level=info.level,
        position=info.position,
    )


def is_fatal(exc: Optional[BaseException]) -> bool:
    """True if the error forces the connection into FAILED."""
    if isinstance(exc, FatalError):
        return True
    if isinstance(exc, ServerError):
        return exc.is_fatal
    return False
