"""
HANA Connection Module
======================

Owns the transport and the session of one physical connection and runs
every request through a single gate, so at most one request is ever in
flight.

State machine::

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> READY <-> BUSY
                                                     |
                                                  CLOSING -> CLOSED

FAILED is absorbing and reachable from any state on a fatal error.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .auth import Session, TransactionState, authenticate
from .errors import (
    HdbWireError, StateError, ConnectionBusy, ConnectionClosed, ConnectionFailed,
    ProtocolError, ServerError, classify_exception, is_fatal, server_error_from_info,
)
from .params import BusyPolicy, ConnectParams
from .protocol import Message, MessageType, Part, join_fragments
from .protocol.constants import (
    CommandOptions, ErrorLevel, TransactionFlag, StatementContextOption,
)
from .protocol.parts import (
    ClientInfo, Command, Error, ReadLobRequest, ReadLobReply, ServerErrorInfo,
    StatementContext, TransactionFlags, parse_part,
)
from .statement import PreparedStatement, Outcome, outcome_from_reply, prepare_statement
from .transport import MessageStream, Transport, open_transport

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle of a connection"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    BUSY = "busy"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class Reply:
    """A decoded reply: its typed parts plus the error entries it carried"""
    message: Message
    parts: List[Any] = field(default_factory=list)
    errors: List[ServerErrorInfo] = field(default_factory=list)

    @property
    def function_code(self) -> int:
        return self.message.segment.function_code

    def find(self, part_type):
        for part in self.parts:
            if isinstance(part, part_type):
                return part
        return None


TransportFactory = Callable[[ConnectParams], Awaitable[Transport]]


class Connection:
    """
    A single connection to a HANA server.

    Use ``await connect(params)`` or ``async with Connection(params)``.
    """

    def __init__(self, params: ConnectParams,
                 transport_factory: Optional[TransportFactory] = None):
        self.params = params
        self._transport_factory = transport_factory or open_transport
        self._state = ConnectionState.DISCONNECTED
        self._stream: Optional[MessageStream] = None
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()
        self._pending_client_info: Dict[str, str] = {}
        self._failure: Optional[BaseException] = None
        self.fetch_size = params.fetch_size
        self.lob_read_length = params.lob_read_length

    # State --------------------------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_ready(self) -> bool:
        return self._state == ConnectionState.READY

    @property
    def is_busy(self) -> bool:
        return self._state == ConnectionState.BUSY

    @property
    def is_open(self) -> bool:
        return self._state in (ConnectionState.READY, ConnectionState.BUSY)

    @property
    def autocommit(self) -> bool:
        return self._session.autocommit if self._session else self.params.autocommit

    @property
    def call_count(self) -> int:
        return self._session.call_count if self._session else 0

    @property
    def server_processing_time(self) -> int:
        """Accumulated server processing time in microseconds"""
        return self._session.server_processing_time if self._session else 0

    @property
    def transaction_state(self) -> TransactionState:
        return self._session.transaction_state if self._session else TransactionState.NONE

    def _set_state(self, state: ConnectionState):
        if state != self._state:
            logger.debug(f"Connection {self.params.address}: {self._state.value} -> {state.value}")
            self._state = state

    def check_usable(self):
        """Raise the error matching a connection that cannot take requests"""
        if self._state == ConnectionState.CLOSED:
            raise ConnectionClosed("Connection is closed")
        if self._state == ConnectionState.FAILED:
            raise ConnectionFailed(f"Connection failed earlier: {self._failure}")
        if self._state in (ConnectionState.CLOSING,):
            raise ConnectionClosed("Connection is closing")
        if self._state not in (ConnectionState.READY, ConnectionState.BUSY):
            raise StateError(f"Connection is {self._state.value}")

    # Lifecycle ----------------------------------------------------------------------------------
    async def open(self) -> 'Connection':
        """Open the transport and authenticate"""
        if self._state != ConnectionState.DISCONNECTED:
            raise StateError(f"Cannot open a connection that is {self._state.value}")

        self._set_state(ConnectionState.CONNECTING)
        try:
            transport = await self._transport_factory(self.params)
        except asyncio.CancelledError:
            self._set_state(ConnectionState.CLOSED)
            raise
        except Exception as e:
            error = classify_exception(e)
            logger.error(f"Connecting to {self.params.address} failed: {error}")
            self._fail(error)
            if error is e:
                raise
            raise error from e
        self._stream = MessageStream(transport, read_timeout=self.params.read_timeout)

        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            self._session = await authenticate(self.params, self._stream)
        except asyncio.CancelledError:
            await self._release_transport()
            self._set_state(ConnectionState.CLOSED)
            raise
        except Exception as e:
            error = classify_exception(e)
            logger.error(f"Authentication with {self.params.address} failed: {error}")
            await self._release_transport()
            self._fail(error)
            if error is e:
                raise
            raise error from e

        self._set_state(ConnectionState.READY)
        return self

    async def close(self):
        """
        Close the connection. Safe to call in any state, any number of times.

        From READY the server is sent a DISCONNECT first; failures on that
        last round trip are logged and do not prevent closing.
        """
        if self._state == ConnectionState.CLOSED:
            return

        if self._state == ConnectionState.READY and not self._lock.locked():
            self._set_state(ConnectionState.CLOSING)
            async with self._lock:
                try:
                    await asyncio.wait_for(self._disconnect(), timeout=self.params.connect_timeout)
                except (HdbWireError, asyncio.TimeoutError) as e:
                    logger.warning(f"Disconnect from {self.params.address} failed: {e}")
        else:
            self._set_state(ConnectionState.CLOSING)

        await self._release_transport()
        self._set_state(ConnectionState.CLOSED)
        logger.info(f"Disconnected from {self.params.address}")

    async def _disconnect(self):
        message = Message.request(
            session_id=self._session.session_id,
            packet_count=self._session.next_packet(),
            message_type=MessageType.DISCONNECT,
            parts=[],
        )
        await self._stream.exchange(message)

    async def _release_transport(self):
        if self._stream is not None:
            await self._stream.transport.close()

    def _fail(self, error: BaseException):
        if self._state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self._failure = error
        self._set_state(ConnectionState.FAILED)

    async def __aenter__(self) -> 'Connection':
        if self._state == ConnectionState.DISCONNECTED:
            await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # Request gate -------------------------------------------------------------------------------
    async def request(self, message_type: MessageType, parts: Iterable[Part],
                      commit: bool = False, raise_errors: bool = True,
                      command_options: CommandOptions = CommandOptions.NONE) -> Reply:
        """
        One round trip. Only legal while READY.

        With BusyPolicy.WAIT a second caller queues behind the running
        request, with BusyPolicy.FAIL it gets ConnectionBusy before anything
        is written. Fatal errors move the connection to FAILED; recoverable
        ones leave it READY.
        """
        self.check_usable()
        if self._lock.locked() and self.params.busy_policy is BusyPolicy.FAIL:
            raise ConnectionBusy("Another request is in flight on this connection")

        async with self._lock:
            self.check_usable()
            self._set_state(ConnectionState.BUSY)
            try:
                reply = await self._round_trip(message_type, list(parts), commit, command_options)
                self._check_errors(reply, raise_errors)
            except asyncio.CancelledError:
                logger.warning(f"Request to {self.params.address} cancelled, closing connection")
                self._set_state(ConnectionState.CLOSING)
                await self._release_transport()
                self._set_state(ConnectionState.CLOSED)
                raise
            except Exception as e:
                error = classify_exception(e)
                if is_fatal(error):
                    logger.error(f"Fatal error on {self.params.address}: {error}")
                    await self._release_transport()
                    self._fail(error)
                elif self._state == ConnectionState.BUSY:
                    self._set_state(ConnectionState.READY)
                if error is e:
                    raise
                raise error from e

            if self._state == ConnectionState.BUSY:
                self._set_state(ConnectionState.READY)
            return reply

    async def _round_trip(self, message_type: MessageType, parts: List[Part],
                          commit: bool, command_options: CommandOptions) -> Reply:
        session = self._session
        if session.statement_sequence_info is not None:
            parts.append(StatementContext(options={
                StatementContextOption.STATEMENT_SEQUENCE_INFO: session.statement_sequence_info,
            }).to_part())
        if self._pending_client_info:
            parts.append(ClientInfo(entries=dict(self._pending_client_info)).to_part())
            self._pending_client_info.clear()

        message = Message.request(
            session_id=session.session_id,
            packet_count=session.next_packet(),
            message_type=message_type,
            parts=parts,
            commit=commit,
            command_options=int(command_options),
        )
        response = await self._stream.exchange(message, varpart_size=self.params.max_message_size)
        session.call_count += 1
        return self._process_reply(response)

    def _process_reply(self, message: Message) -> Reply:
        session = self._session
        reply = Reply(message=message)
        for part in join_fragments(message.parts):
            typed = parse_part(part)
            reply.parts.append(typed)

            if isinstance(typed, StatementContext):
                if typed.sequence_info is not None:
                    session.statement_sequence_info = typed.sequence_info
                session.server_processing_time += typed.server_processing_time
            elif isinstance(typed, TransactionFlags):
                self._apply_transaction_flags(typed)
            elif isinstance(typed, Error):
                reply.errors.extend(typed.errors)
        return reply

    def _apply_transaction_flags(self, flags: TransactionFlags):
        session = self._session
        if flags.is_set(TransactionFlag.COMMITTED) or flags.is_set(TransactionFlag.ROLLED_BACK):
            session.transaction_state = TransactionState.NONE
        if flags.is_set(TransactionFlag.WRITE_TRANSACTION_STARTED):
            session.transaction_state = TransactionState.ACTIVE
        if flags.is_set(TransactionFlag.NO_WRITE_TRANSACTION_STARTED):
            session.transaction_state = TransactionState.NONE
        if flags.is_set(TransactionFlag.SESSION_CLOSING_TRANSACTION_ERROR):
            raise ServerError(code=0, sql_state="HY000",
                              message="Server is closing the session after a transaction error",
                              level=ErrorLevel.FATAL)

    def _check_errors(self, reply: Reply, raise_errors: bool):
        for info in reply.errors:
            if info.level == ErrorLevel.WARNING:
                logger.warning(f"Server warning [{info.code}] {info.message}")
        for info in reply.errors:
            if info.level >= ErrorLevel.FATAL:
                raise server_error_from_info(info)
        if raise_errors:
            for info in reply.errors:
                if info.level >= ErrorLevel.ERROR:
                    raise server_error_from_info(info)

    # Operations ---------------------------------------------------------------------------------
    async def prepare(self, sql: str) -> PreparedStatement:
        """Prepare a statement for (repeated) execution"""
        return await prepare_statement(self, sql)

    async def execute(self, sql: str) -> Outcome:
        """Execute a statement directly, without preparing it"""
        reply = await self.request(MessageType.EXECUTE_DIRECT, [Command(sql).to_part()],
                                   commit=self.autocommit,
                                   command_options=CommandOptions.HOLD_CURSORS_OVER_COMMIT)
        return outcome_from_reply(self, reply)

    async def commit(self):
        await self.request(MessageType.COMMIT, [])
        self._session.transaction_state = TransactionState.NONE

    async def rollback(self):
        await self.request(MessageType.ROLLBACK, [])
        self._session.transaction_state = TransactionState.NONE

    async def read_lob(self, locator: int, offset: int, length: int) -> Tuple[bytes, bool]:
        """Read part of a LOB; offset is 1-based"""
        request = ReadLobRequest(locator=locator, offset=offset, length=length)
        reply = await self.request(MessageType.READ_LOB, [request.to_part()])
        lob_reply = reply.find(ReadLobReply)
        if lob_reply is None:
            raise ProtocolError(f"No LOB data in reply for locator {locator}")
        return lob_reply.data, lob_reply.is_last

    def set_autocommit(self, autocommit: bool):
        self.check_usable()
        self._session.autocommit = autocommit

    def set_client_info(self, key: str, value: str):
        """Attach a client info entry; sent along with the next request"""
        self._pending_client_info[key] = value

    def set_fetch_size(self, fetch_size: int):
        if fetch_size <= 0:
            raise ValueError("fetch_size must be positive")
        self.fetch_size = fetch_size

    def set_lob_read_length(self, length: int):
        if length <= 0:
            raise ValueError("lob_read_length must be positive")
        self.lob_read_length = length

    def __repr__(self):
        return f"<Connection {self.params.address} {self._state.value}>"


async def connect(params: ConnectParams,
                  transport_factory: Optional[TransportFactory] = None) -> Connection:
    """Open and authenticate a new connection"""
    connection = Connection(params, transport_factory)
    await connection.open()
    return connection
