"""
HANA Statement Engine
=====================

Prepared statements, execution outcomes and result-set cursors.

A statement is prepared once (PREPARE) and executed with parameter rows
(EXECUTE). Batches are split over as many EXECUTE requests as the message
size allows and every submitted row gets exactly one outcome. Result sets
arrive in chunks: the first with the execute reply, the rest on demand
(FETCHNEXT) until the server flags the last packet.
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple, Union

from .errors import (
    BindError, ProtocolError, RecoverableError, ServerError, StateError, server_error_from_info,
)
from .lob import Lob
from .protocol import MessageType, parts
from .protocol.constants import (
    CommandOptions, ErrorLevel, FunctionCode, RowsAffected as RowsAffectedValue,
    MESSAGE_HEADER_SIZE, SEGMENT_HEADER_SIZE, PART_HEADER_SIZE,
)
from .protocol.parts import ColumnDescriptor, ParameterDescriptor
from .protocol.values import encode_parameter_row, input_parameters

logger = logging.getLogger(__name__)

# Room left in a batch message for headers, statement id and context parts
BATCH_OVERHEAD = MESSAGE_HEADER_SIZE + SEGMENT_HEADER_SIZE + 4 * PART_HEADER_SIZE + 512


# Outcomes -----------------------------------------------------------------------------------------
@dataclass(frozen=True)
class RowsAffected:
    """A DML statement changed ``count`` rows"""
    count: int


@dataclass(frozen=True)
class ResultSetOutcome:
    """A query; rows are read from ``result_set``"""
    result_set: 'ResultSet'


@dataclass(frozen=True)
class Success:
    """DDL, commit and other statements without a count"""


@dataclass(frozen=True)
class ItemSuccess:
    """A batch row was executed; None when the server gave no count"""
    rows_affected: Optional[int]


@dataclass(frozen=True)
class ItemFailure:
    """A batch row was rejected, by the server or by local validation"""
    error: RecoverableError


@dataclass(frozen=True)
class ItemNotExecuted:
    """The server stopped the batch before reaching this row"""
    error: StateError


BatchItemOutcome = Union[ItemSuccess, ItemFailure, ItemNotExecuted]


@dataclass(frozen=True)
class BatchOutcome:
    """One outcome per row of a multi-row execution"""
    items: Tuple[BatchItemOutcome, ...]


Outcome = Union[RowsAffected, ResultSetOutcome, Success, BatchOutcome]


def _item_outcomes(row_count: int, counts: Sequence[int],
                   errors: Sequence[ServerError]) -> List[BatchItemOutcome]:
    """
    Map ROWSAFFECTED entries and error entries onto the submitted rows.

    Each EXECUTION_FAILED marker consumes the next error in order. Rows the
    server reported nothing for were never executed; an error left over
    after the markers is the one that stopped the batch and becomes their
    cause.
    """
    pending = list(errors)
    items: List[BatchItemOutcome] = []
    for index in range(row_count):
        if index < len(counts):
            count = counts[index]
            if count == RowsAffectedValue.EXECUTION_FAILED:
                error = pending.pop(0) if pending else ServerError(
                    code=0, sql_state="HY000", message=f"Row {index + 1} failed without details"
                )
                items.append(ItemFailure(error))
            else:
                items.append(ItemSuccess(count if count >= 0 else None))
        else:
            cause = pending[0] if pending else None
            error = StateError(f"Row {index + 1} was not executed: the server ended the batch early"
                               + (f" ({cause})" if cause else ""))
            error.__cause__ = cause
            items.append(ItemNotExecuted(error))
    return items


def outcome_from_reply(connection, reply, metadata: Optional[Tuple[ColumnDescriptor, ...]] = None,
                       statement: Optional['PreparedStatement'] = None) -> Outcome:
    """Build the outcome of an EXECUTE or EXECUTEDIRECT reply"""
    errors = [server_error_from_info(info) for info in reply.errors
              if info.level >= ErrorLevel.ERROR]
    metadata_part = reply.find(parts.ResultSetMetadata)
    if metadata_part is not None:
        metadata = metadata_part.columns

    chunk = reply.find(parts.ResultSet)
    is_query = reply.function_code in (FunctionCode.SELECT, FunctionCode.SELECT_FOR_UPDATE)
    if chunk is not None or (is_query and metadata is not None):
        if metadata is None:
            raise ProtocolError("Result set without metadata")
        result_set_id = reply.find(parts.ResultSetId)
        result_set = ResultSet(
            connection=connection,
            metadata=metadata,
            result_set_id=result_set_id.value if result_set_id else None,
            first_chunk=chunk,
            statement=statement,
        )
        return ResultSetOutcome(result_set)

    affected = reply.find(parts.RowsAffected)
    if affected is not None and len(affected.counts) > 1:
        return BatchOutcome(tuple(_item_outcomes(len(affected.counts), affected.counts, errors)))
    if errors:
        raise errors[0]
    if affected is not None and affected.counts and affected.counts[0] >= 0:
        return RowsAffected(affected.counts[0])
    return Success()


# Prepared statements ------------------------------------------------------------------------------
# Parts a PREPARE reply is expected to carry
_PREPARE_REPLY_PARTS = (
    parts.StatementId, parts.ParameterMetadata, parts.ResultSetMetadata, parts.TableLocation,
    parts.StatementContext, parts.TransactionFlags, parts.Error,
)


async def prepare_statement(connection, sql: str) -> 'PreparedStatement':
    reply = await connection.request(MessageType.PREPARE, [parts.Command(sql).to_part()],
                                     command_options=CommandOptions.HOLD_CURSORS_OVER_COMMIT)
    statement_id = reply.find(parts.StatementId)
    if statement_id is None:
        raise ProtocolError("PREPARE reply carries no statement id")
    for part in reply.parts:
        if not isinstance(part, _PREPARE_REPLY_PARTS):
            logger.debug(f"Ignoring unexpected part of kind {part.kind} in PREPARE reply")

    parameter_metadata = reply.find(parts.ParameterMetadata)
    result_metadata = reply.find(parts.ResultSetMetadata)
    table_location = reply.find(parts.TableLocation)
    statement = PreparedStatement(
        connection=connection,
        sql=sql,
        statement_id=statement_id.value,
        parameters=parameter_metadata.parameters if parameter_metadata else (),
        result_metadata=result_metadata.columns if result_metadata else None,
        table_location=table_location.volume_ids if table_location else (),
    )
    logger.debug(f"Prepared statement {statement.statement_id} "
                 f"({len(statement.parameters)} parameters)")
    return statement


class PreparedStatement:
    """
    A server-side prepared statement.

    Parameter metadata is fixed at prepare time; every execution is
    validated against it before anything is sent.
    """

    def __init__(self, connection, sql: str, statement_id: int,
                 parameters: Tuple[ParameterDescriptor, ...],
                 result_metadata: Optional[Tuple[ColumnDescriptor, ...]],
                 table_location: Sequence[int] = ()):
        self._connection = connection
        self.sql = sql
        self.statement_id = statement_id
        self.parameters = tuple(parameters)
        self.result_metadata = tuple(result_metadata) if result_metadata is not None else None
        self.table_location = tuple(table_location)
        self._closed = False

    @property
    def connection(self):
        return self._connection

    @property
    def is_closed(self) -> bool:
        return self._closed or not self._connection.is_open

    @property
    def input_parameters(self) -> List[ParameterDescriptor]:
        return input_parameters(self.parameters)

    def _check_open(self):
        if self._closed:
            raise StateError(f"Statement {self.statement_id} is closed")
        self._connection.check_usable()

    def bind(self, row: Sequence[Any] = ()) -> bytes:
        """Validate and encode one parameter row (BindError / TypeMismatch)"""
        return encode_parameter_row(tuple(row), self.parameters)

    def _execute_parts(self, encoded_rows: Sequence[bytes]) -> list:
        request_parts = [parts.StatementId(self.statement_id).to_part()]
        if self.input_parameters:
            request_parts.append(parts.Parameters.from_rows(encoded_rows).to_part())
        return request_parts

    async def execute(self, params: Sequence[Any] = ()) -> Outcome:
        """Execute with one parameter row"""
        self._check_open()
        encoded = self._bind_for_request(params)
        reply = await self._connection.request(
            MessageType.EXECUTE, self._execute_parts([encoded]),
            commit=self._connection.autocommit,
            command_options=CommandOptions.HOLD_CURSORS_OVER_COMMIT,
        )
        return outcome_from_reply(self._connection, reply, self.result_metadata, statement=self)

    async def execute_batch(self, rows: Sequence[Sequence[Any]]) -> List[BatchItemOutcome]:
        """
        Execute once per parameter row.

        All rows are validated locally first; a row that fails validation gets
        an ItemFailure and is not sent. Returns exactly one outcome per row,
        in order; rows after an early stop are ItemNotExecuted.
        """
        self._check_open()
        if not self.input_parameters:
            raise StateError("execute_batch() needs a statement with input parameters")

        outcomes: List[Optional[BatchItemOutcome]] = [None] * len(rows)
        encoded: List[Tuple[int, bytes]] = []
        for index, row in enumerate(rows):
            try:
                encoded.append((index, self._bind_for_request(row)))
            except BindError as e:
                logger.debug(f"Batch row {index + 1} rejected before sending: {e}")
                outcomes[index] = ItemFailure(e)

        stopped = False
        for chunk in self._split(encoded):
            if stopped:
                for index, _ in chunk:
                    outcomes[index] = ItemNotExecuted(
                        StateError("Not executed: an earlier part of the batch was aborted")
                    )
                continue

            reply = await self._connection.request(
                MessageType.EXECUTE, self._execute_parts([data for _, data in chunk]),
                commit=self._connection.autocommit, raise_errors=False,
                command_options=CommandOptions.HOLD_CURSORS_OVER_COMMIT,
            )
            affected = reply.find(parts.RowsAffected)
            counts = affected.counts if affected else []
            errors = [server_error_from_info(info) for info in reply.errors
                      if info.level >= ErrorLevel.ERROR]
            items = _item_outcomes(len(chunk), counts, errors)
            for (index, _), item in zip(chunk, items):
                outcomes[index] = item
            stopped = any(isinstance(item, ItemNotExecuted) for item in items)

        logger.debug(f"Batch of {len(outcomes)} rows on statement {self.statement_id}: "
                     f"{sum(isinstance(o, ItemSuccess) for o in outcomes)} succeeded")
        return outcomes

    @property
    def _payload_budget(self) -> int:
        return max(self._connection.params.max_message_size - BATCH_OVERHEAD, 1)

    def _bind_for_request(self, row: Sequence[Any]) -> bytes:
        encoded = self.bind(row)
        if len(encoded) > self._payload_budget:
            raise BindError(
                f"Parameter row of {len(encoded)} bytes does not fit into one request "
                f"({self._payload_budget} bytes available)"
            )
        return encoded

    def _split(self, encoded: List[Tuple[int, bytes]]) -> List[List[Tuple[int, bytes]]]:
        chunks: List[List[Tuple[int, bytes]]] = []
        size = 0
        for index, data in encoded:
            if not chunks or size + len(data) > self._payload_budget:
                chunks.append([])
                size = 0
            chunks[-1].append((index, data))
            size += len(data)
        return chunks

    async def close(self):
        """Drop the statement on the server; idempotent"""
        if self._closed:
            return
        self._closed = True
        if self._connection.is_open:
            await self._connection.request(
                MessageType.DROP_STATEMENT_ID, [parts.StatementId(self.statement_id).to_part()]
            )

    async def __aenter__(self) -> 'PreparedStatement':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __repr__(self):
        return f"<PreparedStatement {self.statement_id} {self.sql[:40]!r}>"


# Result sets --------------------------------------------------------------------------------------
class ResultSet:
    """
    Cursor over the rows of a query.

    ``fetch_next()`` returns the next chunk of rows and None once the
    result is exhausted. LOB handles of a chunk become invalid when the next
    chunk is fetched.
    """

    def __init__(self, connection, metadata: Tuple[ColumnDescriptor, ...],
                 result_set_id: Optional[int], first_chunk: Optional[parts.ResultSet] = None,
                 statement: Optional[PreparedStatement] = None):
        self._connection = connection
        self.metadata = tuple(metadata)
        self.result_set_id = result_set_id
        self.statement = statement
        self.generation = 0
        self.rows_fetched = 0
        self._closed = False
        self._last = first_chunk is None and result_set_id is None
        self._server_closed = self._last
        self._pending: Optional[List[tuple]] = None
        if first_chunk is not None:
            self._pending = self._accept(first_chunk)

    @property
    def columns(self) -> List[Optional[str]]:
        return [column.display_name or column.name for column in self.metadata]

    @property
    def lob_read_length(self) -> int:
        return self._connection.lob_read_length

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_exhausted(self) -> bool:
        return self._last and self._pending is None

    def _accept(self, chunk: parts.ResultSet) -> List[tuple]:
        rows = chunk.decode_rows(self.metadata)
        if chunk.is_last:
            self._last = True
        if chunk.is_closed:
            self._last = True
            self._server_closed = True
        return rows

    def _deliver(self, rows: List[tuple]) -> List[tuple]:
        self.generation += 1
        for row in rows:
            for value in row:
                if isinstance(value, Lob):
                    value.bind(self, self.generation)
        self.rows_fetched += len(rows)
        return rows

    async def fetch_next(self) -> Optional[List[tuple]]:
        """Next chunk of rows, or None when there are no more"""
        if self._closed:
            raise StateError("Result set is closed")

        while True:
            if self._pending is not None:
                rows, self._pending = self._pending, None
                if rows:
                    return self._deliver(rows)
            if self._last:
                await self._close_cursor()
                return None
            await self._fetch_more()

    async def _fetch_more(self):
        if self.result_set_id is None:
            raise ProtocolError("Result set continues but has no result set id")
        reply = await self._connection.request(MessageType.FETCH_NEXT, [
            parts.ResultSetId(self.result_set_id).to_part(),
            parts.FetchSize(self._connection.fetch_size).to_part(),
        ])
        chunk = reply.find(parts.ResultSet)
        if chunk is None:
            self._last = True
            self._pending = []
        else:
            self._pending = self._accept(chunk)

    async def fetch_all(self, resolve_lobs: bool = False) -> List[tuple]:
        """
        All remaining rows. With ``resolve_lobs`` every LOB handle is read
        completely and replaced by its value before the cursor moves on.
        """
        result = []
        while True:
            rows = await self.fetch_next()
            if rows is None:
                return result
            if resolve_lobs:
                rows = [await self._resolve(row) for row in rows]
            result.extend(rows)

    @staticmethod
    async def _resolve(row: tuple) -> tuple:
        values = []
        for value in row:
            if isinstance(value, Lob):
                value = await value.read_all()
            values.append(value)
        return tuple(values)

    async def __aiter__(self) -> AsyncIterator[tuple]:
        while True:
            rows = await self.fetch_next()
            if rows is None:
                return
            for row in rows:
                yield row

    async def read_lob(self, locator: int, offset: int, length: int):
        """Used by LOB handles of this result set"""
        return await self._connection.read_lob(locator, offset, length)

    async def _close_cursor(self):
        if self._server_closed or self.result_set_id is None:
            self._server_closed = True
            return
        self._server_closed = True
        if self._connection.is_open:
            await self._connection.request(
                MessageType.CLOSE_RESULT_SET, [parts.ResultSetId(self.result_set_id).to_part()]
            )

    async def close(self):
        """Release the server cursor; idempotent"""
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._last = True
        await self._close_cursor()

    async def __aenter__(self) -> 'ResultSet':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def __repr__(self):
        return f"<ResultSet id={self.result_set_id} columns={len(self.metadata)} fetched={self.rows_fetched}>"
