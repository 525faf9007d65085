"""
Tests for LOB Handles
=====================

Run with: pytest tests/
"""

import pytest
import pytest_asyncio

from hdb_wire import (
    BLob, NClob, ColumnDescriptor, ConnectParams, ConnectionClosed, StateError, TypeCode, connect,
)

from fake_server import FakeHanaServer

SELECT_L = "select id, data, text from L order by id"
L_COLUMNS = [
    ColumnDescriptor("ID", TypeCode.INT, nullable=False),
    ColumnDescriptor("DATA", TypeCode.BLOB),
    ColumnDescriptor("TEXT", TypeCode.NCLOB),
]
L_ROWS = [
    (1, b'0123456789abcdef', 'hello wörld €'),
    (2, None, 'ab'),
    (3, b'xy', '\U0001F600' * 5 + 'x'),
]


@pytest_asyncio.fixture
async def lob_server():
    """One row per chunk, four units of every LOB inline"""
    server = FakeHanaServer(first_chunk_size=1, lob_prefix_length=4)
    server.register_query(SELECT_L, L_COLUMNS, L_ROWS)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def lob_connection(lob_server):
    params = ConnectParams(host="127.0.0.1", port=lob_server.port, user="SYSTEM",
                           password="secret", fetch_size=1, lob_read_length=5,
                           connect_timeout=5.0, read_timeout=5.0)
    connection = await connect(params)
    yield connection
    await connection.close()


async def first_row(connection):
    result_set = (await connection.execute(SELECT_L)).result_set
    rows = await result_set.fetch_next()
    return result_set, rows[0]


@pytest.mark.asyncio
class TestLazyReading:
    """Tests for reading LOB data on demand"""

    async def test_handle_holds_prefix(self, lob_server, lob_connection):
        _, row = await first_row(lob_connection)
        blob, nclob = row[1], row[2]

        assert isinstance(blob, BLob)
        assert isinstance(nclob, NClob)
        assert blob.prefix == b'0123'
        assert blob.total_length == 16
        assert not blob.is_complete
        assert blob.received_length == 4
        assert lob_server.lob_reads == []

    async def test_read_all(self, lob_server, lob_connection):
        _, row = await first_row(lob_connection)

        assert await row[1].read_all() == b'0123456789abcdef'
        assert await row[2].read_all() == 'hello wörld €'
        assert row[1].is_complete

    async def test_incremental_read(self, lob_server, lob_connection):
        _, row = await first_row(lob_connection)
        blob = row[1]

        assert await blob.read(2) == b'01'
        assert lob_server.lob_reads == []

        assert await blob.read(4) == b'2345'
        assert lob_server.lob_reads == [(blob.locator, 5, 5)]

        assert await blob.read() == b'6789abcdef'
        assert lob_server.lob_reads[-1] == (blob.locator, 10, 7)
        assert await blob.read(1) == b''

    async def test_character_offsets(self, lob_connection):
        _, row = await first_row(lob_connection)
        nclob = row[2]

        assert await nclob.read(3) == 'hel'
        assert await nclob.read(-1) == 'lo wörld €'

    async def test_supplementary_characters(self, lob_connection):
        """Test offsets count UTF-16 units, not code points"""
        result_set = (await lob_connection.execute(SELECT_L)).result_set
        rows = await result_set.fetch_all(resolve_lobs=True)

        assert rows[2][2] == '\U0001F600' * 5 + 'x'

    async def test_small_lob_is_complete(self, lob_server, lob_connection):
        result_set = (await lob_connection.execute(SELECT_L)).result_set
        await result_set.fetch_next()
        row = (await result_set.fetch_next())[0]

        assert row[1] is None
        assert row[2].is_complete
        assert row[2].prefix == 'ab'
        assert await row[2].read_all() == 'ab'
        assert lob_server.lob_reads == []


SELECT_E = "select text from E"
E_TEXT = '\U0001F600' * 5 + 'x'


@pytest_asyncio.fixture
async def emoji_lob():
    """An NCLOB whose inline prefix is the high half of a surrogate pair"""
    server = FakeHanaServer(lob_prefix_length=1)
    server.register_query(SELECT_E, [ColumnDescriptor("TEXT", TypeCode.NCLOB)], [(E_TEXT,)])
    await server.start()
    params = ConnectParams(host="127.0.0.1", port=server.port, user="SYSTEM",
                           password="secret", lob_read_length=4,
                           connect_timeout=5.0, read_timeout=5.0)
    connection = await connect(params)
    result_set = (await connection.execute(SELECT_E)).result_set
    rows = await result_set.fetch_next()
    yield server, rows[0][0]
    await connection.close()
    await server.stop()


@pytest.mark.asyncio
class TestSurrogatePairs:
    """Tests for character LOB chunks that end between the halves of a pair"""

    async def test_split_prefix(self, emoji_lob):
        _, lob = emoji_lob

        assert lob.total_length == 11
        assert lob.received_length == 1
        assert lob.prefix == ''

    async def test_split_chunks(self, emoji_lob):
        server, lob = emoji_lob

        assert await lob.read(2) == '\U0001F600'
        assert lob.received_length == 5
        assert lob.prefix == '\U0001F600' * 2
        assert await lob.read(2) == '\U0001F600'
        assert await lob.read() == '\U0001F600' * 3 + 'x'
        assert server.lob_reads == [(lob.locator, 2, 4), (lob.locator, 6, 6)]

    async def test_read_never_splits_a_character(self, emoji_lob):
        _, lob = emoji_lob

        assert await lob.read(1) == '\U0001F600'
        assert await lob.read(2) == '\U0001F600'
        assert await lob.read(1) == '\U0001F600'

    async def test_read_all(self, emoji_lob):
        _, lob = emoji_lob
        assert await lob.read_all() == E_TEXT


@pytest.mark.asyncio
class TestInvalidation:
    """Tests for handles outliving their chunk"""

    async def test_next_chunk_invalidates(self, lob_connection):
        result_set, row = await first_row(lob_connection)
        blob = row[1]
        assert blob.is_valid

        await result_set.fetch_next()

        assert not blob.is_valid
        with pytest.raises(StateError):
            await blob.read_all()

    async def test_fetch_all_without_resolving(self, lob_connection):
        result_set = (await lob_connection.execute(SELECT_L)).result_set
        rows = await result_set.fetch_all()

        assert not rows[0][1].is_valid
        assert result_set.generation == 3

    async def test_resolve_lobs(self, lob_connection):
        result_set = (await lob_connection.execute(SELECT_L)).result_set
        assert await result_set.fetch_all(resolve_lobs=True) == L_ROWS

    async def test_read_after_connection_close(self, lob_connection):
        _, row = await first_row(lob_connection)
        await lob_connection.close()

        with pytest.raises(ConnectionClosed):
            await row[1].read_all()


class TestDetachedHandles:
    """Tests for handles not produced by a result set"""

    def test_complete_without_source(self):
        lob = BLob(locator=0, char_length=3, byte_length=3, data=b'abc')
        assert lob.is_complete
        assert lob.is_valid

    @pytest.mark.asyncio
    async def test_partial_without_source(self):
        lob = BLob(locator=9, char_length=10, byte_length=10, data=b'abc')
        with pytest.raises(StateError):
            await lob.read_all()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
