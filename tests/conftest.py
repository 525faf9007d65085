"""
Pytest configuration for hdb_wire tests

Fixtures start an in-process fake HANA server per test and connect to it.
"""

import pytest
import pytest_asyncio

from hdb_wire import ConnectParams, connect
from hdb_wire.protocol import ColumnDescriptor, ParameterDescriptor, TypeCode

from fake_server import FakeHanaServer

INSERT_T = "insert into T(a,b) values(?,?)"
SELECT_T = "select * from T order by a"


@pytest.fixture
def table():
    """Rows of the fake table T"""
    return []


@pytest_asyncio.fixture
async def server(table):
    """Fake server with a two-column table T"""
    server = FakeHanaServer(user="SYSTEM", password="secret")

    def insert(row):
        table.append(row)
        return 1

    server.register_dml(INSERT_T, [
        ParameterDescriptor(TypeCode.INT, nullable=False, name="A"),
        ParameterDescriptor(TypeCode.INT, nullable=True, name="B"),
    ], insert)
    server.register_query(SELECT_T, [
        ColumnDescriptor("A", TypeCode.INT, nullable=False, table_name="T"),
        ColumnDescriptor("B", TypeCode.INT, nullable=True, table_name="T"),
    ], lambda _params: sorted(table))
    server.register_ddl("create table T(a int, b int)")

    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def make_params(server):
    """Factory for parameters pointing at the fake server"""
    def factory(**overrides):
        values = dict(host="127.0.0.1", port=server.port, user="SYSTEM", password="secret",
                      connect_timeout=5.0, read_timeout=5.0)
        values.update(overrides)
        return ConnectParams(**values)
    return factory


@pytest_asyncio.fixture
async def connection(make_params):
    """Authenticated connection to the fake server"""
    connection = await connect(make_params())
    yield connection
    await connection.close()
