"""
Tests for the Command Line Interface
====================================

Run with: pytest tests/
"""

import os
import tempfile
from decimal import Decimal

import pytest
from typer.testing import CliRunner

import hdb_wire.__main__ as cli
from hdb_wire import TransportError, __version__

from conftest import SELECT_T

runner = CliRunner()


class TestCommands:
    """Tests for the typer application"""

    def test_version(self):
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert f"hdb-wire {__version__}" in result.output

    def test_generate_config(self):
        result = runner.invoke(cli.app, ["generate-config"])

        assert result.exit_code == 0
        assert "server:" in result.output
        assert "busy_policy" in result.output

    def test_no_command_shows_help(self):
        result = runner.invoke(cli.app, [])

        assert result.exit_code == 0
        assert "query" in result.output

    def test_query_prints_lines(self, monkeypatch):
        calls = []

        async def fake_run_query(params, sql):
            calls.append((params, sql))
            return ["A\tB", "1\t2"]

        monkeypatch.setattr(cli, "run_query", fake_run_query)
        result = runner.invoke(cli.app, ["query", "-H", "db.example.com", "-p", "30041",
                                         "-P", "pw", "select a, b from t"])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["A\tB", "1\t2"]
        params, sql = calls[0]
        assert params.address == "db.example.com:30041"
        assert params.password == "pw"
        assert sql == "select a, b from t"

    def test_query_failure_exits_nonzero(self, monkeypatch):
        async def failing_run_query(params, sql):
            raise TransportError("Connection refused")

        monkeypatch.setattr(cli, "run_query", failing_run_query)
        result = runner.invoke(cli.app, ["query", "-P", "pw", "select 1 from dummy"])

        assert result.exit_code == 1

    def test_invalid_config(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("server:\n  port: 30015\n")
            temp_path = f.name

        try:
            result = runner.invoke(cli.app, ["query", "-c", temp_path, "select 1 from dummy"])
            assert result.exit_code == 1
        finally:
            os.unlink(temp_path)


class TestFormatting:
    """Tests for value rendering"""

    @pytest.mark.parametrize("value,text", [
        (None, "NULL"),
        (b'\x01\xff', "01ff"),
        (Decimal("1.50"), "1.50"),
        (42, "42"),
        ("text", "text"),
    ])
    def test_format_value(self, value, text):
        assert cli.format_value(value) == text


@pytest.mark.asyncio
class TestRunQuery:
    """Tests for run_query() against the fake server"""

    async def test_result_set(self, server, make_params, table):
        table.extend([(1, 1), (2, None)])

        lines = await cli.run_query(make_params(), SELECT_T)

        assert lines == ["A\tB", "1\t1", "2\tNULL"]

    async def test_statement_without_result(self, make_params):
        assert await cli.run_query(make_params(), "create table T(a int, b int)") == ["OK"]

    async def test_rows_affected(self, server, make_params):
        server.register_dml("delete from T", [], lambda row: 7)

        assert await cli.run_query(make_params(), "delete from T") == ["7 rows affected"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
