"""
Unit tests for database helpers: placeholder generation and status parsing.
"""

from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from shared.db import (
    MAX_QUERY_PARAMETERS,
    health_check,
    max_rows_per_statement,
    parse_status_count,
    row_width,
    values_clause,
)


class TestValuesClause:
    def test_two_rows(self):
        sql = values_clause(2, ["{}::text", "to_timestamp({})", "0"])
        assert sql == "($1::text, to_timestamp($2), 0), ($3::text, to_timestamp($4), 0)"

    def test_start_offset(self):
        sql = values_clause(1, ["{}", "{}"], start=3)
        assert sql == "($3, $4)"

    def test_zero_rows(self):
        assert values_clause(0, ["{}"]) == ""


class TestLimits:
    def test_row_width_ignores_literals(self):
        assert row_width(["{}::text", "FALSE", "to_timestamp({}::bigint)"]) == 2

    def test_max_rows_per_statement(self):
        assert max_rows_per_statement(11) == MAX_QUERY_PARAMETERS // 11
        assert max_rows_per_statement(4, reserved=2) == (MAX_QUERY_PARAMETERS - 2) // 4

    def test_max_rows_at_least_one(self):
        assert max_rows_per_statement(MAX_QUERY_PARAMETERS * 2) == 1


class TestParseStatusCount:
    def test_insert(self):
        assert parse_status_count("INSERT 0 12") == 12

    def test_update(self):
        assert parse_status_count("UPDATE 3") == 3

    def test_garbage(self):
        assert parse_status_count(None) == 0
        assert parse_status_count("") == 0


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_ok(self):
        conn = AsyncMock()
        conn.fetchval.return_value = 1
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        assert await health_check(pool) is True

    @pytest.mark.asyncio
    async def test_failure(self):
        conn = AsyncMock()
        conn.fetchval.side_effect = asyncpg.PostgresError("down")
        pool = MagicMock()
        pool.acquire.return_value.__aenter__.return_value = conn
        assert await health_check(pool) is False
