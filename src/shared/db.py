"""
Database helpers — connection pool management, multi-row statement
builders, and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  The schema belongs to
Chatwoot; this project never creates or migrates tables.  It only reads
``inboxes`` / ``access_tokens`` and writes ``contacts``,
``contact_inboxes``, ``conversations`` and ``messages``.

All queries use parameterized placeholders ($1, $2, ...) — **never**
string interpolation of values.  Multi-row ``VALUES`` lists are built by
:func:`values_clause`, which numbers placeholders programmatically.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

logger = logging.getLogger("shared.db")

# PostgreSQL's wire protocol caps bind parameters per statement.
MAX_QUERY_PARAMETERS = 32767


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any], password: str) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``,
                and optionally ``ssl``, ``min_size``, ``max_size``.
        password: Database password (fetched from the keychain, never
                  stored in the config file).

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
        OSError: If the server is unreachable.
    """
    ssl = config.get("ssl", "disable")
    pool = await asyncpg.create_pool(
        host=config.get("host", "localhost"),
        port=int(config.get("port", 5432)),
        database=config.get("database", "chatwoot"),
        user=config.get("user", "chatwoot"),
        password=password,
        ssl=None if ssl in (None, "", "disable") else ssl,
        min_size=int(config.get("min_size", 1)),
        max_size=int(config.get("max_size", 4)),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user", "chatwoot"),
        config.get("host", "localhost"),
        config.get("database", "chatwoot"),
    )
    return pool


# ---------------------------------------------------------------------------
# Statement builders
# ---------------------------------------------------------------------------


def values_clause(
    row_count: int,
    row_template: Sequence[str],
    start: int = 1,
) -> str:
    """Build ``(...), (...)`` for a multi-row ``VALUES`` list.

    Each entry of ``row_template`` is a column expression.  Every ``{}`` in
    an expression consumes the next ``$n`` placeholder; expressions without
    ``{}`` are emitted verbatim (literals such as ``FALSE``).

    >>> values_clause(2, ["{}::text", "to_timestamp({})", "0"])
    '($1::text, to_timestamp($2), 0), ($3::text, to_timestamp($4), 0)'

    Args:
        row_count: Number of rows.
        row_template: Column expressions for one row.
        start: Number of the first placeholder (use ``3`` when ``$1`` and
               ``$2`` are taken by scalar parameters).
    """
    index = start
    rows: List[str] = []
    for _ in range(row_count):
        columns: List[str] = []
        for expr in row_template:
            slots = expr.count("{}")
            columns.append(expr.format(*(f"${index + i}" for i in range(slots))))
            index += slots
        rows.append("(" + ", ".join(columns) + ")")
    return ", ".join(rows)


def row_width(row_template: Sequence[str]) -> int:
    """Number of bind parameters one row of ``row_template`` consumes."""
    return sum(expr.count("{}") for expr in row_template)


def max_rows_per_statement(width: int, reserved: int = 0) -> int:
    """Largest row count that stays under :data:`MAX_QUERY_PARAMETERS`."""
    return max(1, (MAX_QUERY_PARAMETERS - reserved) // max(1, width))


def parse_status_count(status: Optional[str]) -> int:
    """Extract the row count from an asyncpg command status.

    ``"INSERT 0 12"`` → 12, ``"UPDATE 3"`` → 3.  Unexpected strings yield 0.
    """
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        logger.debug("Unexpected command status string: %s", status)
        return 0


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False
