"""
Chatwoot message storage for the syncer.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...) — **never** string interpolation of values.

Chatwoot has no unique index on ``messages.source_id``, so the store does
not try to enforce uniqueness itself: callers check
:meth:`MessageStore.find_existing_source_ids` first and only hand new
messages to :meth:`MessageStore.insert_messages`.  Messages are written
once and never updated or deleted here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Set

import asyncpg

from shared.db import max_rows_per_statement, parse_status_count, row_width, values_clause
from wasync.models import NonCriticalOutcome, OutgoingMessage

logger = logging.getLogger("wasync.message_store")

# private = FALSE, content_type = 0 (text)
_MESSAGE_ROW = (
    "{}::text",                   # content
    "{}::text",                   # processed_message_content
    "{}::bigint",                 # account_id
    "{}::bigint",                 # inbox_id
    "{}::bigint",                 # conversation_id
    "{}::integer",                # message_type
    "FALSE",                      # private
    "0",                          # content_type
    "{}::text",                   # sender_type
    "{}::bigint",                 # sender_id
    "{}::text",                   # source_id
    "to_timestamp({}::bigint)",   # created_at
    "to_timestamp({}::bigint)",   # updated_at
)
_MESSAGE_COLUMNS = (
    "content, processed_message_content, account_id, inbox_id, conversation_id, "
    "message_type, private, content_type, sender_type, sender_id, source_id, "
    "created_at, updated_at"
)
MAX_MESSAGES_PER_STATEMENT = max_rows_per_statement(row_width(_MESSAGE_ROW))

_EXISTING_SOURCE_IDS_SQL = """
    SELECT source_id
    FROM messages
    WHERE conversation_id = $1
      AND source_id = ANY($2::text[])
"""

_ADVANCE_WATERMARK_SQL = """
    UPDATE conversations
    SET last_activity_at = GREATEST(last_activity_at, to_timestamp($2::bigint)),
        updated_at = NOW()
    WHERE id = $1
"""


@dataclass(slots=True)
class WriteResult:
    """Outcome of :meth:`MessageStore.store_messages_batched`."""

    inserted: int = 0
    batches: int = 0
    watermark: NonCriticalOutcome = field(
        default_factory=lambda: NonCriticalOutcome(step="watermark")
    )


class MessageStore:
    """Manages message persistence in the Chatwoot database.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
        account_id: Chatwoot account every inserted message belongs to.
    """

    def __init__(self, pool: asyncpg.Pool, account_id: int) -> None:
        self._pool = pool
        self._account_id = account_id
        self._batch_insert_sql_cache: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def find_existing_source_ids(
        self,
        source_ids: Sequence[str],
        conversation_id: int,
    ) -> Set[str]:
        """Return the subset of ``source_ids`` already stored in the conversation."""
        if not source_ids:
            return set()
        rows = await self._pool.fetch(
            _EXISTING_SOURCE_IDS_SQL,
            conversation_id,
            list(source_ids),
        )
        existing = {row["source_id"] for row in rows}
        logger.debug(
            "Found %d existing messages out of %d checked for conversation %d",
            len(existing),
            len(source_ids),
            conversation_id,
        )
        return existing

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def _msg_params(self, msg: OutgoingMessage, inbox_id: int) -> tuple:
        """Extract ordered parameters matching ``_MESSAGE_ROW``."""
        return (
            msg.content,
            msg.content,
            self._account_id,
            inbox_id,
            msg.conversation_id,
            msg.message_type,
            msg.sender_type,
            msg.sender_id,
            msg.source_id,
            msg.timestamp,
            msg.timestamp,
        )

    def _build_batch_insert_sql(self, row_count: int) -> str:
        sql = self._batch_insert_sql_cache.get(row_count)
        if sql is None:
            sql = (
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES "
                + values_clause(row_count, _MESSAGE_ROW)
            )
            self._batch_insert_sql_cache[row_count] = sql
        return sql

    async def insert_messages(
        self,
        messages: Sequence[OutgoingMessage],
        inbox_id: int,
    ) -> int:
        """Insert ``messages`` with a single multi-row statement.

        Returns:
            Number of rows inserted.

        Raises:
            ValueError: If the batch exceeds the bind-parameter limit of
                one statement.
            asyncpg.PostgresError: If the insert fails; nothing from the
                batch is written then.
        """
        if not messages:
            return 0
        if len(messages) > MAX_MESSAGES_PER_STATEMENT:
            raise ValueError(
                f"batch of {len(messages)} messages exceeds "
                f"{MAX_MESSAGES_PER_STATEMENT} rows per statement"
            )

        params: List[Any] = []
        for msg in messages:
            params.extend(self._msg_params(msg, inbox_id))

        status = await self._pool.execute(self._build_batch_insert_sql(len(messages)), *params)
        inserted = parse_status_count(status)
        logger.debug(
            "Batch insert: %d/%d rows for conversation %d",
            inserted,
            len(messages),
            messages[0].conversation_id,
        )
        return inserted

    async def advance_watermark(self, conversation_id: int, timestamp: int) -> bool:
        """Move ``last_activity_at`` forward to ``timestamp``; never backwards."""
        status = await self._pool.execute(_ADVANCE_WATERMARK_SQL, conversation_id, timestamp)
        return parse_status_count(status) > 0

    async def store_messages_batched(
        self,
        messages: Sequence[OutgoingMessage],
        inbox_id: int,
        batch_size: int,
    ) -> WriteResult:
        """Insert ``messages`` in order, ``batch_size`` rows per statement.

        Messages must be new (pre-filtered), belong to one conversation and
        be sorted by timestamp.  After each committed batch the
        conversation watermark is advanced to the batch's newest timestamp.
        A failing batch raises; earlier batches stay committed, so the
        stored prefix is chronologically consistent.  Watermark failures
        are reported in ``WriteResult.watermark`` only.
        """
        result = WriteResult()
        if not messages:
            return result

        size = max(1, min(int(batch_size), MAX_MESSAGES_PER_STATEMENT))
        conversation_id = messages[0].conversation_id
        for start in range(0, len(messages), size):
            batch = messages[start:start + size]
            result.inserted += await self.insert_messages(batch, inbox_id)
            result.batches += 1

            newest = max(msg.timestamp for msg in batch)
            try:
                if await self.advance_watermark(conversation_id, newest):
                    result.watermark.affected += 1
            except (asyncpg.PostgresError, OSError) as exc:
                logger.warning(
                    "Failed to advance watermark of conversation %d to %d: %s",
                    conversation_id,
                    newest,
                    exc,
                )
                result.watermark.ok = False
                result.watermark.error = str(exc)

        logger.info(
            "Inserted %d messages in %d batches for conversation %d",
            result.inserted,
            result.batches,
            conversation_id,
        )
        return result

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_sync_stats(self, inbox_id: int) -> Dict[str, Any]:
        """Return summary statistics for the imported inbox."""
        async with self._pool.acquire() as conn:
            total_messages = await conn.fetchval(
                "SELECT COUNT(*) FROM messages WHERE inbox_id = $1 AND source_id LIKE 'WAID:%'",
                inbox_id,
            )
            total_conversations = await conn.fetchval(
                "SELECT COUNT(*) FROM conversations WHERE inbox_id = $1",
                inbox_id,
            )
            last_activity = await conn.fetchval(
                "SELECT MAX(last_activity_at) FROM conversations WHERE inbox_id = $1",
                inbox_id,
            )

        return {
            "total_messages": total_messages or 0,
            "total_conversations": total_conversations or 0,
            "last_activity": last_activity.isoformat() if last_activity else None,
        }
