"""
Contact / conversation reconciliation.

Maps a batch of :class:`ExternalChatIdentity` onto Chatwoot
``contacts`` → ``contact_inboxes`` → ``conversations`` chains, creating
only the links that are missing.  Chatwoot guarantees unique indexes on
``contacts (identifier, account_id)`` and
``contact_inboxes (contact_id, inbox_id)``; conversations have no such
index, so "at most one conversation per contact inbox" is enforced with
``NOT EXISTS`` guards.  Those guards only see committed rows, so every
transaction that may create a conversation first takes a transaction-scoped
advisory lock on ``(account_id, inbox_id)``; concurrent passes into the same
inbox create chains one after the other.

Two paths:

1. **Bulk** — one data-modifying CTE per chunk, all chunks in one
   transaction.  It returns newly created chains plus chains that already
   existed for the same phone number.
2. **Repair** — any phone the bulk statement did not return (contact
   stored under a different phone spelling, chain created concurrently by
   another process, missing binding ...) is resolved record by record,
   each step conflict-protected.

A separate best-effort UPDATE backfills placeholder contact names.  Its
failure is reported in :class:`NonCriticalOutcome`, never raised.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

import asyncpg

from shared.db import max_rows_per_statement, parse_status_count, row_width, values_clause
from wasync.errors import ReconciliationError
from wasync.identity import build_identifier
from wasync.models import (
    ConversationRef,
    ExternalChatIdentity,
    NonCriticalOutcome,
    ReconciliationResult,
)

logger = logging.getLogger("wasync.reconciler")

_IDENTITY_ROW = ("{}::text", "{}::text", "{}::bigint", "{}::bigint")
_NAME_ROW = ("{}::text", "{}::text")
_PHONE_LIKE = re.compile(r"[\d\s+\-().]+")

# $1 = account_id, $2 = inbox_id, $3.. = staged rows
_BULK_SQL_TEMPLATE = """
    WITH
        staged AS (
            SELECT
                t.phone_number,
                t.contact_name,
                REPLACE(t.phone_number, '+', '') || '@s.whatsapp.net' AS identifier,
                t.first_activity_at,
                t.last_activity_at
            FROM (VALUES {values})
                AS t (phone_number, contact_name, first_activity_at, last_activity_at)
        ),
        only_new AS (
            SELECT s.*
            FROM staged s
            WHERE NOT EXISTS (
                SELECT 1
                FROM contacts c
                    JOIN contact_inboxes ci
                        ON ci.contact_id = c.id AND ci.inbox_id = $2
                    JOIN conversations con
                        ON con.contact_inbox_id = ci.id
                        AND con.account_id = $1
                        AND con.inbox_id = $2
                        AND con.contact_id = c.id
                WHERE c.account_id = $1
                    AND c.phone_number = s.phone_number
            )
        ),
        new_contact AS (
            INSERT INTO contacts (name, phone_number, account_id, identifier, created_at, updated_at)
            SELECT
                COALESCE(NULLIF(TRIM(n.contact_name), ''), REPLACE(n.phone_number, '+', '')),
                n.phone_number,
                $1,
                n.identifier,
                to_timestamp(n.first_activity_at),
                to_timestamp(n.last_activity_at)
            FROM only_new n
            ON CONFLICT (identifier, account_id)
            DO UPDATE SET
                name = CASE
                    WHEN NULLIF(TRIM(contacts.name), '') IS NULL THEN EXCLUDED.name
                    ELSE contacts.name
                END,
                updated_at = GREATEST(contacts.updated_at, EXCLUDED.updated_at)
            RETURNING id, identifier, created_at, updated_at
        ),
        new_contact_inbox AS (
            INSERT INTO contact_inboxes (contact_id, inbox_id, source_id, created_at, updated_at)
            SELECT nc.id, $2, gen_random_uuid(), nc.created_at, nc.updated_at
            FROM new_contact nc
            ON CONFLICT (contact_id, inbox_id) DO UPDATE SET updated_at = NOW()
            RETURNING id, contact_id, created_at, updated_at
        ),
        new_conversation AS (
            INSERT INTO conversations (
                account_id, inbox_id, status, contact_id, contact_inbox_id,
                uuid, last_activity_at, created_at, updated_at
            )
            SELECT $1, $2, 0, nci.contact_id, nci.id,
                gen_random_uuid(), nci.updated_at, nci.created_at, nci.updated_at
            FROM new_contact_inbox nci
            WHERE NOT EXISTS (
                SELECT 1 FROM conversations con
                WHERE con.contact_inbox_id = nci.id
                    AND con.account_id = $1
                    AND con.inbox_id = $2
            )
            RETURNING id, contact_id
        )
    SELECT s.phone_number, conv.contact_id, conv.id AS conversation_id
    FROM new_conversation conv
        JOIN new_contact nc ON nc.id = conv.contact_id
        JOIN staged s ON s.identifier = nc.identifier
    UNION
    SELECT s.phone_number, c.id AS contact_id, con.id AS conversation_id
    FROM staged s
        JOIN contacts c ON c.phone_number = s.phone_number AND c.account_id = $1
        JOIN contact_inboxes ci ON ci.contact_id = c.id AND ci.inbox_id = $2
        JOIN conversations con
            ON con.contact_inbox_id = ci.id
            AND con.account_id = $1
            AND con.inbox_id = $2
            AND con.contact_id = c.id
"""

# $1 = account_id, $2.. = (phone_number, contact_name)
_NAME_BACKFILL_SQL_TEMPLATE = """
    UPDATE contacts c
    SET name = p.contact_name
    FROM (VALUES {values}) AS p (phone_number, contact_name)
    WHERE c.phone_number = p.phone_number
        AND c.account_id = $1
        AND (
            c.name IS NULL
            OR TRIM(c.name) = ''
            OR c.name = c.phone_number
            OR c.name = REPLACE(c.phone_number, '+', '')
            OR c.name ~ '^[0-9[:space:]+().-]+$'
        )
"""

# Held until commit; statements after it see chains committed by other passes.
_CHAIN_LOCK_SQL = "SELECT pg_advisory_xact_lock($1::integer, $2::integer)"

# ---------------------------------------------------------------------------
# Repair path statements (one record at a time)
# ---------------------------------------------------------------------------

_CONTACT_BY_PHONE_SQL = """
    SELECT id FROM contacts
    WHERE account_id = $1 AND phone_number = $2
    ORDER BY id
    LIMIT 1
"""

_CONTACT_BY_IDENTIFIER_SQL = """
    SELECT id FROM contacts
    WHERE account_id = $1 AND identifier = $2
    LIMIT 1
"""

_UPSERT_CONTACT_SQL = """
    INSERT INTO contacts (name, phone_number, account_id, identifier, created_at, updated_at)
    VALUES (
        COALESCE(NULLIF(TRIM($3::text), ''), REPLACE($2::text, '+', '')),
        $2::text, $1, $4::text, to_timestamp($5::bigint), to_timestamp($6::bigint)
    )
    ON CONFLICT (identifier, account_id)
    DO UPDATE SET
        name = CASE
            WHEN NULLIF(TRIM(contacts.name), '') IS NULL THEN EXCLUDED.name
            ELSE contacts.name
        END,
        updated_at = GREATEST(contacts.updated_at, EXCLUDED.updated_at)
    RETURNING id
"""

_CONTACT_INBOX_SQL = """
    SELECT id FROM contact_inboxes
    WHERE contact_id = $1 AND inbox_id = $2
    LIMIT 1
"""

_UPSERT_CONTACT_INBOX_SQL = """
    INSERT INTO contact_inboxes (contact_id, inbox_id, source_id, created_at, updated_at)
    VALUES ($1, $2, gen_random_uuid(), NOW(), NOW())
    ON CONFLICT (contact_id, inbox_id) DO UPDATE SET updated_at = NOW()
    RETURNING id
"""

_CONVERSATION_SQL = """
    SELECT id FROM conversations
    WHERE contact_inbox_id = $1 AND account_id = $2 AND inbox_id = $3
    ORDER BY id
    LIMIT 1
"""

_INSERT_CONVERSATION_SQL = """
    INSERT INTO conversations (
        account_id, inbox_id, status, contact_id, contact_inbox_id,
        uuid, last_activity_at, created_at, updated_at
    )
    SELECT $2, $3, 0, $4, $1, gen_random_uuid(),
        to_timestamp($5::bigint), to_timestamp($5::bigint), NOW()
    WHERE NOT EXISTS (
        SELECT 1 FROM conversations
        WHERE contact_inbox_id = $1 AND account_id = $2 AND inbox_id = $3
    )
    RETURNING id
"""


def merge_identities(identities: Iterable[ExternalChatIdentity]) -> List[ExternalChatIdentity]:
    """Collapse identities sharing a phone number, keeping first-seen order.

    The activity window widens to cover every duplicate and a real name
    beats a phone-number placeholder.  A single INSERT ... ON CONFLICT DO
    UPDATE cannot touch the same row twice, so duplicates must not reach
    the bulk statement.
    """
    merged: Dict[str, ExternalChatIdentity] = {}
    for identity in identities:
        current = merged.get(identity.phone_number)
        if current is None:
            merged[identity.phone_number] = ExternalChatIdentity(
                phone_number=identity.phone_number,
                display_name=identity.display_name,
                first_activity_at=identity.first_activity_at,
                last_activity_at=identity.last_activity_at,
            )
            continue
        current.first_activity_at = min(current.first_activity_at, identity.first_activity_at)
        current.last_activity_at = max(current.last_activity_at, identity.last_activity_at)
        if not has_real_name(current) and has_real_name(identity):
            current.display_name = identity.display_name
    return list(merged.values())


def has_real_name(identity: ExternalChatIdentity) -> bool:
    """``True`` if the display name is more than a phone-number placeholder."""
    name = (identity.display_name or "").strip()
    return bool(name) and _PHONE_LIKE.fullmatch(name) is None


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ContactReconciler:
    """Creates or finds the Chatwoot chain for each external chat.

    Args:
        pool: ``asyncpg`` pool connected to the Chatwoot database.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._bulk_sql_cache: Dict[int, str] = {}
        self._name_sql_cache: Dict[int, str] = {}
        self._max_rows = max_rows_per_statement(row_width(_IDENTITY_ROW), reserved=2)

    async def reconcile(
        self,
        account_id: int,
        inbox_id: int,
        identities: Sequence[ExternalChatIdentity],
    ) -> ReconciliationResult:
        """Resolve every identity to a ``ConversationRef``.

        Raises:
            ReconciliationError: If the bulk statement or its transaction
                fails.  Nothing from the bulk path is committed then.
        """
        result = ReconciliationResult()
        batch = merge_identities(identities)
        if not batch:
            return result

        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(_CHAIN_LOCK_SQL, account_id, inbox_id)
                    for chunk in _chunks(batch, self._max_rows):
                        rows = await conn.fetch(
                            self._bulk_sql(len(chunk)),
                            account_id,
                            inbox_id,
                            *self._identity_params(chunk),
                        )
                        self._collect(result.conversations, rows)
            except (asyncpg.PostgresError, OSError) as exc:
                raise ReconciliationError(
                    f"bulk reconciliation failed for {len(batch)} chats "
                    f"(account={account_id}, inbox={inbox_id}): {exc}"
                ) from exc

            logger.info(
                "Bulk reconciliation resolved %d/%d chats",
                len(result.conversations),
                len(batch),
            )

            for identity in batch:
                if identity.phone_number in result.conversations:
                    continue
                ref = await self._repair_one(conn, account_id, inbox_id, identity)
                if ref is None:
                    result.unresolved.append(identity.phone_number)
                    continue
                result.conversations[identity.phone_number] = ref
                result.repaired.append(identity.phone_number)

            if result.repaired or result.unresolved:
                logger.info(
                    "Repair path: %d repaired, %d unresolved",
                    len(result.repaired),
                    len(result.unresolved),
                )

            result.name_backfill = await self._backfill_names(conn, account_id, batch)

        return result

    # ------------------------------------------------------------------
    # Bulk path
    # ------------------------------------------------------------------

    def _bulk_sql(self, row_count: int) -> str:
        sql = self._bulk_sql_cache.get(row_count)
        if sql is None:
            sql = _BULK_SQL_TEMPLATE.format(
                values=values_clause(row_count, _IDENTITY_ROW, start=3)
            )
            self._bulk_sql_cache[row_count] = sql
        return sql

    @staticmethod
    def _identity_params(identities: Sequence[ExternalChatIdentity]) -> List[Any]:
        params: List[Any] = []
        for identity in identities:
            params.extend(
                (
                    identity.phone_number,
                    identity.display_name,
                    identity.first_activity_at,
                    identity.last_activity_at,
                )
            )
        return params

    @staticmethod
    def _collect(into: Dict[str, ConversationRef], rows: Iterable[Any]) -> None:
        for row in rows:
            ref = ConversationRef(
                phone_number=row["phone_number"],
                contact_id=int(row["contact_id"]),
                conversation_id=int(row["conversation_id"]),
            )
            current = into.get(ref.phone_number)
            # Pre-existing duplicate conversations: stick to the oldest.
            if current is None or ref.conversation_id < current.conversation_id:
                into[ref.phone_number] = ref

    # ------------------------------------------------------------------
    # Repair path
    # ------------------------------------------------------------------

    async def _repair_one(
        self,
        conn: asyncpg.Connection,
        account_id: int,
        inbox_id: int,
        identity: ExternalChatIdentity,
    ) -> Optional[ConversationRef]:
        phone = identity.phone_number
        try:
            async with conn.transaction():
                await conn.execute(_CHAIN_LOCK_SQL, account_id, inbox_id)
                contact_id = await self._find_or_create_contact(conn, account_id, identity)
                contact_inbox_id = await conn.fetchval(_CONTACT_INBOX_SQL, contact_id, inbox_id)
                if contact_inbox_id is None:
                    contact_inbox_id = await conn.fetchval(
                        _UPSERT_CONTACT_INBOX_SQL, contact_id, inbox_id
                    )
                    logger.debug("Created contact inbox %s for %s", contact_inbox_id, phone)

                conversation_id = await conn.fetchval(
                    _CONVERSATION_SQL, contact_inbox_id, account_id, inbox_id
                )
                if conversation_id is None:
                    conversation_id = await conn.fetchval(
                        _INSERT_CONVERSATION_SQL,
                        contact_inbox_id,
                        account_id,
                        inbox_id,
                        contact_id,
                        identity.last_activity_at,
                    )
                    if conversation_id is None:
                        # Lost the race to a concurrent writer.
                        conversation_id = await conn.fetchval(
                            _CONVERSATION_SQL, contact_inbox_id, account_id, inbox_id
                        )
                    else:
                        logger.debug("Created conversation %s for %s", conversation_id, phone)
        except (asyncpg.PostgresError, OSError):
            logger.warning("Repair failed for phone %s", phone, exc_info=True)
            return None

        if contact_id is None or conversation_id is None:
            logger.warning(
                "Repair left phone %s incomplete: contact_id=%s conversation_id=%s",
                phone,
                contact_id,
                conversation_id,
            )
            return None
        return ConversationRef(
            phone_number=phone,
            contact_id=int(contact_id),
            conversation_id=int(conversation_id),
        )

    async def _find_or_create_contact(
        self,
        conn: asyncpg.Connection,
        account_id: int,
        identity: ExternalChatIdentity,
    ) -> Optional[int]:
        identifier = build_identifier(identity.phone_number)
        contact_id = await conn.fetchval(_CONTACT_BY_PHONE_SQL, account_id, identity.phone_number)
        if contact_id is None:
            contact_id = await conn.fetchval(_CONTACT_BY_IDENTIFIER_SQL, account_id, identifier)
        if contact_id is None:
            contact_id = await conn.fetchval(
                _UPSERT_CONTACT_SQL,
                account_id,
                identity.phone_number,
                identity.display_name,
                identifier,
                identity.first_activity_at,
                identity.last_activity_at,
            )
            logger.debug("Created contact %s for %s", contact_id, identity.phone_number)
        return contact_id

    # ------------------------------------------------------------------
    # Name backfill (non-critical)
    # ------------------------------------------------------------------

    async def _backfill_names(
        self,
        conn: asyncpg.Connection,
        account_id: int,
        identities: Sequence[ExternalChatIdentity],
    ) -> NonCriticalOutcome:
        outcome = NonCriticalOutcome(step="name_backfill")
        named = [identity for identity in identities if has_real_name(identity)]
        if not named:
            return outcome

        updated = 0
        try:
            for chunk in _chunks(named, max_rows_per_statement(row_width(_NAME_ROW), reserved=1)):
                sql = self._name_sql_cache.get(len(chunk))
                if sql is None:
                    sql = _NAME_BACKFILL_SQL_TEMPLATE.format(
                        values=values_clause(len(chunk), _NAME_ROW, start=2)
                    )
                    self._name_sql_cache[len(chunk)] = sql
                params: List[Any] = []
                for identity in chunk:
                    params.extend((identity.phone_number, identity.display_name.strip()))
                status = await conn.execute(sql, account_id, *params)
                updated += parse_status_count(status)
        except (asyncpg.PostgresError, OSError) as exc:
            logger.warning("Failed to backfill contact names: %s", exc)
            outcome.ok = False
            outcome.error = str(exc)
        outcome.affected = updated
        if updated:
            logger.info("Backfilled %d contact names", updated)
        return outcome
