"""
Unit tests for the contact/conversation reconciler: bulk path, per-record
repair path and the non-critical name backfill.
"""

from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from wasync.errors import ReconciliationError
from wasync.models import ExternalChatIdentity
from wasync.reconciler import (
    _CHAIN_LOCK_SQL,
    _CONTACT_BY_IDENTIFIER_SQL,
    _CONTACT_BY_PHONE_SQL,
    _CONTACT_INBOX_SQL,
    _CONVERSATION_SQL,
    _INSERT_CONVERSATION_SQL,
    _UPSERT_CONTACT_INBOX_SQL,
    _UPSERT_CONTACT_SQL,
    ContactReconciler,
    has_real_name,
    merge_identities,
)

ALICE = "+5511987654321"
BOB = "+5511912345678"


def _identity(phone, name="", first=1_700_000_000, last=1_700_000_000):
    return ExternalChatIdentity(
        phone_number=phone,
        display_name=name,
        first_activity_at=first,
        last_activity_at=last,
    )


def _fake_conn(bulk_rows=None, fetchval_map=None, bulk_error=None, execute_error=None):
    """Connection double; ``fetchval_map`` maps SQL to queued return values."""
    conn = AsyncMock()
    conn.transaction = MagicMock()
    if bulk_error is not None:
        conn.fetch.side_effect = bulk_error
    else:
        conn.fetch.return_value = bulk_rows or []

    queues = {sql: list(values) for sql, values in (fetchval_map or {}).items()}

    async def fetchval(sql, *args):
        values = queues.get(sql)
        if not values:
            return None
        value = values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    conn.fetchval.side_effect = fetchval
    async def execute(sql, *args):
        if sql == _CHAIN_LOCK_SQL:
            return "SELECT 1"
        if execute_error is not None:
            raise execute_error
        return "UPDATE 1"

    conn.execute.side_effect = execute
    return conn


def _updates(conn):
    return [c for c in conn.execute.call_args_list if c.args[0] != _CHAIN_LOCK_SQL]


def _pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return pool


def _row(phone, contact_id, conversation_id):
    return {"phone_number": phone, "contact_id": contact_id, "conversation_id": conversation_id}


class TestMergeIdentities:
    def test_widens_activity_window(self):
        merged = merge_identities([
            _identity(ALICE, first=200, last=300),
            _identity(ALICE, first=100, last=250),
        ])
        assert len(merged) == 1
        assert merged[0].first_activity_at == 100
        assert merged[0].last_activity_at == 300

    def test_real_name_beats_placeholder(self):
        merged = merge_identities([
            _identity(ALICE, name="5511987654321"),
            _identity(ALICE, name="Alice"),
        ])
        assert merged[0].display_name == "Alice"

    def test_keeps_first_seen_order(self):
        merged = merge_identities([_identity(BOB), _identity(ALICE), _identity(BOB)])
        assert [i.phone_number for i in merged] == [BOB, ALICE]


class TestHasRealName:
    def test_names(self):
        assert has_real_name(_identity(ALICE, name="Alice")) is True
        assert has_real_name(_identity(ALICE, name="+55 (11) 98765-4321")) is False
        assert has_real_name(_identity(ALICE, name="  ")) is False


class TestBulkPath:
    @pytest.mark.asyncio
    async def test_bulk_resolves_all(self):
        conn = _fake_conn(bulk_rows=[_row(ALICE, 1, 10), _row(BOB, 2, 20)])
        reconciler = ContactReconciler(_pool(conn))

        result = await reconciler.reconcile(1, 7, [_identity(ALICE, "Alice"), _identity(BOB)])

        assert result.conversations[ALICE].conversation_id == 10
        assert result.conversations[BOB].contact_id == 2
        assert result.repaired == []
        assert result.unresolved == []
        conn.fetchval.assert_not_called()

        sql, *params = conn.fetch.call_args.args
        assert "$3::text" in sql and "$10::bigint" in sql and "$11" not in sql
        assert params[:2] == [1, 7]
        assert params[2:6] == [ALICE, "Alice", 1_700_000_000, 1_700_000_000]

    @pytest.mark.asyncio
    async def test_duplicate_conversations_pick_oldest(self):
        conn = _fake_conn(bulk_rows=[_row(ALICE, 1, 30), _row(ALICE, 1, 10)])
        result = await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])
        assert result.conversations[ALICE].conversation_id == 10

    @pytest.mark.asyncio
    async def test_bulk_failure_raises(self):
        conn = _fake_conn(bulk_error=asyncpg.PostgresError("deadlock"))
        with pytest.raises(ReconciliationError):
            await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])

    @pytest.mark.asyncio
    async def test_empty_input(self):
        conn = _fake_conn()
        result = await ContactReconciler(_pool(conn)).reconcile(1, 7, [])
        assert result.conversations == {}
        conn.fetch.assert_not_called()


class TestRepairPath:
    @pytest.mark.asyncio
    async def test_creates_missing_chain(self):
        conn = _fake_conn(fetchval_map={
            _UPSERT_CONTACT_SQL: [5],
            _UPSERT_CONTACT_INBOX_SQL: [6],
            _INSERT_CONVERSATION_SQL: [11],
        })
        result = await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])

        ref = result.conversations[ALICE]
        assert (ref.contact_id, ref.conversation_id) == (5, 11)
        assert result.repaired == [ALICE]
        queried = [c.args[0] for c in conn.fetchval.call_args_list]
        assert queried[:2] == [_CONTACT_BY_PHONE_SQL, _CONTACT_BY_IDENTIFIER_SQL]

    @pytest.mark.asyncio
    async def test_reuses_existing_links(self):
        conn = _fake_conn(fetchval_map={
            _CONTACT_BY_PHONE_SQL: [5],
            _CONTACT_INBOX_SQL: [6],
            _CONVERSATION_SQL: [12],
        })
        result = await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])

        assert result.conversations[ALICE].conversation_id == 12
        queried = {c.args[0] for c in conn.fetchval.call_args_list}
        assert _UPSERT_CONTACT_SQL not in queried
        assert _INSERT_CONVERSATION_SQL not in queried

    @pytest.mark.asyncio
    async def test_lost_race_reselects_conversation(self):
        conn = _fake_conn(fetchval_map={
            _CONTACT_BY_PHONE_SQL: [5],
            _CONTACT_INBOX_SQL: [6],
            _CONVERSATION_SQL: [None, 13],
            _INSERT_CONVERSATION_SQL: [None],
        })
        result = await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])
        assert result.conversations[ALICE].conversation_id == 13

    @pytest.mark.asyncio
    async def test_failed_repair_is_unresolved_not_raised(self):
        conn = _fake_conn(
            bulk_rows=[_row(BOB, 2, 20)],
            fetchval_map={_CONTACT_BY_PHONE_SQL: [asyncpg.PostgresError("boom")]},
        )
        result = await ContactReconciler(_pool(conn)).reconcile(
            1, 7, [_identity(ALICE), _identity(BOB)]
        )
        assert result.unresolved == [ALICE]
        assert BOB in result.conversations
        assert ALICE not in result.conversations


class TestNameBackfill:
    @pytest.mark.asyncio
    async def test_only_real_names_are_sent(self):
        conn = _fake_conn(bulk_rows=[_row(ALICE, 1, 10), _row(BOB, 2, 20)])
        result = await ContactReconciler(_pool(conn)).reconcile(
            1, 7, [_identity(ALICE, "Alice"), _identity(BOB, "5511912345678")]
        )

        assert result.name_backfill.ok is True
        assert result.name_backfill.affected == 1
        sql, *params = conn.execute.call_args.args
        assert "UPDATE contacts" in sql
        assert params == [1, ALICE, "Alice"]

    @pytest.mark.asyncio
    async def test_failure_is_non_critical(self):
        conn = _fake_conn(
            bulk_rows=[_row(ALICE, 1, 10)],
            execute_error=asyncpg.PostgresError("lock timeout"),
        )
        result = await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE, "Alice")])

        assert result.name_backfill.ok is False
        assert result.name_backfill.error
        assert result.conversations[ALICE].conversation_id == 10

    @pytest.mark.asyncio
    async def test_no_named_identities_skips_update(self):
        conn = _fake_conn(bulk_rows=[_row(ALICE, 1, 10)])
        await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])
        assert _updates(conn) == []


class TestChainLock:
    @pytest.mark.asyncio
    async def test_bulk_takes_inbox_lock_before_statement(self):
        conn = _fake_conn(bulk_rows=[_row(ALICE, 1, 10)])
        await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE)])

        names = [c[0] for c in conn.mock_calls]
        lock_at = names.index("execute")
        assert conn.mock_calls[lock_at].args == (_CHAIN_LOCK_SQL, 1, 7)
        assert lock_at < names.index("fetch")
        assert names.index("transaction") < lock_at

    @pytest.mark.asyncio
    async def test_each_repair_takes_inbox_lock(self):
        conn = _fake_conn(fetchval_map={
            _UPSERT_CONTACT_SQL: [5, 8],
            _UPSERT_CONTACT_INBOX_SQL: [6, 9],
            _INSERT_CONVERSATION_SQL: [11, 12],
        })
        await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE), _identity(BOB)])

        locks = [c for c in conn.execute.call_args_list if c.args[0] == _CHAIN_LOCK_SQL]
        # bulk transaction + one per repaired phone
        assert len(locks) == 3
        assert all(c.args[1:] == (1, 7) for c in locks)
        assert conn.transaction.call_count == 3


class TestPlaceholderNames:
    @pytest.mark.asyncio
    async def test_backfill_treats_raw_phone_names_as_placeholders(self):
        """A contact first named "11987654321" must be upgradable later."""
        conn = _fake_conn(bulk_rows=[_row(ALICE, 1, 10)])
        await ContactReconciler(_pool(conn)).reconcile(1, 7, [_identity(ALICE, "Maria")])

        (update,) = _updates(conn)
        assert "c.name ~ '^[0-9[:space:]+().-]+$'" in update.args[0]
