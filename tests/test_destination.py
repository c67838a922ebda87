"""
Unit tests for inbox and destination-user resolution.
"""

from unittest.mock import AsyncMock

import pytest

from wasync.destination import (
    _INBOX_BY_ID_SQL,
    _INBOX_BY_NAME_SQL,
    resolve_destination_user,
    resolve_inbox,
)
from wasync.errors import DestinationUserNotFoundError, FatalSyncError, InboxNotFoundError


def _conn(inboxes, by_id=None, by_name=None):
    conn = AsyncMock()
    conn.fetch.return_value = inboxes

    async def fetchrow(sql, *args):
        if sql == _INBOX_BY_ID_SQL:
            return by_id
        if sql == _INBOX_BY_NAME_SQL:
            return by_name
        return None

    conn.fetchrow.side_effect = fetchrow
    return conn


WHATSAPP = {"id": 7, "account_id": 1, "name": "WhatsApp", "channel_type": "Channel::Api"}
EMAIL = {"id": 3, "account_id": 1, "name": "Email", "channel_type": "Channel::Email"}


class TestResolveInbox:
    @pytest.mark.asyncio
    async def test_by_id(self):
        conn = _conn([EMAIL, WHATSAPP], by_id=WHATSAPP)
        inbox = await resolve_inbox(conn, 1, 7, "ignored")
        assert inbox.id == 7
        assert inbox.name == "WhatsApp"

    @pytest.mark.asyncio
    async def test_falls_back_to_name(self):
        conn = _conn([EMAIL, WHATSAPP], by_id=None, by_name=WHATSAPP)
        inbox = await resolve_inbox(conn, 1, 99, "WhatsApp")
        assert inbox.id == 7

    @pytest.mark.asyncio
    async def test_falls_back_to_first_inbox(self):
        conn = _conn([EMAIL, WHATSAPP])
        inbox = await resolve_inbox(conn, 1, 99, "Missing")
        assert inbox.id == 3

    @pytest.mark.asyncio
    async def test_foreign_account_inbox_is_not_used(self):
        foreign = dict(WHATSAPP, account_id=2)
        conn = _conn([EMAIL], by_id=foreign)
        inbox = await resolve_inbox(conn, 1, 7, None)
        assert inbox.id == 3

    @pytest.mark.asyncio
    async def test_no_inbox_is_fatal(self):
        conn = _conn([])
        with pytest.raises(InboxNotFoundError):
            await resolve_inbox(conn, 1, 7, "WhatsApp")

    @pytest.mark.asyncio
    async def test_foreign_account_mentioned_in_error(self):
        conn = _conn([], by_id=dict(WHATSAPP, account_id=2))
        with pytest.raises(FatalSyncError, match="account 2"):
            await resolve_inbox(conn, 1, 7, None)


class TestResolveDestinationUser:
    @pytest.mark.asyncio
    async def test_found(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = {"owner_type": "User", "owner_id": 5}
        user = await resolve_destination_user(conn, "tok")
        assert user.user_type == "User"
        assert user.user_id == 5

    @pytest.mark.asyncio
    async def test_unknown_token_is_fatal(self):
        conn = AsyncMock()
        conn.fetchrow.return_value = None
        with pytest.raises(DestinationUserNotFoundError):
            await resolve_destination_user(conn, "nope")
