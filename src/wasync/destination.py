"""
Destination lookups — which Chatwoot inbox to import into and which user
outgoing messages are attributed to.

Both are resolved once per pass; failure to resolve either is fatal.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import asyncpg

from wasync.errors import DestinationUserNotFoundError, InboxNotFoundError
from wasync.models import DestinationUser, Inbox

logger = logging.getLogger("wasync.destination")

_LIST_INBOXES_SQL = """
    SELECT id, name, channel_type
    FROM inboxes
    WHERE account_id = $1
    ORDER BY id
"""

_INBOX_BY_ID_SQL = """
    SELECT id, account_id, name, channel_type
    FROM inboxes
    WHERE id = $1
    LIMIT 1
"""

_INBOX_BY_NAME_SQL = """
    SELECT id, name, channel_type
    FROM inboxes
    WHERE account_id = $1 AND name = $2
    ORDER BY id
    LIMIT 1
"""

_USER_BY_TOKEN_SQL = """
    SELECT owner_type, owner_id
    FROM access_tokens
    WHERE token = $1
    LIMIT 1
"""


def _inbox(row: asyncpg.Record) -> Inbox:
    return Inbox(
        id=int(row["id"]),
        name=row["name"] or "",
        channel_type=row["channel_type"] or "",
    )


async def list_inboxes(conn: asyncpg.Connection, account_id: int) -> List[Inbox]:
    rows = await conn.fetch(_LIST_INBOXES_SQL, account_id)
    return [_inbox(row) for row in rows]


async def resolve_inbox(
    conn: asyncpg.Connection,
    account_id: int,
    inbox_id: Optional[int] = None,
    inbox_name: Optional[str] = None,
) -> Inbox:
    """Find the inbox to import into.

    Preference order:
      1) ``inbox_id`` if it belongs to ``account_id``
      2) ``inbox_name`` within ``account_id``
      3) the account's first inbox (logged as a warning)

    Raises:
        InboxNotFoundError: If the account has no inboxes.  When the
            configured id exists under a different account the message
            says so.
    """
    inboxes = await list_inboxes(conn, account_id)
    if inboxes:
        logger.info("Available inboxes for account %d:", account_id)
        for inbox in inboxes:
            logger.info("  - id=%d name=%s type=%s", inbox.id, inbox.name, inbox.channel_type)

    foreign_account: Optional[int] = None
    if inbox_id:
        row = await conn.fetchrow(_INBOX_BY_ID_SQL, inbox_id)
        if row is not None:
            if int(row["account_id"]) == account_id:
                logger.info("Using inbox %d (%s)", row["id"], row["name"])
                return _inbox(row)
            foreign_account = int(row["account_id"])
            logger.warning(
                "Inbox %d exists but belongs to account %d (expected %d)",
                inbox_id,
                foreign_account,
                account_id,
            )
        else:
            logger.warning("Inbox %d not found; trying by name", inbox_id)

    if inbox_name:
        row = await conn.fetchrow(_INBOX_BY_NAME_SQL, account_id, inbox_name)
        if row is not None:
            logger.info("Using inbox %d found by name '%s'", row["id"], inbox_name)
            return _inbox(row)
        logger.warning(
            "Inbox name '%s' not found for account %d; trying first available",
            inbox_name,
            account_id,
        )

    if inboxes:
        logger.warning(
            "Using first available inbox %d (%s) of account %d",
            inboxes[0].id,
            inboxes[0].name,
            account_id,
        )
        return inboxes[0]

    if foreign_account is not None:
        raise InboxNotFoundError(
            f"inbox {inbox_id} belongs to account {foreign_account} "
            f"(configured account: {account_id}); fix destination.account_id "
            "or destination.inbox_id"
        )
    raise InboxNotFoundError(
        f"no inbox found for account_id={account_id} "
        f"(inbox_id={inbox_id}, inbox_name={inbox_name!r}); "
        "create an inbox in Chatwoot first"
    )


async def resolve_destination_user(
    conn: asyncpg.Connection,
    api_token: str,
) -> DestinationUser:
    """Map the destination access token to its owner.

    Raises:
        DestinationUserNotFoundError: If the token is unknown.
    """
    row = await conn.fetchrow(_USER_BY_TOKEN_SQL, api_token)
    if row is None:
        raise DestinationUserNotFoundError(
            "destination-api-token does not match any Chatwoot access token"
        )
    user = DestinationUser(user_type=row["owner_type"], user_id=int(row["owner_id"]))
    logger.info("Destination user: %s id=%d", user.user_type, user.user_id)
    return user
