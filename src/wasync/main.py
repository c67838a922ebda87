"""
Syncer entry point — reads WhatsApp chats from UAZAPI and imports them
into a Chatwoot database, once, idempotently.

Runs as a one-shot job (systemd timer, cron or by hand).

Key behaviours:
    - Loads configuration from ``/etc/wa-chatwoot-sync/settings.toml``.
    - Secrets come from the keychain (see :mod:`shared.secrets`).
    - Chats are processed in fixed-size batches; SIGTERM / SIGINT stop
      the pass at the next batch (or conversation) boundary.
    - Every write path is idempotent, so an interrupted or failed pass
      is resumed simply by running it again.
    - Logs every batch and conversation to the audit log.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import asyncpg
import toml

from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check
from shared.secrets import get_secret
from wasync.destination import resolve_destination_user, resolve_inbox
from wasync.errors import FatalSyncError, ReconciliationError, SourceAPIError
from wasync.identity import (
    chat_jid,
    contact_display_name,
    message_content,
    normalize_phone_number,
    source_id_for,
)
from wasync.message_store import MessageStore
from wasync.models import (
    MESSAGE_TYPE_INCOMING,
    MESSAGE_TYPE_OUTGOING,
    SENDER_TYPE_CONTACT,
    ConversationRef,
    DestinationUser,
    ExternalChatIdentity,
    Inbox,
    OutgoingMessage,
    SourceChat,
)
from wasync.progress import BatchProgress, PassProgress
from wasync.reconciler import ContactReconciler
from wasync.source_client import UazapiClient
from wasync.timestamps import normalize_timestamp

logger = logging.getLogger("wasync.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("WASYNC_CONFIG", "/etc/wa-chatwoot-sync/settings.toml")
)
_DEFAULT_AUDIT_PATH = Path("/var/log/wa-chatwoot-sync/audit.log")

# Strong references to in-flight stop tasks started from signal handlers.
_signal_tasks: Set[asyncio.Task] = set()

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("source", "base_url"),
        ("database",),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def _int_setting(value: Any, default: int, minimum: int = 1) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid integer setting %r; using %d", value, default)
        parsed = default
    return max(minimum, parsed)


def _float_setting(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid numeric setting %r; using %s", value, default)
        parsed = default
    return max(0.0, parsed)


@dataclass(slots=True)
class SyncSettings:
    account_id: int = 1
    inbox_id: int = 1
    inbox_name: str = "WhatsApp"
    batch_size: int = 1000
    message_batch_size: int = 1000
    rate_limit_seconds: float = 0.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        destination = config.get("destination", {})
        syncer = config.get("syncer", {})
        return cls(
            account_id=_int_setting(destination.get("account_id", 1), 1),
            inbox_id=_int_setting(destination.get("inbox_id", 1), 1, minimum=0),
            inbox_name=str(destination.get("inbox_name", "WhatsApp") or ""),
            batch_size=_int_setting(syncer.get("batch_size", 1000), 1000),
            message_batch_size=_int_setting(syncer.get("message_batch_size", 1000), 1000),
            rate_limit_seconds=_float_setting(syncer.get("rate_limit_seconds", 0), 0.0),
        )


# ---------------------------------------------------------------------------
# Cooperative cancellation
# ---------------------------------------------------------------------------


class StopToken:
    """Stop request shared between the signal handler and the sync loop.

    Backed by a ``threading.Event`` so it can be set from any thread or a
    plain signal handler.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def request_stop(self) -> None:
        self._event.set()

    @property
    def stop_requested(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to ``seconds`` while remaining responsive to stop."""
        remaining = max(0.0, seconds)
        while remaining > 0 and not self._event.is_set():
            tick = min(0.5, remaining)
            await asyncio.sleep(tick)
            remaining -= tick
        return self._event.is_set()


# ---------------------------------------------------------------------------
# Sync logic
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SyncReport:
    chats_seen: int = 0
    chats_skipped: int = 0
    chats_reconciled: int = 0
    chats_unresolved: int = 0
    conversations_synced: int = 0
    conversations_failed: int = 0
    batches_failed: int = 0
    messages_inserted: int = 0
    non_critical_failures: int = 0
    stopped: bool = False
    inbox_id: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


_Candidate = Tuple[SourceChat, str, ExternalChatIdentity]


class SyncService:
    """Runs one import pass.

    Args:
        source: UAZAPI client (``list_chats``, ``has_messages``,
                ``list_messages``).
        pool: ``asyncpg`` pool for destination lookups.
        reconciler: Contact/conversation reconciler.
        store: Message store.
        audit: Audit logger.
        settings: Parsed sync settings.
        destination_api_token: Chatwoot token identifying the sender of
                outgoing messages.
        stop_token: Cancellation token; a fresh one is created if omitted.
    """

    def __init__(
        self,
        *,
        source: UazapiClient,
        pool: asyncpg.Pool,
        reconciler: ContactReconciler,
        store: MessageStore,
        audit: AuditLogger,
        settings: SyncSettings,
        destination_api_token: str,
        stop_token: Optional[StopToken] = None,
    ) -> None:
        self._source = source
        self._pool = pool
        self._reconciler = reconciler
        self._store = store
        self._audit = audit
        self._settings = settings
        self._destination_api_token = destination_api_token
        self.stop_token = stop_token or StopToken()
        self._idle = asyncio.Event()
        self._idle.set()

    # ----- lifecycle ------------------------------------------------------

    async def stop(self) -> None:
        """Request a stop and wait until the running pass has unwound."""
        self.stop_token.request_stop()
        await self._idle.wait()

    async def start(self) -> SyncReport:
        """Run the full pass.

        Raises:
            FatalSyncError: If the inbox or destination user cannot be
                resolved, or the chat list cannot be fetched.
        """
        self._idle.clear()
        try:
            return await self._run_pass()
        finally:
            self._idle.set()

    # ----- pass -----------------------------------------------------------

    async def _run_pass(self) -> SyncReport:
        report = SyncReport()
        if self.stop_token.stop_requested:
            logger.info("Stop already requested; skipping sync pass.")
            report.stopped = True
            return report

        async with self._pool.acquire() as conn:
            inbox = await resolve_inbox(
                conn,
                self._settings.account_id,
                self._settings.inbox_id,
                self._settings.inbox_name,
            )
            user = await resolve_destination_user(conn, self._destination_api_token)
        report.inbox_id = inbox.id

        try:
            chats = await self._source.list_chats(is_group=False)
        except SourceAPIError as exc:
            raise FatalSyncError(f"failed to fetch chats: {exc}") from exc

        batch_size = self._settings.batch_size
        total_batches = (len(chats) + batch_size - 1) // batch_size
        await self._audit.log(
            "syncer",
            "sync_pass_start",
            {
                "inbox_id": inbox.id,
                "inbox_name": inbox.name,
                "total_chats": len(chats),
                "batch_size": batch_size,
                "total_batches": total_batches,
            },
            success=True,
        )

        pass_progress = PassProgress(total_chats=len(chats))
        for batch_idx, start in enumerate(range(0, len(chats), batch_size)):
            if self.stop_token.stop_requested:
                logger.info(
                    "Stop requested; ending pass after %d/%d batches.",
                    batch_idx,
                    total_batches,
                )
                report.stopped = True
                break

            batch = chats[start:start + batch_size]
            logger.info(
                "Processing batch %d/%d (chats %d-%d of %d)",
                batch_idx + 1,
                total_batches,
                start + 1,
                start + len(batch),
                len(chats),
            )
            progress = BatchProgress(batch_idx + 1, total_batches, len(batch))
            try:
                await self._process_batch(batch, inbox, user, report, progress)
                batch_ok = True
            except ReconciliationError:
                logger.exception("Reconciliation failed for batch %d; skipping it", batch_idx + 1)
                report.batches_failed += 1
                batch_ok = False

            progress.log_complete()
            pass_progress.update_from_batch(progress)
            pass_progress.log_pass_progress()
            await self._audit.log(
                "syncer",
                "sync_batch",
                {
                    "batch_index": batch_idx + 1,
                    "total_batches": total_batches,
                    "chats": progress.chats,
                    "skipped": progress.skipped,
                    "reconciled": progress.reconciled,
                    "conversations_synced": progress.conversations_synced,
                    "conversations_failed": progress.conversations_failed,
                    "new_messages": progress.messages_inserted,
                },
                success=batch_ok,
            )
            if report.stopped:
                break

        logger.info("Sync pass finished: %s", report.as_dict())
        await self._audit.log(
            "syncer",
            "sync_pass",
            report.as_dict(),
            success=report.batches_failed == 0 and report.conversations_failed == 0,
        )
        return report

    # ----- batch ----------------------------------------------------------

    async def _select_candidates(
        self,
        chats: Sequence[SourceChat],
        report: SyncReport,
        progress: BatchProgress,
    ) -> Dict[str, _Candidate]:
        """Drop chats that must not get a conversation, before any write."""
        candidates: Dict[str, _Candidate] = {}
        for chat in chats:
            report.chats_seen += 1
            reason = None
            phone = normalize_phone_number(chat.phone)
            jid = chat_jid(chat)
            if chat.is_group:
                reason = "group chat"
            elif phone is None:
                reason = "no usable phone number"
            elif jid is None:
                reason = "no chat id"
            elif phone in candidates:
                reason = "duplicate phone number in batch"
            else:
                try:
                    if not await self._source.has_messages(jid):
                        reason = "no messages"
                except Exception:
                    logger.warning(
                        "Message presence check failed for chat %s (phone %s)", jid, phone, exc_info=True
                    )
                    reason = "message presence check failed"

            if reason is not None:
                logger.debug("Skipping chat %s (phone %r): %s", chat.id, chat.phone, reason)
                report.chats_skipped += 1
                progress.skipped += 1
                continue

            last_activity = normalize_timestamp(chat.last_message_at)
            candidates[phone] = (
                chat,
                jid,
                ExternalChatIdentity(
                    phone_number=phone,
                    display_name=contact_display_name(chat),
                    first_activity_at=last_activity,
                    last_activity_at=last_activity,
                ),
            )
        return candidates

    async def _process_batch(
        self,
        chats: Sequence[SourceChat],
        inbox: Inbox,
        user: DestinationUser,
        report: SyncReport,
        progress: BatchProgress,
    ) -> None:
        candidates = await self._select_candidates(chats, report, progress)
        if not candidates:
            logger.info("No chats with messages in this batch")
            return

        result = await self._reconciler.reconcile(
            self._settings.account_id,
            inbox.id,
            [identity for _, _, identity in candidates.values()],
        )
        report.chats_reconciled += len(result.conversations)
        report.chats_unresolved += len(result.unresolved)
        progress.reconciled += len(result.conversations)
        if not result.name_backfill.ok:
            report.non_critical_failures += 1
        for phone in result.unresolved:
            logger.warning("No conversation could be resolved for phone %s; skipping", phone)

        for phone, (chat, jid, _) in candidates.items():
            if self.stop_token.stop_requested:
                logger.info("Stop requested; leaving batch before chat %s", jid)
                report.stopped = True
                return

            ref = result.conversations.get(phone)
            if ref is None:
                continue

            try:
                inserted = await self._sync_conversation(jid, ref, inbox, user, report)
            except Exception:
                logger.warning(
                    "Failed to sync chat %s (phone %s, conversation %d); skipping",
                    jid,
                    phone,
                    ref.conversation_id,
                    exc_info=True,
                )
                report.conversations_failed += 1
                progress.conversation_failed()
                await self._audit.log(
                    "syncer",
                    "sync_conversation",
                    {"chat_id": jid, "phone": phone, "conversation_id": ref.conversation_id},
                    success=False,
                )
                continue

            report.conversations_synced += 1
            report.messages_inserted += inserted
            progress.conversation_done(inserted)

            if self._settings.rate_limit_seconds > 0:
                await self.stop_token.sleep(self._settings.rate_limit_seconds)

    # ----- conversation ---------------------------------------------------

    async def _sync_conversation(
        self,
        jid: str,
        ref: ConversationRef,
        inbox: Inbox,
        user: DestinationUser,
        report: SyncReport,
    ) -> int:
        messages = await self._source.list_messages(jid)
        if not messages:
            return 0

        by_source_id = {}
        for msg in messages:
            if not msg.external_message_id:
                continue
            by_source_id.setdefault(source_id_for(msg.external_message_id), msg)

        existing = await self._store.find_existing_source_ids(
            list(by_source_id), ref.conversation_id
        )

        new_messages: List[OutgoingMessage] = []
        for source_id, msg in by_source_id.items():
            if source_id in existing:
                continue
            content = message_content(msg)
            if not content.strip():
                continue
            if msg.from_me:
                message_type, sender_type, sender_id = (
                    MESSAGE_TYPE_OUTGOING, user.user_type, user.user_id,
                )
            else:
                message_type, sender_type, sender_id = (
                    MESSAGE_TYPE_INCOMING, SENDER_TYPE_CONTACT, ref.contact_id,
                )
            new_messages.append(
                OutgoingMessage(
                    content=content,
                    conversation_id=ref.conversation_id,
                    message_type=message_type,
                    sender_type=sender_type,
                    sender_id=sender_id,
                    source_id=source_id,
                    timestamp=normalize_timestamp(msg.timestamp),
                )
            )

        logger.info(
            "Chat %s: %d fetched, %d already stored, %d new",
            jid,
            len(messages),
            len(existing),
            len(new_messages),
        )
        if not new_messages:
            return 0

        new_messages.sort(key=lambda m: m.timestamp)
        written = await self._store.store_messages_batched(
            new_messages, inbox.id, self._settings.message_batch_size
        )
        if not written.watermark.ok:
            report.non_critical_failures += 1

        await self._audit.log(
            "syncer",
            "sync_conversation",
            {
                "chat_id": jid,
                "phone": ref.phone_number,
                "conversation_id": ref.conversation_id,
                "fetched": len(messages),
                "new_messages": written.inserted,
            },
            success=True,
        )
        return written.inserted


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config_path: Path = _DEFAULT_CONFIG_PATH) -> int:
    """Top-level async entry point; returns the process exit code."""
    try:
        config = load_config(config_path)
        settings = SyncSettings.from_config(config)
        source_token = get_secret("source-api-token")
        db_password = get_secret("database-password")
        destination_token = get_secret("destination-api-token")
    except (OSError, KeyError, RuntimeError, toml.TomlDecodeError) as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    source_config = config.get("source", {})
    audit_path = config.get("audit", {}).get("log_path")
    audit = AuditLogger(Path(audit_path) if audit_path else _DEFAULT_AUDIT_PATH)
    pool = None
    source = UazapiClient(
        base_url=source_config["base_url"],
        token=source_token,
        chat_page_size=_int_setting(source_config.get("chat_page_size", 1000), 1000),
        message_page_size=_int_setting(source_config.get("message_page_size", 1000), 1000),
        timeout_seconds=_float_setting(source_config.get("timeout_seconds", 60), 60.0),
    )
    try:
        pool = await get_connection_pool(config["database"], db_password)
        if not await health_check(pool):
            raise FatalSyncError("Chatwoot database is not responding")
        store = MessageStore(pool, settings.account_id)
        service = SyncService(
            source=source,
            pool=pool,
            reconciler=ContactReconciler(pool),
            store=store,
            audit=audit,
            settings=settings,
            destination_api_token=destination_token,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle_signal, sig, service)

        await audit.log("syncer", "startup", {"account_id": settings.account_id}, success=True)
        report = await service.start()
        if report.inbox_id is not None:
            try:
                stats = await store.get_sync_stats(report.inbox_id)
                logger.info("Destination totals: %s", stats)
            except (asyncpg.PostgresError, OSError):
                logger.warning("Could not read destination totals", exc_info=True)
        logger.info(
            "Sync %s: %d new messages",
            "stopped" if report.stopped else "complete",
            report.messages_inserted,
        )
        return 0
    except FatalSyncError as exc:
        logger.error("Sync aborted: %s", exc)
        await audit.log("syncer", "sync_pass", {"error": str(exc)}, success=False)
        return 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database unavailable")
        return 1
    finally:
        await source.aclose()
        try:
            await audit.close()
        except Exception:
            logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Syncer shut down.")


def _handle_signal(sig: int, service: SyncService) -> None:
    """Signal handler — asks the running pass to stop at the next boundary."""
    logger.info("Received signal %s, stopping at the next batch boundary...", sig)
    task = asyncio.get_running_loop().create_task(service.stop())
    _signal_tasks.add(task)
    task.add_done_callback(_signal_tasks.discard)


def run() -> None:
    """Synchronous entry point (console script, ``python -m`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
