"""
Structured audit logging — appends sync events to a JSON Lines file.

Every significant action (pass start/end, chat batch, conversation sync)
is recorded with a timestamp, service name, action, details dict, and
success flag.  The Chatwoot database is not ours to extend, so events go
to a local file only; one JSON object per line for easy ingestion by log
aggregation tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/wa-chatwoot-sync/audit.log")


@dataclass(slots=True)
class _AuditRecord:
    """Single audit event prepared for async batch flushing."""

    json_line: str
    action: str


class AuditLogger:
    """Buffered audit logger writing JSON Lines.

    Args:
        log_path: Path to the JSON Lines audit log file.
        queue_size: Max queued events before producers backpressure.
        flush_batch_size: Number of queued events to flush per write batch.
    """

    def __init__(
        self,
        log_path: Path = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._log_path = log_path
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False
        self._lifecycle_lock = asyncio.Lock()

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            loop = asyncio.get_running_loop()
            self._worker_task = loop.create_task(
                self._worker(),
                name="wa-chatwoot-sync-audit-writer",
            )

    async def _write_batch(self, batch: list[_AuditRecord]) -> None:
        if not batch:
            return

        # One append for the full batch
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(item.json_line for item in batch))
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

    async def _worker(self) -> None:
        """Drain queue and flush records in small batches."""
        stop = False
        while True:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                break

            batch = [record]

            while len(batch) < self._flush_batch_size:
                try:
                    maybe_next = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break

                if maybe_next is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(maybe_next)

            await self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()

            if stop:
                break

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            service: Originating service (``"syncer"``).
            action: Action identifier (e.g. ``"sync_pass"``,
                    ``"sync_batch"``, ``"sync_conversation"``).
            details: Arbitrary JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": service,
            "action": action,
            "details": details or {},
            "success": success,
        }
        record = _AuditRecord(
            json_line=json.dumps(event, default=str) + "\n",
            action=action,
        )
        async with self._lifecycle_lock:
            if self._closed:
                logger.debug(
                    "Dropping audit event after logger close: service=%s action=%s",
                    service,
                    action,
                )
                return
            self._ensure_worker()
            await self._queue.put(record)

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        worker: asyncio.Task[None] | None = None
        async with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker_task
            if worker is not None:
                await self._queue.put(None)

        if worker is not None:
            await worker
