"""
Sync progress tracking with ETA for journalctl output.

Provides ``BatchProgress`` (one chat batch) and ``PassProgress`` (overall
pass) trackers that log human-readable progress lines with chat rates and
estimated time remaining.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("wasync.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class BatchProgress:
    """Tracks progress for one batch of chats.

    Args:
        batch_index: 1-based index of this batch.
        total_batches: Number of batches in the pass.
        chats: Number of chats in the batch before filtering.
    """

    def __init__(self, batch_index: int, total_batches: int, chats: int) -> None:
        self.batch_index = batch_index
        self.total_batches = total_batches
        self.chats = chats
        self.skipped = 0
        self.reconciled = 0
        self.conversations_synced = 0
        self.conversations_failed = 0
        self.messages_inserted = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    def conversation_done(self, inserted: int) -> None:
        self.conversations_synced += 1
        self.messages_inserted += inserted

    def conversation_failed(self) -> None:
        self.conversations_failed += 1

    def log_complete(self) -> None:
        """Log a completion line for this batch."""
        logger.info(
            "  Batch %d/%d: %d chats, %d skipped, %d reconciled, "
            "%d conversations synced (%d failed), %d new messages in %s",
            self.batch_index,
            self.total_batches,
            self.chats,
            self.skipped,
            self.reconciled,
            self.conversations_synced,
            self.conversations_failed,
            self.messages_inserted,
            _format_duration(self.elapsed_seconds),
        )


class PassProgress:
    """Tracks overall progress across all chat batches in a sync pass.

    Args:
        total_chats: Number of chats returned by the source.
    """

    def __init__(self, total_chats: int) -> None:
        self.total_chats = total_chats
        self.chats_done = 0
        self.messages_inserted = 0
        self.batches_completed = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Chats processed per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.chats_done / elapsed

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining for the entire pass."""
        if self.total_chats <= 0 or self.rate <= 0:
            return None
        remaining = max(0, self.total_chats - self.chats_done)
        return remaining / self.rate

    def update_from_batch(self, batch: BatchProgress) -> None:
        """Accumulate stats from a finished batch."""
        self.chats_done += batch.chats
        self.messages_inserted += batch.messages_inserted
        self.batches_completed += 1

    def log_pass_progress(self) -> None:
        """Log overall pass progress."""
        if self.total_chats > 0:
            pct = min(100, int(self.chats_done / self.total_chats * 100))
            eta = self.eta_seconds
            eta_str = f"ETA: ~{_format_duration(eta)}" if eta is not None else ""
            logger.info(
                "  Pass: %d/%d chats (%d%%) | %d new messages | %s",
                self.chats_done,
                self.total_chats,
                pct,
                self.messages_inserted,
                eta_str,
            )
        else:
            logger.info("  Pass: no chats to process")
