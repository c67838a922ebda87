"""
Timestamp-unit normalization.

UAZAPI emits epoch timestamps in seconds or milliseconds depending on the
endpoint and gateway version.  Chatwoot stores ``timestamptz``.  Every
value crossing the boundary goes through :func:`normalize_timestamp` so
both sides agree on the unit.

The function never raises and never rejects a value: a message with an
odd timestamp is still worth importing.  Doubtful results are flagged via
``TimestampReading.confident`` for logging.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

logger = logging.getLogger("wasync.timestamps")

MILLISECONDS_THRESHOLD = 10_000_000_000
SECONDS_THRESHOLD = 1_000_000_000
# ~2001-09-09 .. ~2033-05-18
VALID_BAND = (1_000_000_000, 2_000_000_000)


class TimestampReading(NamedTuple):
    seconds: int
    confident: bool
    reason: str


def read_timestamp(raw: int) -> TimestampReading:
    """Classify ``raw`` and convert it to epoch seconds."""
    raw = int(raw)
    if raw > MILLISECONDS_THRESHOLD:
        seconds, reason = raw // 1000, "milliseconds"
    elif raw > SECONDS_THRESHOLD:
        seconds, reason = raw, "seconds"
    else:
        seconds, reason = raw, "below_seconds_range"

    # Double-encoded milliseconds
    if seconds > MILLISECONDS_THRESHOLD:
        seconds //= 1000
        reason = "double_milliseconds"

    low, high = VALID_BAND
    if seconds < low:
        return TimestampReading(seconds, False, reason)
    if seconds > high:
        # At this point seconds <= 10^10; one more /1000 would land far
        # below the band, so keep the value and flag it.
        return TimestampReading(seconds, False, "above_valid_band")
    return TimestampReading(seconds, reason in ("milliseconds", "seconds"), reason)


def normalize_timestamp(raw: int) -> int:
    """Return ``raw`` as epoch seconds (best effort)."""
    reading = read_timestamp(raw)
    if not reading.confident:
        logger.debug(
            "Low-confidence timestamp: raw=%d normalized=%d (%s)",
            raw,
            reading.seconds,
            reading.reason,
        )
    return reading.seconds
