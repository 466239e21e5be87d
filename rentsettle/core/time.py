"""
rentsettle/core/time.py

Wall-clock timestamps for off-chain records.

Format: YYYY-MM-DDTHH:MM:SS.mmmZ
        (milliseconds, explicit Z, no +00:00, no microseconds)

Wall-clock time is informational only. Every timeout decision uses the
ledger clock passed in through LedgerContext, never this module.
"""

from datetime import datetime, timezone


def utc_timestamp() -> str:
    """Return current UTC time as YYYY-MM-DDTHH:MM:SS.mmmZ."""
    now = datetime.now(timezone.utc)
    ms  = now.microsecond // 1000
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms:03d}Z"
