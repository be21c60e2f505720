from __future__ import annotations

import time
from datetime import datetime, timezone


def getNowIso() -> str:
    """Текущее время UTC в ISO 8601 с точностью до секунд (started_at, finished_at, created_at)."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def getDurationMs(startMonotonic: float, endMonotonic: float | None = None) -> int:
    end = time.monotonic() if endMonotonic is None else endMonotonic
    return max(0, round((end - startMonotonic) * 1000))
