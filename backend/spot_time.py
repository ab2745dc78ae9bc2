from __future__ import annotations

import time

# Epoch milliseconds throughout; stored documents use the same unit.
SPOT_TTL_MS = 2 * 60 * 60 * 1000
CACHE_TTL_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def calculate_expiry(created_at_ms: int | None = None, *, ttl_ms: int = SPOT_TTL_MS) -> int:
    base = now_ms() if created_at_ms is None else int(created_at_ms)
    return base + int(ttl_ms)


def is_expired(expires_at_ms: int, *, now: int | None = None) -> bool:
    current = now_ms() if now is None else int(now)
    return int(expires_at_ms) <= current
