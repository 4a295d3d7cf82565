"""Short-lived per-key mutex on top of the KV store (SET NX EX + compare-and-delete)."""

import time
import uuid

import redis

from kv_store import StoreUnavailable


def _create_lock_token() -> str:
    return str(uuid.uuid4())


def acquire_lock(store, key: str, ttl_seconds: int = 20, retries: int = 3, retry_delay_ms: int = 120) -> str:
    """Try to take `key`. Returns the owner token, or "" if the lock stayed busy.

    Raises StoreUnavailable when the store is missing or unreachable, so callers
    can tell "busy" apart from "lock subsystem down".
    """
    if store is None or not hasattr(store, "set_if_absent"):
        raise StoreUnavailable("KV lock unavailable")

    safe_ttl = max(1, int(ttl_seconds or 20))
    max_attempts = max(1, int(retries or 0) + 1)
    delay_ms = max(0, int(retry_delay_ms or 0))

    for attempt in range(max_attempts):
        token = _create_lock_token()
        try:
            acquired = store.set_if_absent(key, token, safe_ttl)
        except redis.RedisError as e:
            raise StoreUnavailable(f"KV lock unavailable: {e}") from e
        if acquired:
            return token
        if attempt < max_attempts - 1 and delay_ms > 0:
            time.sleep(delay_ms / 1000.0)
    return ""


def release_lock(store, key: str, token: str) -> bool:
    """Delete `key` only if it still holds `token`.

    Stores without an atomic compare-and-delete are never released here; the
    TTL clears the key instead.
    """
    if store is None or not key or not token:
        return False
    if not getattr(store, "supports_atomic_release", False):
        return False
    return store.compare_and_delete(key, token)
