"""Flask extensions shared by the blueprints.

Each object is bound per application with init_app(); the store and the snapshot
cache live in app.extensions, so every app (and every test) gets its own.
"""

import threading

from flask import current_app, request
from flask_limiter import Limiter

from kv_store import StoreUnavailable, store_from_url


def get_client_ip() -> str:
    """Best-effort client IP (ProxyFix rewrites access_route in production)."""
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


class KvStore:
    def init_app(self, app, store=None):
        if store is None:
            url = app.config.get("KV_REDIS_URL")
            if url:
                store = store_from_url(url, atomic=app.config.get("KV_ATOMIC_SCRIPTS", True))
        app.extensions["kv"] = store

    def get_store(self):
        store = current_app.extensions.get("kv")
        if store is None:
            raise StoreUnavailable("KV store not configured")
        return store


class SnapshotCache:
    """Last-known-good read results for this process. Lost on restart."""

    def __init__(self):
        self._items = {}
        self._lock = threading.Lock()

    def put(self, key: str, value, now_ms: int):
        with self._lock:
            self._items[key] = (value, now_ms)

    def get(self, key: str):
        """(value, cached_at_ms) or None."""
        with self._lock:
            return self._items.get(key)

    def clear(self):
        with self._lock:
            self._items.clear()


class Snapshots:
    def init_app(self, app):
        app.extensions["reward_snapshots"] = SnapshotCache()

    @property
    def cache(self) -> SnapshotCache:
        return current_app.extensions["reward_snapshots"]


kv = KvStore()
snapshots = Snapshots()
limiter = Limiter(get_client_ip)
