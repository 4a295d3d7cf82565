"""Key-value store adapters over redis-py.

Two variants:
- BasicStore: plain commands only. Lock release is refused (TTL expiry recovers).
- AtomicStore: adds a server-side compare-and-delete script.

All values come back as str (clients are created with decode_responses=True).
"""

import redis


COMPARE_AND_DELETE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class StoreUnavailable(RuntimeError):
    """No store configured, or the configured store cannot be reached."""


class UnsupportedOperation(RuntimeError):
    pass


def _encode_value(value):
    if value is None:
        return ""
    if value is True:
        return 1
    if value is False:
        return 0
    return value


def _encode_mapping(mapping: dict) -> dict:
    return {k: _encode_value(v) for k, v in mapping.items()}


class StorePipeline:
    """Non-transactional batch; results come back in call order from execute()."""

    def __init__(self, pipe):
        self._pipe = pipe

    def get(self, key):
        self._pipe.get(key)
        return self

    def set(self, key, value):
        self._pipe.set(key, _encode_value(value))
        return self

    def delete(self, key):
        self._pipe.delete(key)
        return self

    def hgetall(self, key):
        self._pipe.hgetall(key)
        return self

    def hset(self, key, mapping: dict):
        self._pipe.hset(key, mapping=_encode_mapping(mapping))
        return self

    def zadd(self, key, mapping: dict):
        self._pipe.zadd(key, mapping)
        return self

    def execute(self) -> list:
        return self._pipe.execute()


class BasicStore:
    supports_atomic_release = False

    def __init__(self, client):
        self.client = client

    def get(self, key):
        return self.client.get(key)

    def set(self, key, value):
        return self.client.set(key, _encode_value(value))

    def set_if_absent(self, key, value, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, value, nx=True, ex=int(ttl_seconds)))

    def delete(self, key) -> int:
        return int(self.client.delete(key) or 0)

    def hgetall(self, key) -> dict:
        return self.client.hgetall(key) or {}

    def hset(self, key, mapping: dict):
        return self.client.hset(key, mapping=_encode_mapping(mapping))

    def zadd(self, key, mapping: dict):
        return self.client.zadd(key, mapping)

    def zrevrange(self, key, start: int, end: int, withscores: bool = False):
        return self.client.zrevrange(key, start, end, withscores=withscores)

    def zrevrank(self, key, member):
        return self.client.zrevrank(key, member)

    def zcard(self, key) -> int:
        return int(self.client.zcard(key) or 0)

    def scan(self, cursor, match: str, count: int):
        next_cursor, keys = self.client.scan(cursor=int(cursor), match=match, count=count)
        return int(next_cursor), list(keys or [])

    def pipeline(self) -> StorePipeline:
        return StorePipeline(self.client.pipeline(transaction=False))

    def compare_and_delete(self, key, token) -> bool:
        raise UnsupportedOperation("store does not support atomic compare-and-delete")


class AtomicStore(BasicStore):
    supports_atomic_release = True

    def __init__(self, client):
        super().__init__(client)
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE_LUA)

    def compare_and_delete(self, key, token) -> bool:
        return int(self._compare_and_delete(keys=[key], args=[token]) or 0) == 1


def store_from_url(url: str, atomic: bool = True) -> BasicStore:
    client = redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)
    if atomic:
        return AtomicStore(client)
    return BasicStore(client)
