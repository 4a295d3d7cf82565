"""
Shared fixtures: an in-memory stand-in for the redis client surface used by
kv_store (strings with TTL, hashes, sorted sets, SCAN, pipelines and the
compare-and-delete script), a pinned clock and signing helpers.
"""

import fnmatch
import threading
import time

import pytest
import redis
from eth_account import Account
from eth_account.messages import encode_defunct

import claims
import health
import points_api
from app import create_app
from kv_store import AtomicStore, BasicStore

NOW_MS = 1_760_000_000_000
DAY_MS = 86_400_000


# ============================================================================
# Fake redis client
# ============================================================================

class FakeRedis:
    def __init__(self):
        self.strings = {}
        self.expires = {}
        self.hashes = {}
        self.zsets = {}
        self.down = False
        # SET NX and the release script run atomically on a real server
        self._mutex = threading.RLock()

    def _check(self):
        if self.down:
            raise redis.ConnectionError("connection refused")

    def _purge(self, key):
        exp = self.expires.get(key)
        if exp is not None and time.monotonic() >= exp:
            self.strings.pop(key, None)
            self.expires.pop(key, None)

    @staticmethod
    def _encode(value):
        if value is None or isinstance(value, bool):
            raise redis.DataError(f"Invalid input of type: {type(value).__name__}")
        return str(value)

    def get(self, key):
        self._check()
        self._purge(key)
        return self.strings.get(key)

    def set(self, key, value, nx=False, ex=None):
        self._check()
        with self._mutex:
            self._purge(key)
            if nx and key in self.strings:
                return None
            self.strings[key] = self._encode(value)
            if ex is not None:
                self.expires[key] = time.monotonic() + int(ex)
            else:
                self.expires.pop(key, None)
            return True

    def delete(self, *keys):
        self._check()
        removed = 0
        with self._mutex:
            for key in keys:
                self._purge(key)
                for space in (self.strings, self.hashes, self.zsets):
                    if key in space:
                        del space[key]
                        removed += 1
                self.expires.pop(key, None)
        return removed

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def hset(self, key, mapping=None):
        self._check()
        h = self.hashes.setdefault(key, {})
        added = 0
        for field, value in (mapping or {}).items():
            if field not in h:
                added += 1
            h[field] = self._encode(value)
        return added

    def zadd(self, key, mapping):
        self._check()
        z = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = float(score)
        return added

    def _zsorted(self, key):
        z = self.zsets.get(key, {})
        return sorted(z.items(), key=lambda item: (item[1], item[0]), reverse=True)

    def zrevrange(self, key, start, end, withscores=False):
        self._check()
        items = self._zsorted(key)
        end = len(items) - 1 if end == -1 else end
        sliced = items[start:end + 1]
        if withscores:
            return [(m, s) for m, s in sliced]
        return [m for m, _ in sliced]

    def zrevrank(self, key, member):
        self._check()
        for idx, (m, _) in enumerate(self._zsorted(key)):
            if m == member:
                return idx
        return None

    def zcard(self, key):
        self._check()
        return len(self.zsets.get(key, {}))

    def scan(self, cursor=0, match=None, count=10):
        self._check()
        keys = sorted(set(self.strings) | set(self.hashes) | set(self.zsets))
        if match:
            keys = [k for k in keys if fnmatch.fnmatchcase(k, match)]
        page = keys[cursor:cursor + count]
        next_cursor = cursor + count
        if next_cursor >= len(keys):
            next_cursor = 0
        return next_cursor, page

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def register_script(self, script):
        def compare_and_delete(keys, args):
            self._check()
            key, token = keys[0], args[0]
            with self._mutex:
                self._purge(key)
                if self.strings.get(key) == str(token):
                    return self.delete(key)
                return 0
        return compare_and_delete


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        method = getattr(self.client, name)

        def queue(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            return self
        return queue

    def execute(self):
        self.client._check()
        results = [method(*args, **kwargs) for method, args, kwargs in self.calls]
        self.calls = []
        return results


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return AtomicStore(fake_redis)


@pytest.fixture
def basic_store(fake_redis):
    return BasicStore(fake_redis)


@pytest.fixture
def season_env(monkeypatch):
    """A configured season whose claim window opened a day before NOW_MS."""
    for name in ("VITE_POINTS_SEASON_ID", "POINTS_SEASON_END", "VITE_POINTS_SEASON_END",
                 "VITE_WHITELIST_CLAIM_OPENS_AT", "POINTS_INGEST_TOKEN", "CRON_SECRET",
                 "WHITELIST_CLAIM_SIGNATURE_TTL_MS", "WHITELIST_CLAIM_MAX_FUTURE_SKEW_MS",
                 "CLAIM_SIGNATURE_MAX_FUTURE_SKEW_MS", "POINTS_REWARDS_EXCLUDED_ADDRESSES",
                 "POINTS_SEASON_REWARD_CRX", "POINTS_SEASON_INDEX", "POINTS_REWARDS_TOP_N",
                 "POINTS_REWARD_CLAIM_SIGNATURE_TTL_MS", "WHITELIST_HEALTH_MAX_STALE_MS",
                 "POINTS_LEADERBOARD_SEASON_ALLOCATIONS", "WHITELIST_BUDGET_CAP_CRX",
                 "POINTS_TOTAL_SUPPLY_CRX", "POINTS_LEADERBOARD_REWARDS_PCT",
                 "KV_REDIS_URL", "REDIS_URL", "KV_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("POINTS_SEASON_ID", "season-1")
    monkeypatch.setenv("WHITELIST_CLAIM_OPENS_AT", str(NOW_MS - DAY_MS))
    monkeypatch.setenv("POINTS_REWARDS_CLAIM_OPENS_AT", str(NOW_MS - DAY_MS))
    monkeypatch.setenv("WHITELIST_REWARDS_TOKEN", "recalc-secret")


class Clock:
    def __init__(self, now_ms):
        self.now_ms = now_ms

    def __call__(self):
        return self.now_ms


@pytest.fixture
def clock(monkeypatch):
    c = Clock(NOW_MS)
    for module in (claims, points_api, health):
        monkeypatch.setattr(module, "_now_ms", c)
    return c


@pytest.fixture
def app(store, season_env, clock):
    return create_app(store=store, config={"TESTING": True, "RATELIMIT_ENABLED": False})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def wallet():
    return Account.create()


def sign(account, message: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


def seed_presale(fake_redis, address: str, ts_ms: int):
    fake_redis.set(f"presale:wallet:{address.lower()}", '{"ts": %d, "token": "ETH"}' % ts_ms)


def seed_points(fake_redis, season_id: str, address: str, **fields):
    fake_redis.hset(f"points:{season_id}:user:{address.lower()}", mapping=fields)
