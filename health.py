import os

import redis
from flask import Blueprint, current_app, jsonify, request

from claims import _now_ms
from coerce import clamp, to_ms
from extensions import kv
from kv_store import StoreUnavailable
from rewards_config import load_whitelist_config
from whitelist_rewards import WhitelistKeys


health_api = Blueprint("health_api", __name__)

DEFAULT_MAX_STALE_MS = 20 * 60 * 1000


def _max_stale_ms() -> int:
    return int(clamp(os.getenv("WHITELIST_HEALTH_MAX_STALE_MS"), 60_000, 24 * 60 * 60 * 1000, DEFAULT_MAX_STALE_MS))


@health_api.get("/api/whitelist-rewards/health")
def whitelist_health():
    """Healthy when the last recalculation is fresher than the staleness budget."""
    config = load_whitelist_config(request.args.get("seasonId"))
    if not config.season_id:
        return jsonify({"ok": False, "healthy": False, "error": "Missing required env: POINTS_SEASON_ID"}), 503

    keys = WhitelistKeys(config.season_id)
    max_stale_ms = _max_stale_ms()
    now_ms = _now_ms()
    try:
        store = kv.get_store()
        updated_at = to_ms(store.get(keys.updated_at), None)
    except (StoreUnavailable, redis.RedisError) as e:
        current_app.logger.warning("Whitelist health: store unavailable: %s", e)
        return jsonify({"ok": False, "healthy": False, "seasonId": config.season_id,
                        "error": "Rewards store unavailable"}), 503

    age_ms = max(0, now_ms - updated_at) if updated_at else None
    healthy = age_ms is not None and age_ms <= max_stale_ms
    return jsonify({
        "ok": healthy,
        "healthy": healthy,
        "seasonId": config.season_id,
        "updatedAt": updated_at,
        "ageMs": age_ms,
        "maxStaleMs": max_stale_ms,
        "checkedAt": now_ms,
        "reason": "fresh" if healthy else "stale_or_missing_updated_at",
    }), (200 if healthy else 503)
