"""Points leaderboard rewards API.

Routes:
- POST /api/points/claim                 signed claim against the rank-derived reward table
- GET  /api/points/leaderboard           top-N table with reward previews
- GET  /api/points/user?address=0x...    points row, rank, reward and claim state
"""

import redis
from flask import Blueprint, current_app, jsonify, request

from claim_signing import build_leaderboard_claim_message, is_signature_expired, parse_issued_at, recover_signer
from claims import (
    _is_valid_wallet, _json_body, _now_ms, _param, _not_configured, claim_rate_limit, release_claim_lock,
)
from coerce import normalize_address, round6, to_number
from extensions import kv, limiter, snapshots
from kv_lock import acquire_lock
from kv_store import StoreUnavailable
from leaderboard_rewards import (
    PointsKeys,
    compute_leaderboard_claim_payout,
    compute_rewards_table,
    get_leaderboard_claim_state,
    parse_reward_claim_row,
)
from rewards_config import load_leaderboard_config


points_api = Blueprint("points_api", __name__)

CLAIM_LOCK_TTL_SECONDS = 20
CLAIM_LOCK_RETRIES = 2
CLAIM_LOCK_RETRY_DELAY_MS = 100


def _rewards_table(store, keys: PointsKeys, config) -> dict:
    entries = store.zrevrange(keys.leaderboard, 0, -1, withscores=True)
    return compute_rewards_table(entries, config.season_reward_crx, config.top_n, config.excluded_addresses)


def _reward_for(store, keys: PointsKeys, config, address: str, claim_row) -> float:
    """Finalized snapshot if the wallet already claimed once, else the live table."""
    if claim_row and claim_row["totalRewardSnapshotCrx"] > 0:
        return claim_row["totalRewardSnapshotCrx"]
    entry = _rewards_table(store, keys, config).get(address)
    return entry["rewardCrx"] if entry else 0.0


@points_api.post("/api/points/claim")
@limiter.limit(claim_rate_limit)
def points_claim():
    data = _json_body()
    address = normalize_address(_param(data, "address"))
    signature = str(_param(data, "signature") or "")
    issued_at = parse_issued_at(_param(data, "issuedAt"))
    config = load_leaderboard_config(_param(data, "seasonId"))
    now_ms = _now_ms()

    if not address:
        return jsonify({"ok": False, "error": "Missing address"}), 400
    if not _is_valid_wallet(address):
        return jsonify({"ok": False, "error": "Invalid address"}), 400
    if not signature:
        return jsonify({"ok": False, "error": "Missing signature"}), 400
    if not issued_at:
        return jsonify({"ok": False, "error": "Missing issuedAt"}), 400

    missing = config.missing_fields()
    if missing:
        return _not_configured(missing)
    if is_signature_expired(now_ms, issued_at, config.claim_signature_ttl_ms, config.max_future_skew_ms):
        return jsonify({"ok": False, "error": "Signature expired", "ttlMs": config.claim_signature_ttl_ms}), 400
    if now_ms < config.claim_opens_at_ms:
        return jsonify({
            "ok": False,
            "error": "Claim is not open yet",
            "claimOpensAt": config.claim_opens_at_ms,
            "claimOpen": False,
        }), 403

    message = build_leaderboard_claim_message(address, config.season_id, issued_at)
    try:
        recovered = recover_signer(message, signature)
    except Exception:
        return jsonify({"ok": False, "error": "Invalid signature"}), 401
    if not recovered or recovered != address:
        return jsonify({"ok": False, "error": "Signature does not match address"}), 401

    keys = PointsKeys(config.season_id)
    lock_key = keys.claim_lock(address)
    try:
        store = kv.get_store()
        token = acquire_lock(store, lock_key, ttl_seconds=CLAIM_LOCK_TTL_SECONDS,
                             retries=CLAIM_LOCK_RETRIES, retry_delay_ms=CLAIM_LOCK_RETRY_DELAY_MS)
    except StoreUnavailable as e:
        current_app.logger.warning("Points claim lock unavailable: %s", e)
        return jsonify({"ok": False, "error": "Claim lock unavailable. Retry in a few seconds."}), 503
    if not token:
        return jsonify({
            "ok": False,
            "error": "Claim already in progress for this wallet. Retry in a few seconds.",
            "seasonId": config.season_id,
            "address": address,
        }), 409

    try:
        user_row = store.hgetall(keys.user(address))
        if not user_row:
            return jsonify({"ok": False, "error": "Wallet not found in points season"}), 404

        claim_row = parse_reward_claim_row(store.hgetall(keys.reward_user(address)))
        reward_crx = _reward_for(store, keys, config, address, claim_row)
        payout = compute_leaderboard_claim_payout(reward_crx, claim_row, config, now_ms)
        if payout["claimTotalCrx"] <= 0:
            return jsonify({
                "ok": False,
                "error": "Nothing claimable now",
                "seasonId": config.season_id,
                "address": address,
                "claimState": payout,
            }), 409

        claim_count = claim_row["claimCount"] if claim_row else 0
        claim_version = claim_row["claimVersion"] if claim_row else 0
        claim_fields = {
            "address": address,
            "seasonId": config.season_id,
            "totalRewardSnapshotCrx": reward_crx,
            "immediateClaimedCrx": payout["nextImmediateClaimedCrx"],
            "streamedClaimedCrx": payout["nextStreamedClaimedCrx"],
            "claimCount": claim_count + 1,
            "claimVersion": max(claim_version, claim_count) + 1,
            "lastClaimAt": now_ms,
            "updatedAt": now_ms,
        }
        store.hset(keys.reward_user(address), claim_fields)
        current_app.logger.info(
            "Points claim %s season=%s amount=%s", address, config.season_id, payout["claimTotalCrx"])

        return jsonify({
            "ok": True,
            "seasonId": config.season_id,
            "address": address,
            "claim": {
                "amountCrx": round6(payout["claimTotalCrx"]),
                "immediateCrx": round6(payout["claimImmediateCrx"]),
                "streamedCrx": round6(payout["claimStreamedCrx"]),
                "claimedAt": now_ms,
            },
            "claimState": get_leaderboard_claim_state(reward_crx, claim_fields, config, now_ms),
            "rewardSnapshotCrx": reward_crx,
        })
    except Exception:
        current_app.logger.exception("Points claim failed for %s", address)
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        release_claim_lock(store, lock_key, token)


@points_api.get("/api/points/leaderboard")
def points_leaderboard():
    config = load_leaderboard_config(request.args.get("seasonId"))
    if not config.season_id:
        return _not_configured(["POINTS_SEASON_ID"])
    keys = PointsKeys(config.season_id)
    now_ms = _now_ms()
    stale = False

    try:
        store = kv.get_store()
        table = _rewards_table(store, keys, config)
        ranked = sorted(table.items(), key=lambda item: item[1]["rank"])
        items = []
        if ranked:
            read = store.pipeline()
            for wallet, _ in ranked:
                read.hgetall(keys.user(wallet))
            rows = read.execute()
            for (wallet, entry), row in zip(ranked, rows):
                row = row or {}
                items.append({
                    "address": wallet,
                    "rank": entry["rank"],
                    "points": entry["points"],
                    "rewardCrx": entry["rewardCrx"],
                    "sharePct": entry["sharePct"],
                    "multiplier": to_number(row.get("multiplier"), 1.0),
                    "volumeUsd": to_number(row.get("volumeUsd"), 0.0),
                    "lpUsd": to_number(row.get("lpUsd"), 0.0),
                })
        updated_at = store.get(keys.updated_at)
        snapshots.cache.put(keys.leaderboard, (items, updated_at), now_ms)
    except (StoreUnavailable, redis.RedisError) as e:
        cached = snapshots.cache.get(keys.leaderboard)
        if cached is None:
            current_app.logger.warning("Points leaderboard unavailable: %s", e)
            return jsonify({"ok": False, "error": "Rewards store unavailable"}), 503
        current_app.logger.warning("Points leaderboard: serving cached snapshot (%s)", e)
        (items, updated_at), _ = cached
        stale = True
    except Exception:
        current_app.logger.exception("Points leaderboard failed")
        return jsonify({"ok": False, "error": "Server error"}), 500

    body = {
        "seasonId": config.season_id,
        "seasonRewardCrx": config.season_reward_crx,
        "leaderboardRewardsTotalCrx": config.leaderboard_rewards_total_crx,
        "totalSupplyCrx": config.total_supply_crx,
        "seasonEndAt": config.season_end_ms,
        "topN": config.top_n,
        "updatedAt": int(updated_at) if updated_at else None,
        "leaderboard": items,
    }
    if stale:
        body["stale"] = True
    return jsonify(body)


@points_api.get("/api/points/user")
def points_user():
    address = normalize_address(request.args.get("address"))
    if not address:
        return jsonify({"ok": False, "error": "Missing address"}), 400
    config = load_leaderboard_config(request.args.get("seasonId"))
    if not config.season_id:
        return _not_configured(["POINTS_SEASON_ID"])
    keys = PointsKeys(config.season_id)
    now_ms = _now_ms()

    try:
        store = kv.get_store()
        user_row = store.hgetall(keys.user(address))
        if not user_row:
            return jsonify({"ok": False, "error": "User not found"}), 404
        claim_row = parse_reward_claim_row(store.hgetall(keys.reward_user(address)))
        entry = _rewards_table(store, keys, config).get(address)
        if claim_row and claim_row["totalRewardSnapshotCrx"] > 0:
            reward_crx = claim_row["totalRewardSnapshotCrx"]
        else:
            reward_crx = entry["rewardCrx"] if entry else 0.0
        return jsonify({
            "seasonId": config.season_id,
            "address": address,
            "user": user_row,
            "reward": {
                "rank": entry["rank"] if entry else None,
                "rewardCrx": reward_crx,
                "sharePct": entry["sharePct"] if entry else 0.0,
                "finalized": bool(claim_row and claim_row["totalRewardSnapshotCrx"] > 0),
            },
            "claimState": get_leaderboard_claim_state(reward_crx, claim_row, config, now_ms),
        })
    except (StoreUnavailable, redis.RedisError) as e:
        current_app.logger.warning("Points user lookup: store unavailable: %s", e)
        return jsonify({"ok": False, "error": "Rewards store unavailable"}), 503
    except Exception:
        current_app.logger.exception("Points user lookup failed for %s", address)
        return jsonify({"ok": False, "error": "Server error"}), 500
