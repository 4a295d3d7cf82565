"""Whitelist rewards API.

Routes:
- POST     /api/whitelist-rewards/claim     signed claim (per-wallet lock)
- GET|POST /api/whitelist-rewards/recalc    rebuild the season ledger (bearer)
- GET      /api/whitelist-rewards/summary
- GET      /api/whitelist-rewards/user?address=0x...
- GET|POST /api/whitelist-rewards/dry-run   operator inspection (bearer)
"""

import os
import re
import time

import redis
from flask import Blueprint, current_app, jsonify, request

from claim_signing import build_whitelist_claim_message, is_signature_expired, parse_issued_at, recover_signer
from coerce import normalize_address, to_bool
from extensions import kv, limiter, snapshots
from kv_lock import acquire_lock, release_lock
from kv_store import StoreUnavailable
from request_auth import authorize_bearer_request
from rewards_config import admin_secrets, load_whitelist_config
from whitelist_recalc import run_recalc
from whitelist_rewards import (
    WhitelistKeys,
    compute_claim_payout,
    evaluate_wallet,
    get_claim_state,
    parse_stored_reward_row,
    parse_stored_summary_row,
    presale_key,
    preview_row,
    scan_whitelist_wallets,
)


whitelist_api = Blueprint("whitelist_api", __name__)

_WALLET_RE = re.compile(r"^0x[a-f0-9]{40}$")

CLAIM_LOCK_TTL_SECONDS = 20
CLAIM_LOCK_RETRIES = 2
CLAIM_LOCK_RETRY_DELAY_MS = 100

DRY_RUN_DEFAULT_LIMIT = 25
DRY_RUN_MAX_LIMIT = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


def claim_rate_limit() -> str:
    return os.getenv("CLAIM_RATE_LIMIT", "30 per minute")


def _is_valid_wallet(wallet: str) -> bool:
    return bool(_WALLET_RE.match(wallet or ""))


def _json_body() -> dict:
    # arrays and scalars are treated like an empty body
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _param(data: dict, name: str):
    return data.get(name) or request.args.get(name)


def _not_configured(missing):
    return jsonify({"ok": False, "error": "Missing required env: " + ", ".join(missing)}), 503


def _int_arg(name: str, lo: int, hi: int, fallback: int) -> int:
    try:
        value = int(float(request.args.get(name)))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return min(hi, max(lo, value))


def release_claim_lock(store, key: str, token: str):
    """Release in a finally block; on failure the TTL frees the key."""
    try:
        release_lock(store, key, token)
    except redis.RedisError:
        current_app.logger.warning("Lock release failed for %s; waiting for TTL expiry", key)


@whitelist_api.post("/api/whitelist-rewards/claim")
@limiter.limit(claim_rate_limit)
def whitelist_claim():
    data = _json_body()
    address = normalize_address(_param(data, "address"))
    signature = str(_param(data, "signature") or "")
    issued_at = parse_issued_at(_param(data, "issuedAt"))
    config = load_whitelist_config(_param(data, "seasonId"))
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

    message = build_whitelist_claim_message(address, config.season_id, issued_at)
    try:
        recovered = recover_signer(message, signature)
    except Exception:
        return jsonify({"ok": False, "error": "Invalid signature"}), 401
    if not recovered or recovered != address:
        return jsonify({"ok": False, "error": "Signature does not match address"}), 401

    keys = WhitelistKeys(config.season_id)
    lock_key = keys.claim_lock(address)
    try:
        store = kv.get_store()
        token = acquire_lock(store, lock_key, ttl_seconds=CLAIM_LOCK_TTL_SECONDS,
                             retries=CLAIM_LOCK_RETRIES, retry_delay_ms=CLAIM_LOCK_RETRY_DELAY_MS)
    except StoreUnavailable as e:
        current_app.logger.warning("Whitelist claim lock unavailable: %s", e)
        return jsonify({"ok": False, "error": "Claim lock unavailable. Retry in a few seconds."}), 503
    if not token:
        return jsonify({
            "ok": False,
            "error": "Claim already in progress for this wallet. Retry in a few seconds.",
            "seasonId": config.season_id,
            "address": address,
        }), 409

    try:
        stored = store.hgetall(keys.user(address))
        user = parse_stored_reward_row(stored)
        if not user or not user["address"] or not user["whitelisted"]:
            return jsonify({"ok": False, "error": "Wallet not found in whitelist rewards"}), 404

        payout = compute_claim_payout(user, config, now_ms)
        if payout["claimTotalCrx"] <= 0:
            return jsonify({
                "ok": False,
                "error": "Nothing claimable now",
                "seasonId": config.season_id,
                "address": address,
                "claimState": payout,
            }), 409

        claim_fields = {
            "immediateClaimedCrx": payout["nextImmediateClaimedCrx"],
            "streamedClaimedCrx": payout["nextStreamedClaimedCrx"],
            "lastClaimAt": now_ms,
            "claimCount": user["claimCount"] + 1,
            "claimVersion": max(user["claimVersion"], user["claimCount"]) + 1,
            "updatedAt": now_ms,
        }
        store.hset(keys.user(address), claim_fields)
        current_app.logger.info(
            "Whitelist claim %s season=%s amount=%s", address, config.season_id, payout["claimTotalCrx"])

        updated_user = dict(user, **claim_fields)
        return jsonify({
            "ok": True,
            "seasonId": config.season_id,
            "address": address,
            "claim": {
                "amountCrx": payout["claimTotalCrx"],
                "immediateCrx": payout["claimImmediateCrx"],
                "streamedCrx": payout["claimStreamedCrx"],
                "claimedAt": now_ms,
            },
            "claimState": get_claim_state(updated_user, config, now_ms),
            "user": updated_user,
        })
    except Exception:
        current_app.logger.exception("Whitelist claim failed for %s", address)
        return jsonify({"ok": False, "error": "Server error"}), 500
    finally:
        release_claim_lock(store, lock_key, token)


@whitelist_api.route("/api/whitelist-rewards/recalc", methods=["GET", "POST"])
def whitelist_recalc():
    if not authorize_bearer_request(request, admin_secrets()):
        return jsonify({"ok": False, "error": "Unauthorized"}), 401

    config = load_whitelist_config(request.args.get("seasonId"))
    missing = config.missing_fields()
    if missing:
        return _not_configured(missing)

    try:
        store = kv.get_store()
        result = run_recalc(store, config, _now_ms())
    except (StoreUnavailable, redis.RedisError) as e:
        current_app.logger.warning("Whitelist recalc: store unavailable: %s", e)
        return jsonify({"ok": False, "error": "Rewards store unavailable"}), 503
    except Exception:
        current_app.logger.exception("Whitelist recalc failed for season %s", config.season_id)
        return jsonify({"ok": False, "error": "Server error"}), 500

    current_app.logger.info(
        "Whitelist recalc season=%s wallets=%s activated=%s allocated=%s",
        config.season_id, result["walletCount"], result["activatedCount"], result["totalAllocatedCrx"])
    result.pop("summary", None)
    return jsonify(dict(result, ok=True))


@whitelist_api.get("/api/whitelist-rewards/summary")
def whitelist_summary():
    config = load_whitelist_config(request.args.get("seasonId"))
    if not config.season_id:
        return _not_configured(["POINTS_SEASON_ID"])
    keys = WhitelistKeys(config.season_id)
    now_ms = _now_ms()
    stale = False

    try:
        store = kv.get_store()
        summary = parse_stored_summary_row(store.hgetall(keys.summary))
        updated_at = store.get(keys.updated_at)
        snapshots.cache.put(keys.summary, (summary, updated_at), now_ms)
    except (StoreUnavailable, redis.RedisError) as e:
        cached = snapshots.cache.get(keys.summary)
        if cached is None:
            current_app.logger.warning("Whitelist summary unavailable: %s", e)
            return jsonify({"ok": False, "error": "Rewards store unavailable"}), 503
        current_app.logger.warning("Whitelist summary: serving cached snapshot (%s)", e)
        (summary, updated_at), _ = cached
        stale = True
    except Exception:
        current_app.logger.exception("Whitelist summary failed")
        return jsonify({"ok": False, "error": "Server error"}), 500

    if summary is None:
        summary = {
            "seasonId": config.season_id,
            "walletCount": 0,
            "activatedCount": 0,
            "baseAllocatedCrx": 0,
            "bonusAllocatedCrx": 0,
            "totalAllocatedCrx": 0,
            "totalImmediateCrx": 0,
            "totalStreamedCrx": 0,
            "immediatePct": config.immediate_pct,
            "streamDays": config.stream_days,
            "updatedAt": int(updated_at) if updated_at else None,
        }
    claim_opens_at = config.claim_opens_at_ms
    summary = dict(
        summary,
        budgetCapCrx=config.budget_cap_crx,
        seasonEndAt=config.season_end_ms,
        claimOpensAt=claim_opens_at,
        claimOpen=claim_opens_at is not None and now_ms >= claim_opens_at,
    )
    body = {"seasonId": config.season_id, "summary": summary}
    if stale:
        body["stale"] = True
    return jsonify(body)


@whitelist_api.get("/api/whitelist-rewards/user")
def whitelist_user():
    address = normalize_address(request.args.get("address"))
    if not address:
        return jsonify({"ok": False, "error": "Missing address"}), 400

    config = load_whitelist_config(request.args.get("seasonId"))
    missing = config.missing_fields()
    if missing:
        return _not_configured(missing)
    keys = WhitelistKeys(config.season_id)
    now_ms = _now_ms()

    try:
        store = kv.get_store()
        parsed = parse_stored_reward_row(store.hgetall(keys.user(address)))
        if parsed and parsed["address"]:
            user = dict(parsed, **get_claim_state(parsed, config, now_ms))
            return jsonify({"seasonId": config.season_id, "user": user})

        presale_row = store.get(presale_key(address))
        if not presale_row:
            return jsonify({"ok": False, "error": "Wallet not whitelisted"}), 404

        evaluated = evaluate_wallet(
            wallet=address,
            presale_row=presale_row,
            points_row=store.hgetall(keys.points_user(address)) or None,
            existing_reward_row=None,
            config=config,
            now_ms=now_ms,
        )
        preview = preview_row(evaluated, config, now_ms)
        user = dict(preview, **get_claim_state(preview, config, now_ms))
        return jsonify({"seasonId": config.season_id, "user": user})
    except (StoreUnavailable, redis.RedisError) as e:
        current_app.logger.warning("Whitelist user lookup: store unavailable: %s", e)
        return jsonify({"ok": False, "error": "Rewards store unavailable"}), 503
    except Exception:
        current_app.logger.exception("Whitelist user lookup failed for %s", address)
        return jsonify({"ok": False, "error": "Server error"}), 500


def _dry_run_row(address: str, parsed: dict, rank, config, now_ms: int) -> dict:
    payout = compute_claim_payout(parsed, config, now_ms)
    return {
        "address": address,
        "rank": rank,
        "user": parsed,
        "claimState": payout,
        "claimPreview": {
            "amountCrx": payout["claimTotalCrx"],
            "immediateCrx": payout["claimImmediateCrx"],
            "streamedCrx": payout["claimStreamedCrx"],
        },
    }


@whitelist_api.route("/api/whitelist-rewards/dry-run", methods=["GET", "POST"])
def whitelist_dry_run():
    if not authorize_bearer_request(request, admin_secrets()):
        return jsonify({"ok": False, "error": "Unauthorized"}), 401

    config = load_whitelist_config(request.args.get("seasonId"))
    if not config.season_id:
        return _not_configured(["POINTS_SEASON_ID"])
    keys = WhitelistKeys(config.season_id)
    now_ms = _now_ms()

    address = normalize_address(request.args.get("address"))
    only_claimable = to_bool(request.args.get("onlyClaimable"))
    cursor = _int_arg("cursor", 0, 2 ** 53 - 1, 0)
    limit = _int_arg("limit", 1, DRY_RUN_MAX_LIMIT, DRY_RUN_DEFAULT_LIMIT)

    try:
        store = kv.get_store()
        if address:
            parsed = parse_stored_reward_row(store.hgetall(keys.user(address)))
            if not parsed or not parsed["address"]:
                return jsonify({
                    "ok": False,
                    "error": "Wallet not found in whitelist rewards",
                    "seasonId": config.season_id,
                    "address": address,
                }), 404
            rank_raw = store.zrevrank(keys.leaderboard, address)
            rank = int(rank_raw) + 1 if rank_raw is not None else None
            return jsonify({
                "ok": True,
                "seasonId": config.season_id,
                "nowMs": now_ms,
                "mode": "single",
                "result": _dry_run_row(address, parsed, rank, config, now_ms),
            })

        members = store.zrevrange(keys.leaderboard, cursor, cursor + limit - 1)
        total_wallets = store.zcard(keys.leaderboard)
        if not members and cursor == 0:
            members = scan_whitelist_wallets(store)[:limit]
            total_wallets = len(members)

        addresses = [a for a in (normalize_address(m) for m in members) if a]
        items = []
        if addresses:
            read = store.pipeline()
            for wallet in addresses:
                read.hgetall(keys.user(wallet))
            rows = read.execute()
            for idx, wallet in enumerate(addresses):
                parsed = parse_stored_reward_row(rows[idx])
                if not parsed or not parsed["address"]:
                    continue
                row = _dry_run_row(wallet, parsed, cursor + idx + 1, config, now_ms)
                if only_claimable and row["claimState"]["claimTotalCrx"] <= 0:
                    continue
                items.append(row)

        next_cursor = None
        if addresses and cursor + len(addresses) < total_wallets:
            next_cursor = cursor + len(addresses)
        return jsonify({
            "ok": True,
            "seasonId": config.season_id,
            "nowMs": now_ms,
            "mode": "batch",
            "cursor": cursor,
            "nextCursor": next_cursor,
            "limit": limit,
            "totalWallets": total_wallets,
            "onlyClaimable": only_claimable,
            "items": items,
        })
    except (StoreUnavailable, redis.RedisError) as e:
        current_app.logger.warning("Whitelist dry-run: store unavailable: %s", e)
        return jsonify({"ok": False, "error": "Rewards store unavailable"}), 503
    except Exception:
        current_app.logger.exception("Whitelist dry-run failed")
        return jsonify({"ok": False, "error": "Server error"}), 500
