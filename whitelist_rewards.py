"""Whitelist activation rewards: deterministic allocation, budget cap, vesting and payout math.

Everything in here is pure except scan_whitelist_wallets(), which only reads the
presale index. Rewards are derived from the wallet address alone (FNV-1a hash),
so a recalculation can run any number of times and land on the same numbers.

Row dicts use the camelCase field names stored in the KV hashes and returned by
the API.
"""

import json
import math

from coerce import floor6, normalize_address, parse_time_ms, round6, to_bool, to_ms, to_number
from rewards_config import DAY_MS

WHITELIST_KEY_PREFIX = "presale:wallet:"
SCAN_BATCH_SIZE = 1000
MAX_SCAN_ROUNDS = 2000

BASE_SALT = "whitelist-base"
BONUS_SALT = "whitelist-bonus"

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


class WhitelistKeys:
    def __init__(self, season_id: str):
        self.season_id = season_id
        self.base = f"whitelist:{season_id}"
        self.summary = f"{self.base}:summary"
        self.updated_at = f"{self.base}:updatedAt"
        self.leaderboard = f"{self.base}:leaderboard"

    def user(self, address: str) -> str:
        return f"{self.base}:user:{normalize_address(address)}"

    def points_user(self, address: str) -> str:
        return f"points:{self.season_id}:user:{normalize_address(address)}"

    def claim_lock(self, address: str) -> str:
        return f"{self.base}:claim:lock:{normalize_address(address)}"


def presale_key(address: str) -> str:
    return f"{WHITELIST_KEY_PREFIX}{normalize_address(address)}"


def fnv1a32(text: str) -> int:
    h = _FNV_OFFSET
    for ch in str(text or ""):
        h ^= ord(ch)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def deterministic_in_range(identifier: str, lo: float, hi: float, salt: str) -> float:
    """Map hash(salt:identifier) uniformly onto [lo, hi]."""
    if not (math.isfinite(lo) and math.isfinite(hi)):
        return 0.0
    if hi <= lo:
        return lo
    ratio = fnv1a32(f"{salt}:{normalize_address(identifier)}") / 0xFFFFFFFF
    return lo + (hi - lo) * ratio


def _presale_dict(presale_row):
    if not presale_row:
        return None
    if isinstance(presale_row, dict):
        return presale_row
    try:
        parsed = json.loads(presale_row)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _presale_ts(presale_row):
    row = _presale_dict(presale_row)
    if not row:
        return None
    ts = row.get("ts")
    return to_ms(ts, None) or parse_time_ms(ts)


def scan_whitelist_wallets(store) -> list:
    """All whitelisted wallets from the presale index, sorted and de-duplicated.

    Stops when the cursor comes back to 0 (or repeats), or after MAX_SCAN_ROUNDS.
    """
    seen = set()
    cursor = 0
    for _ in range(MAX_SCAN_ROUNDS):
        next_cursor, keys = store.scan(cursor, match=f"{WHITELIST_KEY_PREFIX}*", count=SCAN_BATCH_SIZE)
        for key in keys:
            if not isinstance(key, str):
                continue
            wallet = normalize_address(key[len(WHITELIST_KEY_PREFIX):])
            if wallet:
                seen.add(wallet)
        if next_cursor == 0 or next_cursor == cursor:
            break
        cursor = next_cursor
    return sorted(seen)


def evaluate_wallet(wallet, presale_row, points_row, existing_reward_row, config, now_ms: int) -> dict:
    """Entitlement for one wallet before the budget cap.

    An activatedAt already on the stored row always wins, so a wallet that
    qualified inside its window keeps the bonus after the window closes.
    """
    existing = existing_reward_row or {}
    points = points_row or {}

    whitelisted_at = _presale_ts(presale_row)
    if whitelisted_at is None:
        whitelisted_at = to_ms(existing.get("whitelistedAt"), now_ms)
    window_ends_at = whitelisted_at + int(math.floor(config.activation_window_days * DAY_MS))
    within_window = now_ms <= window_ends_at

    volume_usd = to_number(points.get("volumeUsd"), 0.0)
    lp_usd = to_number(points.get("lpUsd"), 0.0)
    has_swap = volume_usd > 0
    met_volume_threshold = volume_usd >= config.volume_threshold_usd
    met_micro_lp = lp_usd >= config.micro_lp_usd
    activation_now = has_swap and (met_volume_threshold or met_micro_lp)

    activated_at = to_ms(existing.get("activatedAt"), None)
    if activated_at is None and within_window and activation_now:
        activated_at = now_ms
    activation_qualified = activated_at is not None

    base_reward_raw = deterministic_in_range(
        wallet, config.base_min_crx, max(config.base_min_crx, config.base_max_crx), BASE_SALT)
    bonus_reward_raw = 0.0
    if activation_qualified:
        bonus_reward_raw = deterministic_in_range(
            wallet, config.bonus_min_crx, max(config.bonus_min_crx, config.bonus_max_crx), BONUS_SALT)

    return {
        "wallet": normalize_address(wallet),
        "whitelistedAt": whitelisted_at,
        "windowEndsAt": window_ends_at,
        "withinWindow": within_window,
        "volumeUsd": volume_usd,
        "lpUsd": lp_usd,
        "hasSwap": has_swap,
        "metVolumeThreshold": met_volume_threshold,
        "metMicroLp": met_micro_lp,
        "activationQualified": activation_qualified,
        "activatedAt": activated_at,
        "baseRewardRaw": base_reward_raw,
        "bonusRewardRaw": bonus_reward_raw,
        "existingImmediateClaimedCrx": to_number(existing.get("immediateClaimedCrx"), 0.0),
        "existingStreamedClaimedCrx": to_number(existing.get("streamedClaimedCrx"), 0.0),
        "existingLastClaimAt": to_ms(existing.get("lastClaimAt"), None),
        "existingClaimCount": int(to_number(existing.get("claimCount"), 0)),
        "existingClaimVersion": int(to_number(existing.get("claimVersion"), 0)),
    }


def budget_scales(entries: list, budget_cap_crx: float):
    """(base_scale, bonus_scale) for the two-tier waterfall: base first, bonus gets the rest."""
    base_total_raw = sum(row.get("baseRewardRaw") or 0 for row in entries)
    bonus_total_raw = sum(row.get("bonusRewardRaw") or 0 for row in entries)
    cap = max(0.0, float(budget_cap_crx or 0))

    base_scale = 1.0
    bonus_scale = 1.0
    if base_total_raw > cap and base_total_raw > 0:
        base_scale = cap / base_total_raw
        bonus_scale = 0.0
    else:
        remaining = max(0.0, cap - base_total_raw)
        if bonus_total_raw > remaining and bonus_total_raw > 0:
            bonus_scale = remaining / bonus_total_raw
    return base_scale, bonus_scale


def apply_budget_cap(entries: list, config) -> list:
    entries = list(entries or [])
    base_scale, bonus_scale = budget_scales(entries, config.budget_cap_crx)

    # scaled amounts round down so the allocated total never exceeds the cap
    base_round = floor6 if base_scale < 1 else round6
    bonus_round = floor6 if bonus_scale < 1 else round6

    out = []
    for row in entries:
        base_reward = base_round((row.get("baseRewardRaw") or 0) * base_scale)
        bonus_reward = bonus_round((row.get("bonusRewardRaw") or 0) * bonus_scale)
        total_reward = round6(base_reward + bonus_reward)
        immediate = round6(total_reward * config.immediate_pct)
        streamed = round6(max(0.0, total_reward - immediate))
        out.append(dict(
            row,
            baseScale=round6(base_scale),
            bonusScale=round6(bonus_scale),
            baseRewardCrx=base_reward,
            activationBonusCrx=bonus_reward,
            totalRewardCrx=total_reward,
            immediateClaimableCrx=immediate,
            streamedCrx=streamed,
            streamStartAt=row.get("activatedAt") or row.get("whitelistedAt"),
        ))
    return out


def build_summary(entries: list, config, now_ms: int) -> dict:
    entries = list(entries or [])
    base_allocated = round6(sum(row.get("baseRewardCrx") or 0 for row in entries))
    bonus_allocated = round6(sum(row.get("activationBonusCrx") or 0 for row in entries))
    return {
        "seasonId": config.season_id,
        "walletCount": len(entries),
        "activatedCount": sum(1 for row in entries if row.get("activationQualified")),
        "budgetCapCrx": round6(config.budget_cap_crx),
        "baseAllocatedCrx": base_allocated,
        "bonusAllocatedCrx": bonus_allocated,
        "totalAllocatedCrx": round6(base_allocated + bonus_allocated),
        "totalImmediateCrx": round6(sum(row.get("immediateClaimableCrx") or 0 for row in entries)),
        "totalStreamedCrx": round6(sum(row.get("streamedCrx") or 0 for row in entries)),
        "immediatePct": round6(config.immediate_pct),
        "streamDays": config.stream_days,
        "updatedAt": now_ms,
    }


def stored_row_fields(row: dict, config, now_ms: int) -> dict:
    """Hash fields written by a recalculation; claim fields are carried forward."""
    return {
        "address": row["wallet"],
        "seasonId": config.season_id,
        "whitelisted": True,
        "whitelistedAt": row["whitelistedAt"],
        "activationWindowDays": config.activation_window_days,
        "windowEndsAt": row["windowEndsAt"],
        "withinWindow": row["withinWindow"],
        "activationQualified": row["activationQualified"],
        "activatedAt": row["activatedAt"],
        "hasSwap": row["hasSwap"],
        "metVolumeThreshold": row["metVolumeThreshold"],
        "metMicroLp": row["metMicroLp"],
        "volumeUsd": row["volumeUsd"],
        "lpUsd": row["lpUsd"],
        "volumeThresholdUsd": config.volume_threshold_usd,
        "microLpUsd": config.micro_lp_usd,
        "baseRewardCrx": row["baseRewardCrx"],
        "activationBonusCrx": row["activationBonusCrx"],
        "totalRewardCrx": row["totalRewardCrx"],
        "immediateClaimableCrx": row["immediateClaimableCrx"],
        "streamedCrx": row["streamedCrx"],
        "immediatePct": config.immediate_pct,
        "streamDays": config.stream_days,
        "streamStartAt": row["streamStartAt"],
        "immediateClaimedCrx": row.get("existingImmediateClaimedCrx") or 0,
        "streamedClaimedCrx": row.get("existingStreamedClaimedCrx") or 0,
        "lastClaimAt": row.get("existingLastClaimAt"),
        "claimCount": row.get("existingClaimCount") or 0,
        "claimVersion": row.get("existingClaimVersion") or 0,
        "budgetBaseScale": row["baseScale"],
        "budgetBonusScale": row["bonusScale"],
        "pending": False,
        "updatedAt": now_ms,
    }


def preview_row(evaluated: dict, config, now_ms: int) -> dict:
    """Unscaled reward row for a whitelisted wallet no recalculation has materialized yet."""
    total = evaluated["baseRewardRaw"] + evaluated["bonusRewardRaw"]
    immediate = total * config.immediate_pct
    return {
        "address": evaluated["wallet"],
        "seasonId": config.season_id,
        "whitelisted": True,
        "whitelistedAt": evaluated["whitelistedAt"],
        "activationWindowDays": config.activation_window_days,
        "windowEndsAt": evaluated["windowEndsAt"],
        "withinWindow": evaluated["withinWindow"],
        "activationQualified": evaluated["activationQualified"],
        "activatedAt": evaluated["activatedAt"],
        "hasSwap": evaluated["hasSwap"],
        "metVolumeThreshold": evaluated["metVolumeThreshold"],
        "metMicroLp": evaluated["metMicroLp"],
        "volumeUsd": evaluated["volumeUsd"],
        "lpUsd": evaluated["lpUsd"],
        "volumeThresholdUsd": config.volume_threshold_usd,
        "microLpUsd": config.micro_lp_usd,
        "baseRewardCrx": evaluated["baseRewardRaw"],
        "activationBonusCrx": evaluated["bonusRewardRaw"],
        "totalRewardCrx": total,
        "immediateClaimableCrx": immediate,
        "streamedCrx": max(0.0, total - immediate),
        "immediatePct": config.immediate_pct,
        "streamDays": config.stream_days,
        "streamStartAt": evaluated["activatedAt"] or evaluated["whitelistedAt"],
        "immediateClaimedCrx": 0.0,
        "streamedClaimedCrx": 0.0,
        "lastClaimAt": None,
        "claimCount": 0,
        "claimVersion": 0,
        "budgetBaseScale": 1.0,
        "budgetBonusScale": 1.0,
        "pending": True,
        "updatedAt": now_ms,
    }


def parse_stored_reward_row(row):
    if not row or not isinstance(row, dict):
        return None
    return {
        "address": normalize_address(row.get("address")),
        "seasonId": str(row.get("seasonId") or ""),
        "whitelisted": to_bool(row.get("whitelisted")),
        "whitelistedAt": to_ms(row.get("whitelistedAt"), None),
        "activationWindowDays": to_number(row.get("activationWindowDays"), 0.0),
        "windowEndsAt": to_ms(row.get("windowEndsAt"), None),
        "withinWindow": to_bool(row.get("withinWindow")),
        "activationQualified": to_bool(row.get("activationQualified")),
        "activatedAt": to_ms(row.get("activatedAt"), None),
        "hasSwap": to_bool(row.get("hasSwap")),
        "metVolumeThreshold": to_bool(row.get("metVolumeThreshold")),
        "metMicroLp": to_bool(row.get("metMicroLp")),
        "volumeUsd": to_number(row.get("volumeUsd"), 0.0),
        "lpUsd": to_number(row.get("lpUsd"), 0.0),
        "volumeThresholdUsd": to_number(row.get("volumeThresholdUsd"), 0.0),
        "microLpUsd": to_number(row.get("microLpUsd"), 0.0),
        "baseRewardCrx": to_number(row.get("baseRewardCrx"), 0.0),
        "activationBonusCrx": to_number(row.get("activationBonusCrx"), 0.0),
        "totalRewardCrx": to_number(row.get("totalRewardCrx"), 0.0),
        "immediateClaimableCrx": to_number(row.get("immediateClaimableCrx"), 0.0),
        "streamedCrx": to_number(row.get("streamedCrx"), 0.0),
        "immediatePct": to_number(row.get("immediatePct"), 0.0),
        "streamDays": to_number(row.get("streamDays"), 0.0),
        "streamStartAt": to_ms(row.get("streamStartAt"), None),
        "immediateClaimedCrx": to_number(row.get("immediateClaimedCrx"), 0.0),
        "streamedClaimedCrx": to_number(row.get("streamedClaimedCrx"), 0.0),
        "lastClaimAt": to_ms(row.get("lastClaimAt"), None),
        "claimCount": int(to_number(row.get("claimCount"), 0)),
        "claimVersion": int(to_number(row.get("claimVersion"), 0)),
        "budgetBaseScale": to_number(row.get("budgetBaseScale"), 1.0),
        "budgetBonusScale": to_number(row.get("budgetBonusScale"), 1.0),
        "pending": to_bool(row.get("pending")),
        "updatedAt": to_ms(row.get("updatedAt"), None),
    }


def parse_stored_summary_row(row):
    if not row or not isinstance(row, dict):
        return None
    return {
        "seasonId": str(row.get("seasonId") or ""),
        "walletCount": int(to_number(row.get("walletCount"), 0)),
        "activatedCount": int(to_number(row.get("activatedCount"), 0)),
        "budgetCapCrx": to_number(row.get("budgetCapCrx"), 0.0),
        "baseAllocatedCrx": to_number(row.get("baseAllocatedCrx"), 0.0),
        "bonusAllocatedCrx": to_number(row.get("bonusAllocatedCrx"), 0.0),
        "totalAllocatedCrx": to_number(row.get("totalAllocatedCrx"), 0.0),
        "totalImmediateCrx": to_number(row.get("totalImmediateCrx"), 0.0),
        "totalStreamedCrx": to_number(row.get("totalStreamedCrx"), 0.0),
        "immediatePct": to_number(row.get("immediatePct"), 0.0),
        "streamDays": to_number(row.get("streamDays"), 0.0),
        "updatedAt": to_ms(row.get("updatedAt"), None),
    }


def get_claim_state(reward_row, config, now_ms: int) -> dict:
    row = reward_row or {}
    total_reward = to_number(row.get("totalRewardCrx"), 0.0)
    immediate_claimable = to_number(row.get("immediateClaimableCrx"), 0.0)
    streamed = to_number(row.get("streamedCrx"), 0.0)
    immediate_claimed = to_number(row.get("immediateClaimedCrx"), 0.0)
    streamed_claimed = to_number(row.get("streamedClaimedCrx"), 0.0)
    stream_start_at = to_ms(row.get("streamStartAt"), None)
    stream_days = max(1.0, to_number(row.get("streamDays"), None) or config.stream_days or 1.0)
    stream_duration_ms = int(stream_days * DAY_MS)

    claim_opens_at = to_ms(config.claim_opens_at_ms, None)
    claim_open = claim_opens_at is not None and now_ms >= claim_opens_at

    elapsed_ms = max(0, now_ms - stream_start_at) if stream_start_at else 0
    if stream_start_at and stream_duration_ms > 0:
        stream_progress = min(1.0, elapsed_ms / stream_duration_ms)
    else:
        stream_progress = 0.0
    vested_streamed = round6(streamed * stream_progress)

    immediate_remaining = round6(max(0.0, immediate_claimable - immediate_claimed))
    streamed_remaining = round6(max(0.0, vested_streamed - streamed_claimed))
    claimable_now = round6(immediate_remaining + streamed_remaining) if claim_open else 0.0

    return {
        "claimOpen": claim_open,
        "claimOpensAt": claim_opens_at,
        "claimableNowCrx": claimable_now,
        "immediateRemainingCrx": immediate_remaining,
        "streamedRemainingCrx": streamed_remaining,
        "vestedStreamedCrx": vested_streamed,
        "totalClaimedCrx": round6(immediate_claimed + streamed_claimed),
        "totalRewardCrx": round6(total_reward),
        "streamProgress": round6(stream_progress),
        "streamStartAt": stream_start_at or None,
        "streamDurationMs": stream_duration_ms,
        "streamEndsAt": (stream_start_at + stream_duration_ms) if stream_start_at else None,
    }


def compute_claim_payout(reward_row, config, now_ms: int) -> dict:
    """What a claim at now_ms would pay. Never touches storage.

    Immediate bucket is drained before streamed. The caller persists the
    next*ClaimedCrx values while holding the wallet lock.
    """
    row = reward_row or {}
    state = get_claim_state(row, config, now_ms)
    prev_immediate = to_number(row.get("immediateClaimedCrx"), 0.0)
    prev_streamed = to_number(row.get("streamedClaimedCrx"), 0.0)

    if not state["claimOpen"] or state["claimableNowCrx"] <= 0:
        return dict(
            state,
            claimImmediateCrx=0.0,
            claimStreamedCrx=0.0,
            claimTotalCrx=0.0,
            nextImmediateClaimedCrx=prev_immediate,
            nextStreamedClaimedCrx=prev_streamed,
            nextTotalClaimedCrx=state["totalClaimedCrx"],
        )

    claim_total = state["claimableNowCrx"]
    claim_immediate = round6(min(claim_total, state["immediateRemainingCrx"]))
    claim_streamed = round6(max(0.0, claim_total - claim_immediate))
    next_immediate = round6(prev_immediate + claim_immediate)
    next_streamed = round6(prev_streamed + claim_streamed)
    return dict(
        state,
        claimImmediateCrx=claim_immediate,
        claimStreamedCrx=claim_streamed,
        claimTotalCrx=claim_total,
        nextImmediateClaimedCrx=next_immediate,
        nextStreamedClaimedCrx=next_streamed,
        nextTotalClaimedCrx=round6(next_immediate + next_streamed),
    )
