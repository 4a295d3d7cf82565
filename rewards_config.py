"""Season reward configuration.

Every value is read once from the environment (``.env`` is loaded by app.py) and
clamped here, so handlers never see raw env strings.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from coerce import clamp, normalize_address, parse_time_ms, round6, to_number

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

DEFAULT_CLAIM_SIGNATURE_TTL_MS = 10 * 60 * 1000
MIN_CLAIM_SIGNATURE_TTL_MS = 60 * 1000
MAX_CLAIM_SIGNATURE_TTL_MS = DAY_MS

DEFAULT_MAX_FUTURE_SKEW_MS = 60 * 1000
# Hard ceiling regardless of env.
MAX_ALLOWED_FUTURE_SKEW_MS = 10 * 60 * 1000

DEFAULT_SEASON_ALLOCATIONS_CRX = (120_000.0, 90_000.0, 70_000.0, 50_000.0, 40_000.0, 30_000.0)


def _pick(env: Mapping, *names) -> str:
    for name in names:
        value = env.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _max_future_skew_ms(env: Mapping, ttl_ms: int) -> int:
    configured = to_number(_pick(env, "WHITELIST_CLAIM_MAX_FUTURE_SKEW_MS", "CLAIM_SIGNATURE_MAX_FUTURE_SKEW_MS"), None)
    if configured is None or configured < 0:
        return int(min(DEFAULT_MAX_FUTURE_SKEW_MS, ttl_ms))
    return int(min(ttl_ms, MAX_ALLOWED_FUTURE_SKEW_MS, configured))


def _season_end_and_window(env: Mapping) -> Tuple[Optional[int], float]:
    season_end_ms = parse_time_ms(_pick(env, "POINTS_SEASON_END", "VITE_POINTS_SEASON_END"))
    finalization_window_hours = clamp(env.get("POINTS_FINALIZATION_WINDOW_HOURS"), 0, 168, 48)
    return season_end_ms, finalization_window_hours


def _default_claim_opens_at(season_end_ms, finalization_window_hours):
    if season_end_ms is None:
        return None
    return int(season_end_ms + finalization_window_hours * HOUR_MS)


def admin_secrets(env: Optional[Mapping] = None) -> list:
    env = os.environ if env is None else env
    return [env.get("WHITELIST_REWARDS_TOKEN", ""), env.get("POINTS_INGEST_TOKEN", ""), env.get("CRON_SECRET", "")]


@dataclass(frozen=True)
class WhitelistRewardsConfig:
    season_id: str
    budget_cap_crx: float = 10_000.0
    base_min_crx: float = 20.0
    base_max_crx: float = 50.0
    bonus_min_crx: float = 50.0
    bonus_max_crx: float = 150.0
    activation_window_days: float = 14.0
    volume_threshold_usd: float = 100.0
    micro_lp_usd: float = 100.0
    immediate_pct: float = 0.3
    stream_days: float = 45.0
    season_end_ms: Optional[int] = None
    finalization_window_hours: float = 48.0
    claim_opens_at_ms: Optional[int] = None
    claim_signature_ttl_ms: int = DEFAULT_CLAIM_SIGNATURE_TTL_MS
    max_future_skew_ms: int = DEFAULT_MAX_FUTURE_SKEW_MS

    def missing_fields(self) -> list:
        missing = []
        if not self.season_id:
            missing.append("POINTS_SEASON_ID")
        if self.claim_opens_at_ms is None:
            missing.append("POINTS_SEASON_END (+ POINTS_FINALIZATION_WINDOW_HOURS) or WHITELIST_CLAIM_OPENS_AT")
        return missing


def load_whitelist_config(season_override: Optional[str] = None, env: Optional[Mapping] = None) -> WhitelistRewardsConfig:
    env = os.environ if env is None else env
    season_id = str(season_override or "").strip() or _pick(env, "POINTS_SEASON_ID", "VITE_POINTS_SEASON_ID")
    season_end_ms, finalization_window_hours = _season_end_and_window(env)
    claim_opens_at_ms = (
        parse_time_ms(_pick(env, "WHITELIST_CLAIM_OPENS_AT"))
        or parse_time_ms(_pick(env, "VITE_WHITELIST_CLAIM_OPENS_AT"))
        or _default_claim_opens_at(season_end_ms, finalization_window_hours)
    )
    ttl_ms = int(clamp(env.get("WHITELIST_CLAIM_SIGNATURE_TTL_MS"), MIN_CLAIM_SIGNATURE_TTL_MS,
                       MAX_CLAIM_SIGNATURE_TTL_MS, DEFAULT_CLAIM_SIGNATURE_TTL_MS))
    return WhitelistRewardsConfig(
        season_id=season_id,
        budget_cap_crx=clamp(env.get("WHITELIST_BUDGET_CAP_CRX"), 1, 1_000_000_000, 10_000.0),
        base_min_crx=clamp(env.get("WHITELIST_BASE_MIN_CRX"), 0, 1_000_000, 20.0),
        base_max_crx=clamp(env.get("WHITELIST_BASE_MAX_CRX"), 0, 1_000_000, 50.0),
        bonus_min_crx=clamp(env.get("WHITELIST_BONUS_MIN_CRX"), 0, 1_000_000, 50.0),
        bonus_max_crx=clamp(env.get("WHITELIST_BONUS_MAX_CRX"), 0, 1_000_000, 150.0),
        activation_window_days=clamp(env.get("WHITELIST_ACTIVATION_WINDOW_DAYS"), 1, 365, 14.0),
        volume_threshold_usd=clamp(env.get("WHITELIST_VOLUME_THRESHOLD_USD"), 0, 10_000_000, 100.0),
        micro_lp_usd=clamp(env.get("WHITELIST_MICRO_LP_USD"), 0, 10_000_000, 100.0),
        immediate_pct=clamp(env.get("WHITELIST_IMMEDIATE_PCT"), 0, 1, 0.3),
        stream_days=clamp(env.get("WHITELIST_STREAM_DAYS"), 1, 365, 45.0),
        season_end_ms=season_end_ms,
        finalization_window_hours=finalization_window_hours,
        claim_opens_at_ms=claim_opens_at_ms,
        claim_signature_ttl_ms=ttl_ms,
        max_future_skew_ms=_max_future_skew_ms(env, ttl_ms),
    )


_SEASON_INDEX_RE = re.compile(r"(\d+)")


def parse_season_index(season_id: str) -> Optional[int]:
    m = _SEASON_INDEX_RE.search(str(season_id or ""))
    if not m:
        return None
    idx = int(m.group(1))
    return idx if idx > 0 else None


def _parse_allocations(raw: str) -> tuple:
    out = []
    for item in str(raw or "").split(","):
        num = to_number(item.strip(), None)
        if num is not None and num >= 0:
            out.append(round6(num))
    return tuple(out)


def _parse_address_list(raw: str) -> frozenset:
    return frozenset(a for a in (normalize_address(x) for x in str(raw or "").split(",")) if a)


@dataclass(frozen=True)
class LeaderboardRewardsConfig:
    season_id: str
    total_supply_crx: float = 1_000_000.0
    leaderboard_rewards_pct: float = 0.4
    leaderboard_rewards_total_crx: float = 400_000.0
    season_allocations_crx: tuple = DEFAULT_SEASON_ALLOCATIONS_CRX
    season_reward_crx: float = 0.0
    top_n: int = 100
    excluded_addresses: frozenset = field(default_factory=frozenset)
    season_end_ms: Optional[int] = None
    finalization_window_hours: float = 48.0
    claim_opens_at_ms: Optional[int] = None
    claim_signature_ttl_ms: int = DEFAULT_CLAIM_SIGNATURE_TTL_MS
    max_future_skew_ms: int = DEFAULT_MAX_FUTURE_SKEW_MS

    def missing_fields(self) -> list:
        missing = []
        if not self.season_id:
            missing.append("POINTS_SEASON_ID")
        if self.claim_opens_at_ms is None:
            missing.append("POINTS_SEASON_END (+ POINTS_FINALIZATION_WINDOW_HOURS) or POINTS_REWARDS_CLAIM_OPENS_AT")
        return missing


def _season_allocation(season_id: str, allocations: tuple, explicit, explicit_index) -> float:
    explicit_reward = to_number(explicit, None)
    if explicit_reward is not None and explicit_reward >= 0:
        return round6(explicit_reward)
    allocations = allocations or DEFAULT_SEASON_ALLOCATIONS_CRX
    idx_num = to_number(explicit_index, None)
    if idx_num is not None and idx_num > 0:
        season_index = int(idx_num)
    else:
        season_index = parse_season_index(season_id) or 1
    pos = min(max(0, season_index - 1), len(allocations) - 1)
    return round6(allocations[pos])


def load_leaderboard_config(season_override: Optional[str] = None, env: Optional[Mapping] = None) -> LeaderboardRewardsConfig:
    env = os.environ if env is None else env
    season_id = str(season_override or "").strip() or _pick(env, "POINTS_SEASON_ID", "VITE_POINTS_SEASON_ID")
    season_end_ms, finalization_window_hours = _season_end_and_window(env)
    total_supply = clamp(env.get("POINTS_TOTAL_SUPPLY_CRX"), 1, 10_000_000_000, 1_000_000.0)
    pct = clamp(env.get("POINTS_LEADERBOARD_REWARDS_PCT"), 0, 1, 0.4)
    allocations = _parse_allocations(env.get("POINTS_LEADERBOARD_SEASON_ALLOCATIONS")) or DEFAULT_SEASON_ALLOCATIONS_CRX
    ttl_ms = int(clamp(env.get("POINTS_REWARD_CLAIM_SIGNATURE_TTL_MS"), MIN_CLAIM_SIGNATURE_TTL_MS,
                       MAX_CLAIM_SIGNATURE_TTL_MS, DEFAULT_CLAIM_SIGNATURE_TTL_MS))
    return LeaderboardRewardsConfig(
        season_id=season_id,
        total_supply_crx=total_supply,
        leaderboard_rewards_pct=pct,
        leaderboard_rewards_total_crx=round6(total_supply * pct),
        season_allocations_crx=allocations,
        season_reward_crx=_season_allocation(season_id, allocations, env.get("POINTS_SEASON_REWARD_CRX"),
                                             env.get("POINTS_SEASON_INDEX")),
        top_n=int(clamp(env.get("POINTS_REWARDS_TOP_N"), 1, 1000, 100)),
        excluded_addresses=_parse_address_list(env.get("POINTS_REWARDS_EXCLUDED_ADDRESSES")),
        season_end_ms=season_end_ms,
        finalization_window_hours=finalization_window_hours,
        claim_opens_at_ms=(parse_time_ms(_pick(env, "POINTS_REWARDS_CLAIM_OPENS_AT"))
                           or _default_claim_opens_at(season_end_ms, finalization_window_hours)),
        claim_signature_ttl_ms=ttl_ms,
        max_future_skew_ms=_max_future_skew_ms(env, ttl_ms),
    )
