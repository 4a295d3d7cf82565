import json

import pytest

from conftest import DAY_MS, NOW_MS
from coerce import floor6, round6
from rewards_config import WhitelistRewardsConfig
from whitelist_rewards import (
    BASE_SALT,
    BONUS_SALT,
    apply_budget_cap,
    budget_scales,
    build_summary,
    compute_claim_payout,
    deterministic_in_range,
    evaluate_wallet,
    fnv1a32,
    get_claim_state,
    parse_stored_reward_row,
    preview_row,
    scan_whitelist_wallets,
)

WALLET = "0x" + "ab" * 20


def make_config(**overrides):
    params = dict(season_id="season-1", claim_opens_at_ms=NOW_MS - DAY_MS)
    params.update(overrides)
    return WhitelistRewardsConfig(**params)


def presale(ts_ms):
    return json.dumps({"ts": ts_ms, "token": "ETH"})


def vesting_row(start_at, **overrides):
    row = {
        "address": WALLET,
        "totalRewardCrx": 100.0,
        "immediateClaimableCrx": 30.0,
        "streamedCrx": 70.0,
        "streamStartAt": start_at,
        "streamDays": 45,
        "immediateClaimedCrx": 0.0,
        "streamedClaimedCrx": 0.0,
    }
    row.update(overrides)
    return row


# ============================================================================
# Hashing
# ============================================================================

def test_fnv1a32_known_vectors():
    assert fnv1a32("") == 0x811C9DC5
    assert fnv1a32("a") == 0xE40C292C


def test_deterministic_in_range_is_stable_and_bounded():
    first = deterministic_in_range(WALLET, 20, 50, BASE_SALT)
    for _ in range(5):
        assert deterministic_in_range(WALLET, 20, 50, BASE_SALT) == first
    assert 20 <= first <= 50


def test_deterministic_in_range_ignores_address_case():
    upper = "0x" + "AB" * 20
    assert deterministic_in_range(upper, 20, 50, BASE_SALT) == deterministic_in_range(WALLET, 20, 50, BASE_SALT)


def test_salts_give_independent_draws():
    base_ratio = (deterministic_in_range(WALLET, 0, 1, BASE_SALT))
    bonus_ratio = (deterministic_in_range(WALLET, 0, 1, BONUS_SALT))
    assert base_ratio != bonus_ratio


def test_deterministic_in_range_degenerate_bounds():
    assert deterministic_in_range(WALLET, 40, 40, BASE_SALT) == 40
    assert deterministic_in_range(WALLET, 50, 20, BASE_SALT) == 50
    assert deterministic_in_range(WALLET, float("nan"), 20, BASE_SALT) == 0.0


# ============================================================================
# Evaluation
# ============================================================================

def test_unqualified_wallet_gets_base_only():
    config = make_config()
    row = evaluate_wallet(WALLET, presale(NOW_MS - DAY_MS), None, None, config, NOW_MS)
    assert row["activationQualified"] is False
    assert row["activatedAt"] is None
    assert row["bonusRewardRaw"] == 0.0
    assert 20 <= row["baseRewardRaw"] <= 50

    capped = apply_budget_cap([row], config)[0]
    assert capped["activationBonusCrx"] == 0
    assert capped["totalRewardCrx"] == capped["baseRewardCrx"]
    assert capped["immediateClaimableCrx"] == pytest.approx(round6(capped["totalRewardCrx"] * 0.3))
    assert capped["streamStartAt"] == NOW_MS - DAY_MS


def test_swap_volume_inside_window_activates():
    config = make_config()
    points = {"volumeUsd": "150", "lpUsd": "0"}
    row = evaluate_wallet(WALLET, presale(NOW_MS - DAY_MS), points, None, config, NOW_MS)
    assert row["activationQualified"] is True
    assert row["activatedAt"] == NOW_MS
    assert 50 <= row["bonusRewardRaw"] <= 150


def test_micro_lp_needs_a_swap_too():
    config = make_config()
    lp_only = evaluate_wallet(WALLET, presale(NOW_MS - DAY_MS), {"volumeUsd": "0", "lpUsd": "500"},
                              None, config, NOW_MS)
    assert lp_only["activationQualified"] is False

    small_swap = evaluate_wallet(WALLET, presale(NOW_MS - DAY_MS), {"volumeUsd": "5", "lpUsd": "500"},
                                 None, config, NOW_MS)
    assert small_swap["activationQualified"] is True


def test_activity_after_window_does_not_activate():
    config = make_config()
    row = evaluate_wallet(WALLET, presale(NOW_MS - 20 * DAY_MS), {"volumeUsd": "1000"}, None, config, NOW_MS)
    assert row["withinWindow"] is False
    assert row["activationQualified"] is False


def test_activation_is_permanent():
    config = make_config()
    whitelisted_at = NOW_MS - DAY_MS
    first = evaluate_wallet(WALLET, presale(whitelisted_at), {"volumeUsd": "500"}, None, config, NOW_MS)
    assert first["activatedAt"] == NOW_MS

    later = NOW_MS + 30 * DAY_MS
    stored = {"activatedAt": str(first["activatedAt"])}
    second = evaluate_wallet(WALLET, presale(whitelisted_at), {"volumeUsd": "0"}, stored, config, later)
    assert second["withinWindow"] is False
    assert second["activatedAt"] == first["activatedAt"]
    assert second["bonusRewardRaw"] == first["bonusRewardRaw"]


def test_missing_presale_timestamp_falls_back_to_stored_row():
    config = make_config()
    stored = {"whitelistedAt": str(NOW_MS - 3 * DAY_MS)}
    row = evaluate_wallet(WALLET, "not json", None, stored, config, NOW_MS)
    assert row["whitelistedAt"] == NOW_MS - 3 * DAY_MS


def test_existing_claim_fields_are_read_back():
    config = make_config()
    stored = {"immediateClaimedCrx": "12.5", "streamedClaimedCrx": "3", "claimCount": "2",
              "claimVersion": "2", "lastClaimAt": str(NOW_MS - 1000)}
    row = evaluate_wallet(WALLET, presale(NOW_MS - DAY_MS), None, stored, config, NOW_MS)
    assert row["existingImmediateClaimedCrx"] == 12.5
    assert row["existingStreamedClaimedCrx"] == 3.0
    assert row["existingClaimCount"] == 2
    assert row["existingLastClaimAt"] == NOW_MS - 1000


# ============================================================================
# Budget cap
# ============================================================================

def test_budget_scales_under_cap_pay_in_full():
    entries = [{"baseRewardRaw": 30, "bonusRewardRaw": 100}] * 3
    assert budget_scales(entries, 10_000) == (1.0, 1.0)


def test_budget_scales_bonus_takes_remainder():
    entries = [{"baseRewardRaw": 100, "bonusRewardRaw": 750}, {"baseRewardRaw": 200, "bonusRewardRaw": 750}]
    base_scale, bonus_scale = budget_scales(entries, 1000)
    assert base_scale == 1.0
    assert bonus_scale == pytest.approx(700 / 1500)


def test_budget_scales_base_over_cap_zeroes_bonus():
    entries = [{"baseRewardRaw": 600, "bonusRewardRaw": 50}, {"baseRewardRaw": 600, "bonusRewardRaw": 50}]
    base_scale, bonus_scale = budget_scales(entries, 1000)
    assert base_scale == pytest.approx(1000 / 1200)
    assert bonus_scale == 0.0


def test_budget_scales_zero_cap():
    assert budget_scales([{"baseRewardRaw": 10, "bonusRewardRaw": 10}], 0) == (0.0, 0.0)


def test_budget_conservation_with_bonus():
    config = make_config(budget_cap_crx=3000)
    entries = [
        {"wallet": f"0x{i:040x}", "baseRewardRaw": 20 + i % 31, "bonusRewardRaw": 50 + (i * 7) % 101,
         "activatedAt": NOW_MS, "whitelistedAt": NOW_MS - DAY_MS}
        for i in range(40)
    ]
    capped = apply_budget_cap(entries, config)
    total = round6(sum(r["baseRewardCrx"] + r["activationBonusCrx"] for r in capped))
    assert capped[0]["bonusScale"] < 1
    assert total <= 3000
    assert 3000 - total <= len(capped) * 1e-6


def test_scaled_amounts_round_down_under_tight_cap():
    config = make_config(budget_cap_crx=2)
    entries = [
        {"wallet": f"0x{i:040x}", "baseRewardRaw": 10.0, "bonusRewardRaw": 0.0,
         "activatedAt": None, "whitelistedAt": NOW_MS}
        for i in range(3)
    ]
    capped = apply_budget_cap(entries, config)
    assert [row["baseRewardCrx"] for row in capped] == [0.666666] * 3
    total = round6(sum(row["totalRewardCrx"] for row in capped))
    assert total == 1.999998
    assert total <= config.budget_cap_crx


def test_large_population_scales_base_exactly():
    config = make_config(budget_cap_crx=10_000)
    entries = [
        {"wallet": f"0x{i:040x}", "baseRewardRaw": 40 if i % 2 else 20, "bonusRewardRaw": 0.0,
         "activatedAt": None, "whitelistedAt": NOW_MS}
        for i in range(10_000)
    ]
    base_total = sum(e["baseRewardRaw"] for e in entries)
    assert base_total == 300_000

    capped = apply_budget_cap(entries, config)
    scale = 10_000 / 300_000
    for raw, row in zip(entries, capped):
        assert row["baseRewardCrx"] == floor6(raw["baseRewardRaw"] * scale)
        assert row["activationBonusCrx"] == 0
    total = round6(sum(row["baseRewardCrx"] for row in capped))
    assert total <= 10_000
    assert 10_000 - total <= len(capped) * 1e-6


def test_build_summary_totals():
    config = make_config()
    entries = apply_budget_cap([
        evaluate_wallet(f"0x{i:040x}", presale(NOW_MS - DAY_MS), {"volumeUsd": "200"} if i % 2 else None,
                        None, config, NOW_MS)
        for i in range(6)
    ], config)
    summary = build_summary(entries, config, NOW_MS)
    assert summary["walletCount"] == 6
    assert summary["activatedCount"] == 3
    assert summary["totalAllocatedCrx"] == pytest.approx(
        summary["baseAllocatedCrx"] + summary["bonusAllocatedCrx"], abs=1e-6)
    assert summary["updatedAt"] == NOW_MS


# ============================================================================
# Vesting and payouts
# ============================================================================

def test_vesting_starts_at_zero_and_ends_full():
    config = make_config()
    start = NOW_MS
    row = vesting_row(start)
    at_start = get_claim_state(row, config, start)
    at_end = get_claim_state(row, config, start + 45 * DAY_MS)
    after_end = get_claim_state(row, config, start + 90 * DAY_MS)
    assert at_start["vestedStreamedCrx"] == 0
    assert at_end["vestedStreamedCrx"] == 70.0
    assert after_end["vestedStreamedCrx"] == 70.0
    assert at_end["streamEndsAt"] == start + 45 * DAY_MS


def test_vesting_is_monotonic():
    config = make_config()
    row = vesting_row(NOW_MS)
    previous = -1.0
    for hours in range(0, 45 * 24 + 1, 37):
        vested = get_claim_state(row, config, NOW_MS + hours * 3_600_000)["vestedStreamedCrx"]
        assert vested >= previous
        previous = vested


def test_claim_closed_means_nothing_claimable():
    config = make_config(claim_opens_at_ms=NOW_MS + DAY_MS)
    state = get_claim_state(vesting_row(NOW_MS - DAY_MS), config, NOW_MS)
    assert state["claimOpen"] is False
    assert state["claimableNowCrx"] == 0.0
    assert state["immediateRemainingCrx"] == 30.0


def test_payout_drains_immediate_first():
    config = make_config()
    start = NOW_MS
    mid = start + int(22.5 * DAY_MS)
    payout = compute_claim_payout(vesting_row(start), config, mid)
    assert payout["claimImmediateCrx"] == 30.0
    assert payout["claimStreamedCrx"] == pytest.approx(35.0)
    assert payout["claimTotalCrx"] == pytest.approx(65.0)
    assert payout["nextImmediateClaimedCrx"] == 30.0
    assert payout["nextTotalClaimedCrx"] == pytest.approx(65.0)


def test_zero_claimable_payout_leaves_claimed_amounts_unchanged():
    config = make_config()
    row = vesting_row(NOW_MS, immediateClaimedCrx=30.0, streamedClaimedCrx=0.0)
    payout = compute_claim_payout(row, config, NOW_MS)
    assert payout["claimTotalCrx"] == 0
    assert payout["nextImmediateClaimedCrx"] == 30.0
    assert payout["nextStreamedClaimedCrx"] == 0.0


def test_repeated_payout_at_same_instant_pays_nothing():
    config = make_config()
    when = NOW_MS + 10 * DAY_MS
    row = vesting_row(NOW_MS)
    first = compute_claim_payout(row, config, when)
    assert first["claimTotalCrx"] > 0

    updated = dict(row, immediateClaimedCrx=first["nextImmediateClaimedCrx"],
                   streamedClaimedCrx=first["nextStreamedClaimedCrx"])
    second = compute_claim_payout(updated, config, when)
    assert second["claimTotalCrx"] == 0

    final = compute_claim_payout(updated, config, NOW_MS + 45 * DAY_MS)
    assert round6(first["claimTotalCrx"] + final["claimTotalCrx"]) == pytest.approx(100.0)


# ============================================================================
# Stored rows
# ============================================================================

def test_parse_stored_reward_row_reads_strings():
    parsed = parse_stored_reward_row({
        "address": WALLET.upper().replace("0X", "0x"),
        "whitelisted": "1",
        "activationQualified": "0",
        "activatedAt": "",
        "totalRewardCrx": "42.5",
        "claimCount": "3",
    })
    assert parsed["address"] == WALLET
    assert parsed["whitelisted"] is True
    assert parsed["activationQualified"] is False
    assert parsed["activatedAt"] is None
    assert parsed["totalRewardCrx"] == 42.5
    assert parsed["claimCount"] == 3
    assert parse_stored_reward_row({}) is None


def test_preview_row_is_pending_and_unscaled():
    config = make_config(budget_cap_crx=1)
    evaluated = evaluate_wallet(WALLET, presale(NOW_MS - DAY_MS), None, None, config, NOW_MS)
    preview = preview_row(evaluated, config, NOW_MS)
    assert preview["pending"] is True
    assert preview["baseRewardCrx"] == evaluated["baseRewardRaw"]
    assert preview["immediateClaimableCrx"] == pytest.approx(preview["totalRewardCrx"] * 0.3)


def test_scan_whitelist_wallets_pages_and_dedupes(store, fake_redis, monkeypatch):
    import whitelist_rewards
    monkeypatch.setattr(whitelist_rewards, "SCAN_BATCH_SIZE", 3)
    wallets = [f"0x{i:040x}" for i in range(10)]
    for w in wallets:
        fake_redis.set(f"presale:wallet:{w}", presale(NOW_MS))
    fake_redis.set("presale:wallet:" + wallets[0].upper().replace("0X", "0x"), presale(NOW_MS))
    fake_redis.set("unrelated:key", "x")

    assert scan_whitelist_wallets(store) == sorted(wallets)
