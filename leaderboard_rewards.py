"""Points leaderboard season rewards.

The season pool is split pro-rata by points across the top-N qualifying wallets
(excluded addresses and non-positive scores never qualify). Leaderboard rewards
do not stream: the full amount is claimable once the claim window opens.
"""

from coerce import normalize_address, round6, to_number, to_ms


class PointsKeys:
    def __init__(self, season_id: str):
        self.season_id = season_id
        self.base = f"points:{season_id}"
        self.leaderboard = f"{self.base}:leaderboard"
        self.summary = f"{self.base}:summary"
        self.updated_at = f"{self.base}:updatedAt"

    def user(self, address: str) -> str:
        return f"{self.base}:user:{normalize_address(address)}"

    def reward_user(self, address: str) -> str:
        return f"{self.base}:reward:user:{normalize_address(address)}"

    def claim_lock(self, address: str) -> str:
        return f"{self.base}:claim:lock:{normalize_address(address)}"


def compute_rewards_table(entries, season_reward_crx: float, top_n: int = 100, excluded=frozenset()) -> dict:
    """address -> {rank, points, rewardCrx, sharePct} for the qualifying top-N.

    `entries` is an iterable of (address, points) pairs in any order.
    """
    qualified = []
    for address, points in entries:
        wallet = normalize_address(address)
        score = to_number(points, 0.0)
        if not wallet or wallet in excluded or score <= 0:
            continue
        qualified.append((wallet, score))
    qualified.sort(key=lambda item: (-item[1], item[0]))
    top = qualified[:max(0, int(top_n))]

    pool = max(0.0, to_number(season_reward_crx, 0.0))
    total_points = sum(score for _, score in top)
    table = {}
    for rank, (wallet, score) in enumerate(top, start=1):
        share = score / total_points if total_points > 0 else 0.0
        table[wallet] = {
            "rank": rank,
            "points": score,
            "rewardCrx": round6(pool * share),
            "sharePct": round6(share * 100),
        }
    return table


def parse_reward_claim_row(row):
    if not row or not isinstance(row, dict):
        return None
    return {
        "address": normalize_address(row.get("address")),
        "seasonId": str(row.get("seasonId") or ""),
        "totalRewardSnapshotCrx": to_number(row.get("totalRewardSnapshotCrx"), 0.0),
        "immediateClaimedCrx": to_number(row.get("immediateClaimedCrx"), 0.0),
        "streamedClaimedCrx": to_number(row.get("streamedClaimedCrx"), 0.0),
        "claimCount": int(to_number(row.get("claimCount"), 0)),
        "claimVersion": int(to_number(row.get("claimVersion"), 0)),
        "lastClaimAt": to_ms(row.get("lastClaimAt"), None),
        "updatedAt": to_ms(row.get("updatedAt"), None),
    }


def get_leaderboard_claim_state(total_reward_crx, claim_row, config, now_ms: int) -> dict:
    claim_row = claim_row or {}
    total_reward = round6(max(0.0, to_number(total_reward_crx, 0.0)))
    claim_opens_at = to_ms(config.claim_opens_at_ms, None)
    claim_open = claim_opens_at is not None and now_ms >= claim_opens_at

    immediate_claimed = round6(max(0.0, to_number(claim_row.get("immediateClaimedCrx"), 0.0)))
    streamed_claimed = round6(max(0.0, to_number(claim_row.get("streamedClaimedCrx"), 0.0)))
    total_claimed = round6(immediate_claimed + streamed_claimed)
    remaining = round6(max(0.0, total_reward - total_claimed))

    return {
        "totalRewardCrx": total_reward,
        "immediatePct": 1,
        "streamDays": 0,
        "claimOpen": claim_open,
        "claimOpensAt": claim_opens_at,
        "immediateClaimedCrx": immediate_claimed,
        "streamedClaimedCrx": streamed_claimed,
        "immediateRemainingCrx": remaining,
        "streamedRemainingCrx": 0.0,
        "claimableNowCrx": remaining if claim_open else 0.0,
        "totalClaimedCrx": total_claimed,
    }


def compute_leaderboard_claim_payout(total_reward_crx, claim_row, config, now_ms: int) -> dict:
    claim_row = claim_row or {}
    state = get_leaderboard_claim_state(total_reward_crx, claim_row, config, now_ms)
    prev_immediate = round6(to_number(claim_row.get("immediateClaimedCrx"), 0.0))
    prev_streamed = round6(to_number(claim_row.get("streamedClaimedCrx"), 0.0))
    if not state["claimOpen"] or state["claimableNowCrx"] <= 0:
        return dict(
            state,
            claimImmediateCrx=0.0,
            claimStreamedCrx=0.0,
            claimTotalCrx=0.0,
            nextImmediateClaimedCrx=prev_immediate,
            nextStreamedClaimedCrx=prev_streamed,
        )
    claim_immediate = state["claimableNowCrx"]
    return dict(
        state,
        claimImmediateCrx=claim_immediate,
        claimStreamedCrx=0.0,
        claimTotalCrx=claim_immediate,
        nextImmediateClaimedCrx=round6(prev_immediate + claim_immediate),
        nextStreamedClaimedCrx=prev_streamed,
    )
