"""Signed-claim message templates and personal_sign recovery.

The two templates differ in their first line so a whitelist signature can
never be replayed against the leaderboard claim and vice versa.
"""

from eth_account import Account
from eth_account.messages import encode_defunct

from coerce import normalize_address, to_number

WHITELIST_CLAIM_TITLE = "CurrentX Whitelist Rewards Claim"
LEADERBOARD_CLAIM_TITLE = "CurrentX Leaderboard Rewards Claim"


def _claim_message(title: str, address: str, season_id: str, issued_at: int) -> str:
    return "\n".join([
        title,
        f"Season: {season_id or ''}",
        f"Address: {normalize_address(address)}",
        f"IssuedAt: {int(issued_at)}",
        "Action: claim",
    ])


def build_whitelist_claim_message(address: str, season_id: str, issued_at: int) -> str:
    return _claim_message(WHITELIST_CLAIM_TITLE, address, season_id, issued_at)


def build_leaderboard_claim_message(address: str, season_id: str, issued_at: int) -> str:
    return _claim_message(LEADERBOARD_CLAIM_TITLE, address, season_id, issued_at)


def parse_issued_at(value):
    num = to_number(value, None)
    if num is None or num <= 0:
        return None
    return int(num)


def is_signature_expired(now_ms: int, issued_at: int, ttl_ms: int, max_future_skew_ms: int) -> bool:
    if not ttl_ms or ttl_ms <= 0:
        return True
    skew = max(0, min(int(max_future_skew_ms), int(ttl_ms)))
    if issued_at > now_ms + skew:
        return True
    return now_ms - issued_at > ttl_ms


def recover_signer(message: str, signature: str) -> str:
    """Lower-cased address that produced `signature` over `message` (EIP-191 personal_sign).

    Raises ValueError (or an eth_account error subclass) on malformed signatures.
    """
    recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    return normalize_address(recovered)
