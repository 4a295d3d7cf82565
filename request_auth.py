import re
import secrets as _secrets

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def _normalize_secret(value) -> str:
    return str(value or "").strip()


def bearer_token(req) -> str:
    raw = (req.headers.get("Authorization") or "").strip()
    if not raw:
        return ""
    m = _BEARER_RE.match(raw)
    if m:
        return _normalize_secret(m.group(1))
    return _normalize_secret(raw)


def authorize_bearer_request(req, secrets) -> bool:
    """True if the request carries one of `secrets` (a str or a list of str).

    No configured secret means the endpoint is open.
    """
    if isinstance(secrets, (list, tuple)):
        candidates = secrets
    else:
        candidates = [secrets]
    active = [s for s in (_normalize_secret(c) for c in candidates) if s]
    if not active:
        return True
    provided = bearer_token(req)
    if not provided:
        return False
    return any(_secrets.compare_digest(provided.encode(), s.encode()) for s in active)
