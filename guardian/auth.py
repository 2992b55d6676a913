"""
Control API request authentication.

Three proofs are accepted, checked in order (first match wins):

1. Query token: ``?token=<secret>`` (or ``?k=<secret>``), used by the
   mobile page links and forms.
2. Bearer token: ``Authorization: Bearer <secret>``.
3. Signed request: ``x-guardian-ts``, ``x-guardian-nonce`` and
   ``x-guardian-signature`` headers carrying an HMAC-SHA256 over
   ``METHOD\\nPATH\\nTIMESTAMP\\nNONCE\\nBODY``. Timestamps must be within
   the allowed clock skew and nonces are single-use until they expire.
"""

import hashlib
import hmac
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

TIMESTAMP_HEADER = "x-guardian-ts"
NONCE_HEADER = "x-guardian-nonce"
SIGNATURE_HEADER = "x-guardian-signature"
SIGNATURE_PREFIX = "sha256="

MISSING_AUTH_REASON = (
    "Missing auth. Provide ?token=<secret>, Authorization: Bearer <secret>, "
    "or x-guardian-ts/x-guardian-nonce/x-guardian-signature."
)


class AuthMode(Enum):
    QUERY = "query"
    BEARER = "bearer"
    HMAC = "hmac"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a verification: a mode on success, a reason on failure."""

    mode: Optional[AuthMode] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.mode is not None

    @classmethod
    def accepted(cls, mode: AuthMode) -> "AuthResult":
        return cls(mode=mode)

    @classmethod
    def rejected(cls, reason: str) -> "AuthResult":
        return cls(reason=reason)


class NonceStore:
    """Nonces seen on signed requests, each with an expiry timestamp."""

    def __init__(self):
        self._expirations: dict[str, int] = {}
        self._lock = threading.Lock()

    def prune(self, now_ms: int):
        with self._lock:
            expired = [nonce for nonce, expiry in self._expirations.items() if expiry <= now_ms]
            for nonce in expired:
                del self._expirations[nonce]

    def is_replay(self, nonce: str, now_ms: int) -> bool:
        with self._lock:
            expiry = self._expirations.get(nonce)
        return expiry is not None and expiry > now_ms

    def claim(self, nonce: str, now_ms: int, expires_at_ms: int) -> bool:
        """Record a nonce unless it is already live. Returns False on replay."""
        with self._lock:
            expiry = self._expirations.get(nonce)
            if expiry is not None and expiry > now_ms:
                return False
            self._expirations[nonce] = expires_at_ms
            return True

    def __contains__(self, nonce: str) -> bool:
        with self._lock:
            return nonce in self._expirations

    def __len__(self) -> int:
        with self._lock:
            return len(self._expirations)


def build_signature_payload(method: str, path: str, timestamp: str, nonce: str, body: str) -> str:
    return f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{body}"


def compute_signature(secret: str, payload: str) -> str:
    """Hex HMAC-SHA256 of the payload keyed by the control secret."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def timestamp_to_ms(raw: str) -> Optional[int]:
    """Interpret a timestamp header as milliseconds (> 1e12) or seconds."""
    if not raw.strip():
        return None
    try:
        numeric = float(raw)
    except ValueError:
        return None
    if numeric != numeric or numeric in (float("inf"), float("-inf")):
        return None
    return int(numeric) if numeric > 1e12 else int(numeric * 1000)


def verify_request(
    method: str,
    path: str,
    body: str,
    headers: Mapping[str, str],
    query_token: Optional[str],
    secret: str,
    now_ms: int,
    nonces: NonceStore,
    max_skew_ms: int,
    nonce_ttl_ms: int,
) -> AuthResult:
    """
    Verify a control request against the shared secret.

    `headers` must be keyed by lowercase header name. On an accepted signed
    request the nonce is recorded so it cannot be replayed until it expires.
    """
    if query_token and hmac.compare_digest(query_token.encode("utf-8"), secret.encode("utf-8")):
        return AuthResult.accepted(AuthMode.QUERY)

    bearer = parse_bearer_token(headers.get("authorization"))
    if bearer and hmac.compare_digest(bearer.encode("utf-8"), secret.encode("utf-8")):
        return AuthResult.accepted(AuthMode.BEARER)

    timestamp_raw = (headers.get(TIMESTAMP_HEADER) or "").strip()
    nonce = (headers.get(NONCE_HEADER) or "").strip()
    signature_raw = (headers.get(SIGNATURE_HEADER) or "").strip()
    if not timestamp_raw or not nonce or not signature_raw:
        return AuthResult.rejected(MISSING_AUTH_REASON)

    timestamp_ms = timestamp_to_ms(timestamp_raw)
    if timestamp_ms is None:
        return AuthResult.rejected(f"Invalid {TIMESTAMP_HEADER} header.")
    if abs(now_ms - timestamp_ms) > max_skew_ms:
        return AuthResult.rejected("Request timestamp is outside allowed skew window.")

    nonces.prune(now_ms)
    if nonces.is_replay(nonce, now_ms):
        return AuthResult.rejected("Nonce already used (replay detected).")

    payload = build_signature_payload(method, path, timestamp_raw, nonce, body)
    expected = compute_signature(secret, payload)
    provided = signature_raw
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    if len(provided) != len(expected):
        return AuthResult.rejected("Invalid signature length.")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return AuthResult.rejected("Invalid request signature.")

    # A concurrent request may have claimed the nonce since the replay check
    if not nonces.claim(nonce, now_ms, now_ms + nonce_ttl_ms):
        return AuthResult.rejected("Nonce already used (replay detected).")
    return AuthResult.accepted(AuthMode.HMAC)
