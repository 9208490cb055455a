"""
Secret generation and verification for share links.

Two secrets travel in a public share URL:

    {base}/s/{short_code}?k={share_key}

- share_key: 256 bits from the OS CSPRNG, hex encoded (64 lowercase chars).
  This is the actual credential.
- short_code: 8 characters a person can read aloud or type. It only locates
  the share; on its own it grants nothing.

Both formats are checked before any storage lookup so malformed input never
costs a round trip.
"""

import hmac
import re
import secrets

SHARE_KEY_BYTES = 32
SHARE_KEY_LENGTH = SHARE_KEY_BYTES * 2
SHORT_CODE_LENGTH = 8

# No 0/O, 1/I/l, and no lowercase i/o either.
SHORT_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789"

_SHARE_KEY_RE = re.compile(r"[0-9a-f]{%d}" % SHARE_KEY_LENGTH)
_SHORT_CODE_CHARS = frozenset(SHORT_CODE_ALPHABET)


def generate_share_key() -> str:
    """Return a fresh 64-char lowercase hex share key."""
    return secrets.token_hex(SHARE_KEY_BYTES)


def generate_short_code() -> str:
    """Return a fresh 8-char short code drawn uniformly from SHORT_CODE_ALPHABET."""
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))


def is_valid_share_key(key: str) -> bool:
    return isinstance(key, str) and _SHARE_KEY_RE.fullmatch(key) is not None


def is_valid_short_code(code: str) -> bool:
    return (
        isinstance(code, str)
        and len(code) == SHORT_CODE_LENGTH
        and all(ch in _SHORT_CODE_CHARS for ch in code)
    )


def secure_compare(a: str, b: str) -> bool:
    """
    Constant-time string equality.

    Only the length difference is observable through timing; for equal
    lengths the time does not depend on where the first mismatch is.
    """
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
