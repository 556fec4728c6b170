import re

from credvault.core.exceptions import ValidationFailed

FINGERPRINT_RE = re.compile(r"^0x[0-9a-f]{64}$")
WALLET_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_fingerprint(value: str) -> str:
    """Minúsculas + validación de formato `0x` + 64 hex."""
    candidate = (value or "").strip().lower()
    if not FINGERPRINT_RE.match(candidate):
        raise ValidationFailed("Fingerprint must match ^0x[0-9a-f]{64}$")
    return candidate


def normalize_wallet(value: str) -> str:
    candidate = (value or "").strip().lower()
    if not WALLET_RE.match(candidate):
        raise ValidationFailed("Wallet key must match ^0x[0-9a-f]{40}$")
    return candidate


def is_fingerprint(value: str) -> bool:
    return bool(FINGERPRINT_RE.match((value or "").strip().lower()))
