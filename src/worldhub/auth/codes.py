"""Anonymous access code generation and hashing.

Codes are 8 characters drawn from a 32-symbol alphabet that leaves out
characters easily confused when read aloud or handwritten (0/O, 1/I).
They are generated server-side with a cryptographic random source and only
their keyed hash is ever stored.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8


def generate_code() -> str:
    """Generate a cryptographically random 8-character access code."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str) -> str:
    """Normalize a code for lookup: strip whitespace and dashes, uppercase."""
    return code.strip().replace("-", "").replace(" ", "").upper()


def is_well_formed(code: str) -> bool:
    return len(code) == CODE_LENGTH and all(c in CODE_ALPHABET for c in code)


def hash_code(code: str, secret: str) -> str:
    """Keyed one-way hash of a normalized code, usable as an index key."""
    return hmac.new(secret.encode(), normalize_code(code).encode(), hashlib.sha256).hexdigest()
