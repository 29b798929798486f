from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskauth.logging import get_logger

logger = get_logger(__name__)

_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    """Hash with argon2id. Deliberately slow; call through asyncio.to_thread."""
    return _hasher.hash(password)


def verify_password(stored_hash: Optional[str], password: str) -> bool:
    if not is_usable_password(stored_hash):
        return False
    try:
        return _hasher.verify(stored_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError) as exc:
        logger.warning("password_hash_unusable", error=str(exc))
        return False


UNUSABLE_PASSWORD_PREFIX = "!"


def make_unusable_password() -> str:
    """Placeholder stored for federated accounts; no password ever matches it."""
    return UNUSABLE_PASSWORD_PREFIX + secrets.token_hex(24)


def is_usable_password(stored_hash: Optional[str]) -> bool:
    return bool(stored_hash) and not stored_hash.startswith(UNUSABLE_PASSWORD_PREFIX)
