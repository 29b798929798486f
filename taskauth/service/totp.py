from __future__ import annotations

import base64
import hashlib
import hmac
import os
import time
from typing import Optional
from urllib.parse import quote

from taskauth.logging import get_logger

logger = get_logger(__name__)


def generate_secret() -> str:
    return base64.b32encode(os.urandom(10)).decode("utf-8").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}&algorithm=SHA256"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha256).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 1,
    interval: int = 30,
    now: Optional[float] = None,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    if not secret or not code:
        return False
    candidate = code.strip()
    if not (candidate.isascii() and candidate.isdigit()):
        return False
    ts = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, ts + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False
