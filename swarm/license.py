"""
License Gate — time-boxed access key checked before every start().

Key format:  VB-<base64 payload>.<base64 HMAC-SHA256(payload b64)>
Payload:     {"exp": <epoch ms>, ...}

No passwords. The signature proves we issued it; exp bounds it.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger("swarm.license")

KEY_PREFIX = "VB-"


@dataclass
class LicenseValidation:
    valid: bool
    error: str = ""
    expires_at: Optional[float] = None      # epoch seconds
    remaining: str = ""                      # "5h 12m"
    payload: dict = field(default_factory=dict)


def _sign(secret: str, payload_b64: str) -> str:
    digest = hmac.new(secret.encode(), payload_b64.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def create_license_key(secret: str, ttl_seconds: int, **claims) -> str:
    """Issue a key valid for ttl_seconds from now."""
    payload = dict(claims)
    payload["exp"] = int((time.time() + ttl_seconds) * 1000)
    payload_b64 = base64.b64encode(json.dumps(payload).encode()).decode()
    return f"{KEY_PREFIX}{payload_b64}.{_sign(secret, payload_b64)}"


class LicenseGate:
    def __init__(self, secret: str):
        if not secret:
            logger.warning("No LICENSE_SECRET configured — every license key will be rejected")
        self._secret = secret

    def validate(self, token: str) -> LicenseValidation:
        if not self._secret:
            return LicenseValidation(valid=False, error="License validation not configured")
        if not token or not token.startswith(KEY_PREFIX):
            return LicenseValidation(valid=False, error="Invalid license key format")

        payload_b64, _, signature = token[len(KEY_PREFIX):].partition(".")
        if not payload_b64 or not signature:
            return LicenseValidation(valid=False, error="Malformed license key")

        if not hmac.compare_digest(signature, _sign(self._secret, payload_b64)):
            return LicenseValidation(valid=False, error="Invalid license key signature")

        try:
            payload = json.loads(base64.b64decode(payload_b64))
            exp_ms = float(payload["exp"])
        except Exception:
            return LicenseValidation(valid=False, error="Failed to validate license key")

        now_ms = time.time() * 1000
        if now_ms > exp_ms:
            expired = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(exp_ms / 1000))
            return LicenseValidation(valid=False, error=f"License key expired on {expired}",
                                     expires_at=exp_ms / 1000)

        remaining_ms = exp_ms - now_ms
        hours = int(remaining_ms // 3_600_000)
        minutes = int((remaining_ms % 3_600_000) // 60_000)
        return LicenseValidation(
            valid=True,
            expires_at=exp_ms / 1000,
            remaining=f"{hours}h {minutes}m",
            payload=payload,
        )
