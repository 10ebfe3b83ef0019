"""
Snapshot record format — dict <-> Snapshot, including every legacy shape.

Shapes accepted on read:
  schema 2   {"schema_version": 2, "created_at": s, "owner": {...}|null, "workers": [...]}
  legacy v1  {"timestamp": ms, "mainWallet": {...}, "subWallets": [...], "metadata": {...}}
  legacy v0  v1 without mainWallet; ISO or missing timestamps; no "index"

Only schema 2 is ever written.

Secret material can be encrypted at rest with Fernet; the key is derived
from a passphrase via HMAC-SHA256 (same derivation as the platform key
manager used for API keys). Plaintext secrets are always readable so
old files never become unrecoverable.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from .identity import Identity, Snapshot, SCHEMA_VERSION, ORIGIN_TAG

logger = logging.getLogger("swarm.snapshot_format")

ENCRYPTION_TAG = "fernet"
_MS_CUTOFF = 1e11   # anything larger is an epoch-milliseconds value


class SnapshotFormatError(ValueError):
    """A record can't be turned into a Snapshot."""
    pass


class SecretCodec:
    """Encrypts identity secrets when a passphrase is configured."""

    def __init__(self, passphrase: str = ""):
        self._fernet: Optional[Fernet] = None
        if passphrase:
            derived = hmac.new(
                passphrase.encode(),
                b"swarm-snapshot-encryption",
                hashlib.sha256,
            ).digest()
            self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encode(self, secret: str) -> tuple[str, Optional[str]]:
        if not self._fernet:
            return secret, None
        return self._fernet.encrypt(secret.encode()).decode(), ENCRYPTION_TAG

    def decode(self, value: str, tag: Optional[str]) -> str:
        if not tag:
            return value
        if tag != ENCRYPTION_TAG:
            raise SnapshotFormatError(f"unknown secret encoding '{tag}'")
        if not self._fernet:
            raise SnapshotFormatError("encrypted secret but no SNAPSHOT_PASSPHRASE configured")
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise SnapshotFormatError("secret failed to decrypt (wrong passphrase?)") from e


def parse_timestamp(value: Any) -> Optional[float]:
    """Epoch seconds from seconds, milliseconds, or an ISO-8601 string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value / 1000.0 if value > _MS_CUTOFF else float(value)
    if isinstance(value, str):
        try:
            return parse_timestamp(float(value))
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


def _identity_from_record(raw: Any, codec: SecretCodec, slot: Optional[int] = None) -> Identity:
    if not isinstance(raw, dict):
        raise SnapshotFormatError(f"identity is {type(raw).__name__}, expected object")
    public_key = raw.get("public_key") or raw.get("publicKey")
    secret = raw.get("secret") or raw.get("privateKey")
    if not public_key or not isinstance(public_key, str):
        raise SnapshotFormatError("identity without public key")
    if not secret or not isinstance(secret, str):
        raise SnapshotFormatError(f"identity {public_key[:10]} without secret material")

    raw_slot = raw.get("slot", raw.get("index"))
    if raw_slot is None:
        raw_slot = slot
    return Identity(
        public_key=public_key,
        secret=codec.decode(secret, raw.get("secret_enc")),
        created_at=parse_timestamp(raw.get("created_at", raw.get("createdAt"))) or 0.0,
        slot=int(raw_slot) if raw_slot is not None else None,
    )


def decode_snapshot(
    raw: Any,
    location: str = "",
    codec: Optional[SecretCodec] = None,
    fallback_created_at: float = 0.0,
) -> Snapshot:
    """
    Parse any supported shape. Identity timestamps that are missing stay 0.0;
    the reconciler fills them in from the snapshot's own creation time.
    """
    codec = codec or SecretCodec()
    if not isinstance(raw, dict):
        raise SnapshotFormatError(f"snapshot is {type(raw).__name__}, expected object")

    if "schema_version" in raw:
        created_at = parse_timestamp(raw.get("created_at"))
        owner_raw = raw.get("owner")
        workers_raw = raw.get("workers") or []
        schema_version = int(raw["schema_version"])
        origin = raw.get("origin", ORIGIN_TAG)
    else:
        created_at = parse_timestamp(raw.get("timestamp")) or parse_timestamp(raw.get("createdAt"))
        owner_raw = raw.get("mainWallet")
        workers_raw = raw.get("subWallets") or []
        metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
        schema_version = 1 if metadata else 0
        origin = metadata.get("createdBy", "legacy")

    if not isinstance(workers_raw, list):
        raise SnapshotFormatError("workers is not a list")

    owner = _identity_from_record(owner_raw, codec) if owner_raw else None
    workers = tuple(_identity_from_record(w, codec, slot=i) for i, w in enumerate(workers_raw))

    return Snapshot(
        created_at=created_at if created_at is not None else fallback_created_at,
        workers=workers,
        owner=owner,
        schema_version=schema_version,
        origin=origin,
        location=location,
    )


def encode_snapshot(snapshot: Snapshot, codec: Optional[SecretCodec] = None) -> dict:
    codec = codec or SecretCodec()

    def _record(identity: Identity) -> dict:
        record = identity.to_record()
        record["secret"], tag = codec.encode(identity.secret)
        if tag:
            record["secret_enc"] = tag
        return record

    owner = snapshot.owner if snapshot.owner and not snapshot.owner.placeholder else None
    return {
        "schema_version": SCHEMA_VERSION,
        "origin": snapshot.origin or ORIGIN_TAG,
        "created_at": snapshot.created_at,
        "owner": _record(owner) if owner else None,
        "workers": [_record(w) for w in snapshot.workers],
        "total_identities": snapshot.total_identities,
    }
