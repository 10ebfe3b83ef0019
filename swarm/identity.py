"""
Identity & Snapshot types.

An Identity is one keypair: a worker wallet or the owner. A Snapshot is
an immutable record of the owner + worker set at the moment it was
written. Snapshots are only ever appended, never edited.
"""

import re
import time
from dataclasses import dataclass, field, replace
from typing import Optional

from eth_account import Account

SCHEMA_VERSION = 2
ORIGIN_TAG = "swarm-cycle"

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class InvalidCredentialError(ValueError):
    """Owner credential is structurally invalid (checked before any network call)."""
    pass


@dataclass(frozen=True)
class Identity:
    public_key: str
    secret: str = field(repr=False)
    created_at: float = 0.0
    slot: Optional[int] = None
    placeholder: bool = False
    # Provenance, set by the reconciler
    source_snapshot: str = ""
    source_timestamp: float = 0.0

    @property
    def short(self) -> str:
        return self.public_key[:10]

    def with_provenance(self, source_snapshot: str, source_timestamp: float) -> "Identity":
        return replace(self, source_snapshot=source_snapshot, source_timestamp=source_timestamp)

    def to_record(self) -> dict:
        record = {
            "public_key": self.public_key,
            "secret": self.secret,
            "created_at": self.created_at,
        }
        if self.slot is not None:
            record["slot"] = self.slot
        return record

    def to_public_dict(self) -> dict:
        """For API responses. NEVER includes the secret."""
        return {
            "public_key": self.public_key,
            "created_at": self.created_at,
            "slot": self.slot,
            "placeholder": self.placeholder,
            "source_snapshot": self.source_snapshot,
            "source_timestamp": self.source_timestamp,
        }


@dataclass(frozen=True)
class Snapshot:
    created_at: float
    workers: tuple[Identity, ...] = ()
    owner: Optional[Identity] = None
    schema_version: int = SCHEMA_VERSION
    origin: str = ORIGIN_TAG
    location: str = ""              # set by the store on read/append

    @property
    def total_identities(self) -> int:
        return len(self.workers) + (1 if self.owner and not self.owner.placeholder else 0)


def mint_identity(slot: int) -> Identity:
    """Fresh keypair. The private key only ever leaves here inside a Snapshot."""
    account = Account.create()
    return Identity(
        public_key=account.address,
        secret=account.key.hex(),
        created_at=time.time(),
        slot=slot,
    )


def is_valid_private_key(key: str) -> bool:
    return bool(key) and bool(_PRIVATE_KEY_RE.match(key.strip()))


def identity_from_key(private_key: str) -> Identity:
    """
    Build an Identity from a raw private key (the owner credential).

    Raises InvalidCredentialError on anything that isn't 32 bytes of hex,
    so callers can reject bad input before touching the network.
    """
    if not is_valid_private_key(private_key):
        raise InvalidCredentialError("Invalid owner private key")
    key = private_key.strip()
    try:
        account = Account.from_key(key)
    except Exception as e:
        raise InvalidCredentialError(f"Invalid owner private key: {type(e).__name__}") from e
    return Identity(public_key=account.address, secret=key, created_at=time.time())
