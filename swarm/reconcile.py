"""
Reconciler — fold every snapshot ever written into one worker set.

Union, not replace: a worker that a later snapshot forgot is still a
worker (its funds still need sweeping). When a public key shows up in
several snapshots, the copy from the newest snapshot wins and the rest
are dropped. Owners and workers are deduplicated separately.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from .identity import Identity, Snapshot

logger = logging.getLogger("swarm.reconcile")

# Stand-in for snapshots written before the owner was recorded.
# Never selected as the authoritative owner; never funds anything.
PLACEHOLDER_OWNER_KEY = "0x0000000000000000000000000000000000000000"
PLACEHOLDER_OWNER_SECRET = "REPLACE_WITH_OWNER_PRIVATE_KEY"


@dataclass
class ReconciledSet:
    owner: Optional[Identity] = None
    owners: list[Identity] = field(default_factory=list)
    workers: list[Identity] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)   # keys seen with differing secrets

    @property
    def worker_keys(self) -> list[str]:
        return [w.public_key for w in self.workers]


def placeholder_owner(created_at: float) -> Identity:
    return Identity(
        public_key=PLACEHOLDER_OWNER_KEY,
        secret=PLACEHOLDER_OWNER_SECRET,
        created_at=created_at,
        placeholder=True,
    )


def normalize_snapshot(snapshot: Snapshot) -> Snapshot:
    """Fill what older shapes left out: owner placeholder, identity timestamps."""
    ts = snapshot.created_at

    def _fill(identity: Identity) -> Identity:
        return identity if identity.created_at else replace(identity, created_at=ts)

    owner = _fill(snapshot.owner) if snapshot.owner else None
    if owner is None and snapshot.workers:
        name = snapshot.location or "<memory>"
        logger.warning(f"Snapshot {name} has no owner recorded — using placeholder")
        owner = placeholder_owner(ts)

    return replace(snapshot, owner=owner, workers=tuple(_fill(w) for w in snapshot.workers))


def merge(snapshots: Iterable[Snapshot]) -> ReconciledSet:
    """
    Newest-wins dedup over all snapshots.

    Input order doesn't matter: snapshots are re-sorted newest first
    (created_at, then location, both descending) so the first occurrence
    of each key is the one from the newest snapshot.
    """
    ordered = sorted(
        (normalize_snapshot(s) for s in snapshots),
        key=lambda s: (s.created_at, s.location),
        reverse=True,
    )

    result = ReconciledSet()
    seen_workers: dict[str, Identity] = {}
    seen_owners: dict[str, Identity] = {}

    def _keep(identity: Identity, snap: Snapshot, seen: dict[str, Identity], out: list[Identity]):
        kept = seen.get(identity.public_key)
        if kept is None:
            tagged = identity.with_provenance(snap.location, snap.created_at)
            seen[identity.public_key] = tagged
            out.append(tagged)
        elif kept.secret != identity.secret and identity.public_key not in result.conflicts:
            result.conflicts.append(identity.public_key)
            logger.warning(
                f"Conflicting secret for {identity.short}... — keeping copy from "
                f"{kept.source_snapshot or '<memory>'}, ignoring {snap.location or '<memory>'}"
            )

    for snap in ordered:
        if snap.owner is not None:
            _keep(snap.owner, snap, seen_owners, result.owners)
        for worker in snap.workers:
            _keep(worker, snap, seen_workers, result.workers)

    result.owner = next((o for o in result.owners if not o.placeholder), None)
    return result


class Reconciler:
    """Binds merge() to a store so callers can just ask for the current set."""

    def __init__(self, store):
        self.store = store

    def current(self) -> ReconciledSet:
        snapshots = self.store.list_all()
        merged = merge(snapshots)
        logger.debug(
            f"Reconciled {len(snapshots)} snapshots → {len(merged.workers)} workers, "
            f"{len(merged.owners)} owners"
        )
        return merged
