"""
Identity Provisioner — hand out N worker wallets, minting only the shortfall.

Reuse first: whatever the snapshots already know about is returned before
anything new is created. New keys are only handed out after the snapshot
that contains them is on disk — a key that was never saved must never be
funded.
"""

import logging
import time
from typing import Optional

from .events import EventBus
from .identity import Identity, Snapshot, mint_identity
from .reconcile import Reconciler

logger = logging.getLogger("swarm.provisioner")


class IdentityProvisioner:
    def __init__(self, store, events: Optional[EventBus] = None):
        self.store = store
        self.reconciler = Reconciler(store)
        self.events = events

    def all_workers(self) -> list[Identity]:
        return self.reconciler.current().workers

    def ensure(self, count: int) -> list[Identity]:
        """
        Return `count` workers in reconciled order (not creation order).

        Raises StoreWriteError if new identities had to be minted and the
        snapshot holding them could not be written. Nothing minted in that
        call is returned or kept.
        """
        if count < 0:
            raise ValueError(f"worker count must be >= 0, got {count}")

        current = self.reconciler.current()
        existing = current.workers
        if len(existing) >= count:
            return existing[:count]

        shortfall = count - len(existing)
        minted = [mint_identity(slot=len(existing) + i) for i in range(shortfall)]

        # Each snapshot carries the full worker set
        location = self.store.append(Snapshot(
            created_at=time.time(),
            owner=current.owner,
            workers=tuple(existing) + tuple(minted),
        ))
        logger.info(f"Minted {shortfall} workers ({len(existing)} existing) → {location}")

        workers = (list(existing) + minted)[:count]
        if self.events:
            self.events.workers([w.public_key for w in workers])
        return workers
