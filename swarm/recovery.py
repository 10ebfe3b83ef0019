"""
Recovery Engine — sweep every known worker back to the owner.

"Every known" means every worker in every snapshot ever written, not the
current session's slice: a crash three restarts ago must not strand funds.

Per worker, strictly one at a time:
  1. (asset hint) sell any held token back to ETH; failure never blocks step 3
  2. wait, then re-read ETH balance — never trust an earlier read
  3. above dust → send balance - reserved fee to the owner, confirm
  4. anything throws → log, record, next worker
Fixed pause between workers: the RPC and venue rate-limit hard.

"Nothing to recover" is success. Only a malformed owner key (checked
before any network call) or an unreadable store fails the call.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import PACING, LIMITS, Pacing, Limits
from .events import EventBus, PY_LEVELS
from .identity import Identity, InvalidCredentialError, identity_from_key
from .ledger import from_wei
from .reconcile import Reconciler
from .snapshot_store import StoreReadError
from .swap import NATIVE_ASSET, SwapExecutor

logger = logging.getLogger("swarm.recovery")


@dataclass
class WorkerOutcome:
    public_key: str
    recovered: float = 0.0              # ETH sent to owner
    transaction_ids: list[str] = field(default_factory=list)
    liquidated: bool = False
    error: str = ""


@dataclass
class RecoveryResult:
    success: bool
    recovered_amount: float = 0.0
    transaction_ids: list[str] = field(default_factory=list)
    outcomes: list[WorkerOutcome] = field(default_factory=list)
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "recovered_amount": self.recovered_amount,
            "transaction_ids": list(self.transaction_ids),
            "workers_processed": len(self.outcomes),
            "workers_failed": sum(1 for o in self.outcomes if o.error),
            "error": self.error,
        }


class RecoveryEngine:
    def __init__(
        self,
        store,
        ledger,
        swapper: Optional[SwapExecutor] = None,
        events: Optional[EventBus] = None,
        pacing: Pacing = PACING,
        limits: Limits = LIMITS,
    ):
        self.reconciler = Reconciler(store)
        self.ledger = ledger
        self.swapper = swapper
        self.events = events
        self.pacing = pacing
        self.limits = limits
        self._lock = asyncio.Lock()

    def _emit(self, level: str, message: str, tx: Optional[str] = None):
        logger.log(PY_LEVELS.get(level, logging.INFO), message)
        if self.events:
            self.events.log(level, message, tx)

    async def recover_all(self, owner_key: str, asset_hint: Optional[str] = None) -> RecoveryResult:
        try:
            owner = identity_from_key(owner_key)
        except InvalidCredentialError as e:
            return RecoveryResult(success=False, error=str(e))

        async with self._lock:
            try:
                workers = self.reconciler.current().workers
            except StoreReadError as e:
                self._emit("error", f"Recovery aborted: {e}")
                return RecoveryResult(success=False, error=str(e))

            self._emit("info", f"Recovery started: {len(workers)} workers → owner {owner.short}...")
            result = RecoveryResult(success=True)

            for i, worker in enumerate(workers):
                outcome = WorkerOutcome(public_key=worker.public_key)
                result.outcomes.append(outcome)
                try:
                    await self._recover_worker(worker, owner, asset_hint, outcome, i, len(workers))
                except Exception as e:
                    outcome.error = f"{type(e).__name__}: {e}"
                    self._emit("warning", f"[{i + 1}/{len(workers)}] {worker.short}... failed: {outcome.error}")

                result.transaction_ids.extend(outcome.transaction_ids)
                result.recovered_amount += outcome.recovered

                if i < len(workers) - 1:
                    await asyncio.sleep(self.pacing.RECOVERY_WORKER_DELAY)

            self._emit(
                "success",
                f"Recovery completed: {result.recovered_amount:.6f} ETH from "
                f"{len(result.transaction_ids)} transactions",
            )
            return result

    async def _recover_worker(
        self,
        worker: Identity,
        owner: Identity,
        asset_hint: Optional[str],
        outcome: WorkerOutcome,
        index: int,
        total: int,
    ):
        tag = f"[{index + 1}/{total}] {worker.short}..."

        # 1. Liquidate (best effort)
        if asset_hint and self.swapper:
            try:
                held = await self.ledger.get_token_balance(asset_hint, worker.public_key)
                if held > 0:
                    sold = await self.swapper.swap(worker, asset_hint, NATIVE_ASSET, held)
                    if sold.success:
                        outcome.liquidated = True
                        outcome.transaction_ids.append(sold.tx_hash)
                        self._emit("success", f"{tag} sold tokens for {from_wei(sold.out_amount):.6f} ETH", sold.tx_hash)
                        await asyncio.sleep(self.pacing.LIQUIDATION_SETTLE)
                    else:
                        self._emit("warning", f"{tag} token sell failed: {sold.error}")
            except Exception as e:
                self._emit("warning", f"{tag} token sell failed: {type(e).__name__}: {e}")

        # 2. Fresh balance
        await asyncio.sleep(self.pacing.BALANCE_REFRESH_WAIT)
        balance = await self.ledger.get_balance(worker.public_key)
        if balance <= self.limits.DUST_THRESHOLD_WEI:
            logger.info(f"{tag} balance {from_wei(balance):.6f} ETH — below dust, skipping")
            return

        # 3. Sweep
        reserved = max(self.limits.SWEEP_FEE_FLOOR_WEI, await self.ledger.estimate_transfer_fee())
        amount = balance - reserved
        if amount <= 0:
            logger.info(f"{tag} balance {from_wei(balance):.6f} ETH doesn't cover the fee, skipping")
            return

        tx_hash = await self.ledger.submit_transfer(worker, owner.public_key, amount)
        if not await self.ledger.confirm(tx_hash):
            outcome.error = f"sweep not confirmed: {tx_hash}"
            self._emit("warning", f"{tag} sweep not confirmed", tx_hash)
            return

        outcome.transaction_ids.append(tx_hash)
        outcome.recovered = from_wei(amount)
        self._emit("success", f"{tag} recovered {outcome.recovered:.6f} ETH", tx_hash)
