"""
Cycle Orchestrator — the swarm's start/run/stop state machine.

    IDLE → STARTING → RUNNING → STOPPING → IDLE

start():
  1. License gate (invalid/expired = no start, no transfers)
  2. Validate owner key + token address
  3. Resolve workers through the provisioner (grow if short)
  4. Fund every worker from the owner (balance checked up front)
  5. Poll worker balances until funded (bounded; proceed with a warning)
  6. Schedule the cycle loop

Cycle loop, one iteration:
  Phase A  acquire  worker 0..n-1, paced
           cool-down
  Phase B  release  worker 0..n-1, paced
Phases never interleave: a worker has at most one call in flight.

stop() flips the flag and returns at once. A background task waits for
the loop to reach a checkpoint, releases every worker's tokens, then
sweeps everything back to the owner via the recovery engine.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from eth_utils import is_address

from .config import PACING, LIMITS, Pacing, Limits, CycleConfig
from .events import EventBus, PY_LEVELS
from .identity import Identity, InvalidCredentialError, identity_from_key
from .ledger import from_wei, to_wei
from .snapshot_store import SnapshotStoreError
from .swap import NATIVE_ASSET

logger = logging.getLogger("swarm.orchestrator")


class CycleState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class StartAborted(Exception):
    """start() can't continue. The message is shown to the operator verbatim."""
    pass


@dataclass
class CycleStats:
    cycles_completed: int = 0
    total_volume: float = 0.0       # ETH
    success_rate: float = 0.0       # 0–100, last iteration only
    total_fees: float = 0.0         # ETH
    active_workers: int = 0
    start_time: float = 0.0
    last_cycle_time: float = 0.0
    uptime: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StartResult:
    success: bool
    error: str = ""


@dataclass
class StopResult:
    success: bool = True
    message: str = ""


def iteration_success_rate(acquired: list[bool], released: list[bool]) -> float:
    """% of workers whose phase A AND phase B both succeeded this iteration."""
    total = len(acquired)
    if total == 0:
        return 0.0
    complete = sum(1 for a, r in zip(acquired, released) if a and r)
    return complete / total * 100


class CycleOrchestrator:
    """
    Usage:
        orch = CycleOrchestrator(provisioner, ledger, swapper, recovery, license_gate, events)
        result = await orch.start(CycleConfig(...))
        ...
        orch.stop()            # returns immediately; unwind + sweep run in background
    """

    def __init__(
        self,
        provisioner,
        ledger,
        swapper,
        recovery,
        license_gate,
        events: Optional[EventBus] = None,
        pacing: Pacing = PACING,
        limits: Limits = LIMITS,
    ):
        self.provisioner = provisioner
        self.ledger = ledger
        self.swapper = swapper
        self.recovery = recovery
        self.license_gate = license_gate
        self.events = events or EventBus()
        self.pacing = pacing
        self.limits = limits

        self.state: CycleState = CycleState.IDLE
        self._config: Optional[CycleConfig] = None
        self._owner: Optional[Identity] = None
        self._workers: list[Identity] = []
        self._stats = CycleStats()

        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._session_timer: Optional[asyncio.TimerHandle] = None
        self._funds_out = False     # at least one worker funded this session

    # ============================================================
    # OBSERVERS (read-only)
    # ============================================================

    @property
    def is_running(self) -> bool:
        return self.state == CycleState.RUNNING

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "running": self.is_running,
            "config": self._config.to_public_dict() if self._config else None,
            "owner": self._owner.public_key if self._owner else "",
            "workers": len(self._workers),
            "cleanup_in_progress": bool(self._cleanup_task and not self._cleanup_task.done()),
        }

    def stats(self) -> dict:
        stats = self._stats.to_dict()
        if self.is_running and self._stats.start_time:
            stats["uptime"] = time.time() - self._stats.start_time
        return stats

    def workers(self) -> list[str]:
        return [w.public_key for w in self._workers]

    def _log(self, level: str, message: str, transaction_id: Optional[str] = None):
        logger.log(PY_LEVELS.get(level, logging.INFO), message)
        self.events.log(level, message, transaction_id)

    def _publish_stats(self):
        self.events.stats(self.stats())

    # ============================================================
    # START
    # ============================================================

    async def start(self, config: CycleConfig) -> StartResult:
        if self.state != CycleState.IDLE:
            return StartResult(success=False, error="Cycle already running")
        if self._cleanup_task and not self._cleanup_task.done():
            return StartResult(
                success=False,
                error="Previous session is still recovering funds — try again shortly",
            )

        licence = self.license_gate.validate(config.license_key)
        if not licence.valid:
            self._log("error", f"License validation failed: {licence.error}")
            return StartResult(success=False, error=f"Invalid license: {licence.error}")
        expires = time.strftime("%Y-%m-%d %H:%M", time.localtime(licence.expires_at or 0))
        self._log("success", f"License valid until {expires} ({licence.remaining} remaining)")

        try:
            owner = identity_from_key(config.owner_private_key)
        except InvalidCredentialError as e:
            return StartResult(success=False, error=str(e))
        if not is_address(config.token_address):
            return StartResult(success=False, error=f"Invalid token address: {config.token_address}")
        if not 1 <= config.worker_count <= self.limits.MAX_WORKERS:
            return StartResult(
                success=False,
                error=f"Worker count must be between 1 and {self.limits.MAX_WORKERS}",
            )
        if config.buy_amount <= 0:
            return StartResult(success=False, error="Buy amount must be positive")

        self.state = CycleState.STARTING
        self._stop_event.clear()
        self._config = config
        self._owner = owner
        self._funds_out = False
        self._stats = CycleStats(start_time=time.time())
        self._log("info", f"Starting swarm: owner {owner.short}..., token {config.token_address}")

        try:
            self._workers = self._resolve_workers(config.worker_count)
            if not self._workers:
                raise StartAborted("No worker wallets available")
            self._stats.active_workers = len(self._workers)
            self._log("info", f"Using {len(self._workers)} worker wallets")

            await self._distribute(config, owner)
            await self._await_readiness(config)
        except SnapshotStoreError as e:
            return self._abort_start(f"Could not save worker wallets: {e}")
        except StartAborted as e:
            return self._abort_start(str(e))
        except Exception as e:
            return self._abort_start(f"{type(e).__name__}: {e}")

        if self._stop_event.is_set():
            # stop() arrived mid-start: funds are already out, bring them home
            self._log("warning", "Stop requested during start-up — recovering funds")
            self.state = CycleState.STOPPING
            self._schedule_cleanup()
            self.state = CycleState.IDLE
            return StartResult(success=False, error="Stopped during start-up")

        self.state = CycleState.RUNNING
        self._loop_task = asyncio.get_running_loop().create_task(self._run_cycles())
        if config.session_minutes > 0:
            self._session_timer = asyncio.get_running_loop().call_later(
                config.session_minutes * 60, self._session_expired
            )
            self._log("info", f"Session will stop after {config.session_minutes:g} minutes")

        self._log("success", "Swarm started — cycling until stopped")
        self._publish_stats()
        return StartResult(success=True)

    def _abort_start(self, reason: str) -> StartResult:
        self._log("error", f"Failed to start: {reason}")
        if self._funds_out:
            self._log("warning", "Workers were already funded — unwinding and recovering funds")
            self.state = CycleState.STOPPING
            self._schedule_cleanup()
        self.state = CycleState.IDLE
        return StartResult(success=False, error=reason)

    def _resolve_workers(self, target: int) -> list[Identity]:
        workers: list[Identity] = []
        for attempt in range(1, self.limits.GROW_ATTEMPTS + 1):
            workers = self.provisioner.ensure(target)
            if len(workers) >= target:
                return workers
            self._log(
                "warning",
                f"Expected {target} workers, have {len(workers)} "
                f"(attempt {attempt}/{self.limits.GROW_ATTEMPTS})",
            )
        self._log("warning", f"Proceeding with {len(workers)}/{target} workers")
        return workers

    async def _distribute(self, config: CycleConfig, owner: Identity):
        """Fund each worker with buy amount + gas allowance. Per-worker failures are skipped."""
        per_worker = config.buy_amount + self.limits.WORKER_GAS_ALLOWANCE
        amount_wei = to_wei(per_worker)
        n = len(self._workers)

        owner_balance = from_wei(await self.ledger.get_balance(owner.public_key))
        needed = per_worker * n + self.limits.FUNDING_FEE_BUFFER
        self._log("info", f"Owner balance {owner_balance:.6f} ETH, need {needed:.6f} ETH for {n} workers")
        if owner_balance < needed:
            raise StartAborted(
                f"Insufficient balance: have {owner_balance:.6f} ETH, need {needed:.6f} ETH"
            )

        funded = 0
        for i, worker in enumerate(self._workers):
            if self._stop_event.is_set():
                break
            tag = f"[{i + 1}/{n}] {worker.short}..."
            try:
                current = from_wei(await self.ledger.get_balance(owner.public_key))
                if current < per_worker + self.limits.TRANSFER_FEE_BUFFER:
                    self._log("error", f"{tag} skipped — owner balance down to {current:.6f} ETH")
                    continue
                tx_hash = await self.ledger.submit_transfer(owner, worker.public_key, amount_wei)
                if not await self.ledger.confirm(tx_hash):
                    self._log("warning", f"{tag} funding not confirmed", tx_hash)
                    continue
                funded += 1
                self._funds_out = True
                self._log("success", f"{tag} funded with {per_worker:.6f} ETH", tx_hash)
            except Exception as e:
                self._log("error", f"{tag} funding failed: {type(e).__name__}: {e}")

        if funded == 0:
            raise StartAborted("Fund distribution failed: no worker could be funded")
        self._log("success", f"Distributed {per_worker * funded:.6f} ETH to {funded}/{n} workers")
        if funded < n:
            self._log("info", f"{n - funded} workers unfunded — they stay in the cycle and may fail their trades")

    async def _await_readiness(self, config: CycleConfig):
        await self._pause(self.pacing.FUNDING_ARRIVAL_WAIT)
        threshold = to_wei(config.buy_amount)

        for _ in range(self.pacing.READINESS_MAX_ATTEMPTS):
            if self._stop_event.is_set():
                return
            ready = True
            for worker in self._workers:
                try:
                    balance = await self.ledger.get_balance(worker.public_key)
                except Exception as e:
                    self._log("warning", f"Worker {worker.short}... balance unreadable, retrying: {e}")
                    ready = False
                    break
                if balance < threshold:
                    self._log(
                        "info",
                        f"Worker {worker.short}... still waiting for funds "
                        f"({from_wei(balance):.6f}/{config.buy_amount} ETH)",
                    )
                    ready = False
                    break
            if ready:
                self._log("success", "All workers funded and ready")
                return
            await self._pause(self.pacing.READINESS_POLL_INTERVAL)

        self._log("warning", "Some workers may not have received all funds — proceeding anyway")

    # ============================================================
    # CYCLE LOOP
    # ============================================================

    async def _pause(self, seconds: float):
        """Sleep that ends early when stop() is called."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_cycles(self):
        await self._pause(self.pacing.FIRST_CYCLE_DELAY)
        self._log("info", f"Cycling with {len(self._workers)} workers")

        while not self._stop_event.is_set():
            try:
                await self._run_iteration()
            except Exception as e:
                self._log("error", f"Cycle failed: {type(e).__name__}: {e}")
                await self._pause(self.pacing.ERROR_PAUSE)

        logger.info("Cycle loop exited")

    async def _run_iteration(self):
        token = self._config.token_address
        workers = list(self._workers)
        n = len(workers)
        acquired = [False] * n
        released = [False] * n

        self._log("info", "PHASE A: acquiring for all workers")
        for i, worker in enumerate(workers):
            if self._stop_event.is_set():
                return
            acquired[i] = await self._acquire(worker, token, f"[{i + 1}/{n}] {worker.short}...")
            if i < n - 1:
                await self._pause(self.pacing.ACQUIRE_WORKER_DELAY)

        await self._pause(self.pacing.PHASE_COOLDOWN)

        self._log("info", "PHASE B: releasing for all workers")
        for i, worker in enumerate(workers):
            if self._stop_event.is_set():
                return
            released[i] = await self._release(worker, token, f"[{i + 1}/{n}] {worker.short}...")
            if i < n - 1:
                await self._pause(self.pacing.RELEASE_WORKER_DELAY)

        self._record_iteration(workers, acquired, released)
        await self._pause(self.pacing.CYCLE_PAUSE)

    def _record_iteration(self, workers: list[Identity], acquired: list[bool], released: list[bool]):
        for worker, a, r in zip(workers, acquired, released):
            if not (a and r):
                self._log("warning", f"Incomplete cycle for {worker.short}... (acquire: {a}, release: {r})")

        self._stats.cycles_completed += 1
        self._stats.success_rate = iteration_success_rate(acquired, released)
        self._stats.last_cycle_time = time.time()
        complete = sum(1 for a, r in zip(acquired, released) if a and r)
        self._log(
            "info",
            f"Cycle {self._stats.cycles_completed} completed: "
            f"{complete}/{len(workers)} complete acquire→release",
        )
        self._publish_stats()

    async def _acquire(self, worker: Identity, token: str, tag: str) -> bool:
        """Phase A: spend TRADE_FRACTION of the worker's ETH on the token."""
        try:
            balance = await self.ledger.get_balance(worker.public_key)
            amount = int(balance * self.limits.TRADE_FRACTION)
            if amount <= 0 or balance < amount + to_wei(self.limits.MIN_TRADE_BUFFER):
                self._log("warning", f"{tag} acquire skipped — balance {from_wei(balance):.6f} ETH")
                return False

            swap_amount = int(amount * self.limits.SAFE_SWAP_FRACTION)
            self._log("info", f"{tag} acquiring with {from_wei(swap_amount):.6f} ETH")
            result = await self.swapper.swap(worker, NATIVE_ASSET, token, swap_amount)
            if not result.success:
                self._log("warning", f"{tag} acquire failed: {result.error}", result.tx_hash or None)
                return False

            self._stats.total_fees += result.fee
            self._stats.total_volume += from_wei(result.in_amount)
            self._log("success", f"{tag} acquired for {from_wei(result.in_amount):.6f} ETH", result.tx_hash)
            await self._pause(self.pacing.TRADE_SETTLE)
            return True
        except Exception as e:
            self._log("error", f"{tag} acquire failed: {type(e).__name__}: {e}")
            return False

    async def _release(self, worker: Identity, token: str, tag: str) -> bool:
        """Phase B: sell the worker's whole token balance back to ETH."""
        try:
            held = await self.ledger.get_token_balance(token, worker.public_key)
            if held <= 0:
                self._log("warning", f"{tag} release skipped — no tokens to sell")
                return False

            result = await self.swapper.swap(worker, token, NATIVE_ASSET, held)
            if not result.success:
                self._log("warning", f"{tag} release failed: {result.error}", result.tx_hash or None)
                return False

            self._stats.total_fees += result.fee
            self._stats.total_volume += from_wei(result.out_amount)
            self._log("success", f"{tag} released for {from_wei(result.out_amount):.6f} ETH", result.tx_hash)
            await self._pause(self.pacing.TRADE_SETTLE)
            return True
        except Exception as e:
            self._log("error", f"{tag} release failed: {type(e).__name__}: {e}")
            return False

    # ============================================================
    # STOP
    # ============================================================

    def _session_expired(self):
        self._session_timer = None
        self._log("info", "Session time limit reached")
        self.stop()

    def _cancel_timers(self):
        if self._session_timer is not None:
            self._session_timer.cancel()
            self._session_timer = None

    def stop(self) -> StopResult:
        """
        Always succeeds. Returns before any funds move; unwind + recovery
        continue in the background.
        """
        self._cancel_timers()

        if self.state == CycleState.IDLE:
            return StopResult(success=True, message="Not running")
        if self.state == CycleState.STARTING:
            self._stop_event.set()
            self._log("info", "Stop requested — start-up will wind down")
            return StopResult(success=True, message="Stopping during start-up")
        if self.state == CycleState.STOPPING:
            return StopResult(success=True, message="Already stopping")

        try:
            self._log("info", "Stopping swarm...")
            self.state = CycleState.STOPPING
            self._stop_event.set()
            self._stats.uptime = time.time() - self._stats.start_time
            self._publish_stats()
            self._schedule_cleanup()
            self._log("success", "Swarm stopped — unwinding and recovering funds in background")
        except Exception as e:
            logger.warning(f"Stop finished with warnings: {type(e).__name__}: {e}")
        finally:
            self.state = CycleState.IDLE
        return StopResult(success=True, message="Stopped")

    def _schedule_cleanup(self):
        if not self._config:
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(
            self._cleanup(self._loop_task, self._config, list(self._workers))
        )
        self._cleanup_task.add_done_callback(self._cleanup_done)

    def _cleanup_done(self, task: asyncio.Task):
        if task.cancelled():
            logger.warning("Background cleanup cancelled — run recovery manually")
        elif task.exception():
            logger.error(f"Background cleanup crashed: {task.exception()!r} — run recovery manually")

    async def _cleanup(self, loop_task: Optional[asyncio.Task], config: CycleConfig, workers: list[Identity]):
        # Let any in-flight call finish; the loop exits at its next checkpoint
        if loop_task is not None:
            await asyncio.wait([loop_task])

        try:
            n = len(workers)
            self._log("info", f"Unwind: releasing tokens from {n} workers")
            released = 0
            for i, worker in enumerate(workers):
                if await self._release(worker, config.token_address, f"[unwind {i + 1}/{n}] {worker.short}..."):
                    released += 1
                if i < n - 1:
                    await asyncio.sleep(self.pacing.RELEASE_WORKER_DELAY)
            self._log("info", f"Unwind completed: {released}/{n} workers released")
        except Exception as e:
            self._log("warning", f"Unwind finished with warnings: {type(e).__name__}: {e}")

        await asyncio.sleep(self.pacing.UNWIND_SETTLE)

        try:
            result = await self.recovery.recover_all(config.owner_private_key, config.token_address)
            if result.success:
                self._log("success", f"Background recovery: {result.recovered_amount:.6f} ETH recovered")
            else:
                self._log("warning", f"Background recovery: {result.error}")
        except Exception as e:
            self._log("error", f"Background recovery failed: {type(e).__name__}: {e}")

    async def wait_idle(self):
        """Block until the cycle loop and any background cleanup have finished."""
        pending = [t for t in (self._loop_task, self._cleanup_task) if t is not None and not t.done()]
        if pending:
            await asyncio.wait(pending)
