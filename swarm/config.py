"""
Swarm Configuration - Pacing, Limits, Runtime Settings

Three layers:
- PACING: every scheduled pause the swarm makes against the venue.
  These are rate-limit protection, not tuning knobs for speed.
- LIMITS: amount thresholds (dust, fee buffers, trade fractions).
- Settings: per-deployment values read from the environment (.env is
  loaded by main.py before anything imports this).

Amounts are in ETH unless the name ends in _wei.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Final


# ============================================================
# PACING (seconds)
# ============================================================

@dataclass(frozen=True)
class Pacing:
    """Frozen dataclass so a running orchestrator can't be re-timed mid-cycle."""

    # --- CYCLE LOOP ---
    FIRST_CYCLE_DELAY: Final[float] = 2.5        # start() → first phase A
    ACQUIRE_WORKER_DELAY: Final[float] = 5.0     # between workers in phase A
    PHASE_COOLDOWN: Final[float] = 5.0           # phase A done → phase B
    RELEASE_WORKER_DELAY: Final[float] = 3.0     # between workers in phase B
    CYCLE_PAUSE: Final[float] = 3.0              # iteration → next iteration
    ERROR_PAUSE: Final[float] = 5.0              # after a loop-level exception
    TRADE_SETTLE: Final[float] = 2.0             # after each confirmed swap

    # --- FUNDING ---
    FUNDING_ARRIVAL_WAIT: Final[float] = 3.0     # after distribution, before polling
    READINESS_POLL_INTERVAL: Final[float] = 2.0
    READINESS_MAX_ATTEMPTS: Final[int] = 10

    # --- RECOVERY ---
    LIQUIDATION_SETTLE: Final[float] = 2.0       # token sold → re-read ETH
    BALANCE_REFRESH_WAIT: Final[float] = 1.0     # before the sweep balance read
    RECOVERY_WORKER_DELAY: Final[float] = 1.5    # between workers
    UNWIND_SETTLE: Final[float] = 5.0            # stop() unwind → recover_all()

    # --- GATEWAY ---
    CONFIRM_TIMEOUT: Final[float] = 120.0
    CONFIRM_RETRIES: Final[int] = 2
    CONFIRM_RETRY_DELAY: Final[float] = 2.0


PACING = Pacing()

# Zero-delay pacing for dry runs and tests
INSTANT_PACING = replace(
    PACING,
    FIRST_CYCLE_DELAY=0.0, ACQUIRE_WORKER_DELAY=0.0, PHASE_COOLDOWN=0.0,
    RELEASE_WORKER_DELAY=0.0, CYCLE_PAUSE=0.0, ERROR_PAUSE=0.0, TRADE_SETTLE=0.0,
    FUNDING_ARRIVAL_WAIT=0.0, READINESS_POLL_INTERVAL=0.0,
    LIQUIDATION_SETTLE=0.0, BALANCE_REFRESH_WAIT=0.0, RECOVERY_WORKER_DELAY=0.0,
    UNWIND_SETTLE=0.0, CONFIRM_RETRY_DELAY=0.0,
)


# ============================================================
# LIMITS (amounts)
# ============================================================

@dataclass(frozen=True)
class Limits:
    # --- RECOVERY ---
    DUST_THRESHOLD_WEI: Final[int] = 1_000_000_000_000     # 0.000001 ETH
    SWEEP_FEE_FLOOR_WEI: Final[int] = 21_000 * 100_000_000  # 21k gas @ 0.1 gwei

    # --- FUNDING ---
    FUNDING_FEE_BUFFER: Final[float] = 0.0005    # owner keeps this on top of per_worker × n
    TRANSFER_FEE_BUFFER: Final[float] = 0.0001   # owner must cover amount + this per transfer
    WORKER_GAS_ALLOWANCE: Final[float] = 0.0003  # sent with each worker's buy amount

    # --- TRADING ---
    TRADE_FRACTION: Final[float] = 0.75          # phase A spends 75% of worker ETH
    SAFE_SWAP_FRACTION: Final[float] = 0.90      # ...and quotes 90% of that
    MIN_TRADE_BUFFER: Final[float] = 0.00001     # worker balance must exceed amount + this
    FALLBACK_FEE: Final[float] = 0.000035        # booked when a receipt can't be read

    # --- PROVISIONING ---
    GROW_ATTEMPTS: Final[int] = 3
    MAX_WORKERS: Final[int] = 100


LIMITS = Limits()


# ============================================================
# RUNTIME SETTINGS
# ============================================================

DEFAULT_RPC_URL = "https://mainnet.base.org"
DEFAULT_CHAIN_ID = 8453
DEFAULT_SWAP_API_URL = "https://api.0x.org"


@dataclass
class Settings:
    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = DEFAULT_CHAIN_ID
    swap_api_url: str = DEFAULT_SWAP_API_URL
    swap_api_key: str = ""
    slippage_bps: int = 100
    snapshot_dir: Path = field(default_factory=lambda: Path("data/wallet-snapshots"))
    snapshot_passphrase: str = ""
    license_secret: str = ""
    host: str = "127.0.0.1"
    port: int = 8010
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            rpc_url=os.getenv("RPC_URL", DEFAULT_RPC_URL),
            chain_id=int(os.getenv("CHAIN_ID", str(DEFAULT_CHAIN_ID))),
            swap_api_url=os.getenv("SWAP_API_URL", DEFAULT_SWAP_API_URL).rstrip("/"),
            swap_api_key=os.getenv("SWAP_API_KEY", ""),
            slippage_bps=int(os.getenv("SLIPPAGE_BPS", "100")),
            snapshot_dir=Path(os.getenv("SNAPSHOT_DIR", "data/wallet-snapshots")),
            snapshot_passphrase=os.getenv("SNAPSHOT_PASSPHRASE", ""),
            license_secret=os.getenv("LICENSE_SECRET", ""),
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "8010")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@dataclass
class CycleConfig:
    """Everything one start()–stop() session needs."""
    token_address: str
    owner_private_key: str
    worker_count: int
    buy_amount: float               # ETH per worker per cycle
    license_key: str
    session_minutes: float = 0.0    # 0 = run until stop()

    def to_public_dict(self) -> dict:
        """Config for status/UI. NEVER includes the owner key or license."""
        return {
            "token_address": self.token_address,
            "worker_count": self.worker_count,
            "buy_amount": self.buy_amount,
            "session_minutes": self.session_minutes,
        }
