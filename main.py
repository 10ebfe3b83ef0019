"""
swarm - main entry point

Builds every component from the environment, wires them together,
starts the control API. One file to understand how everything connects.

Usage:
    python main.py              # Start the control API on HOST:PORT
"""

import re
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from swarm.config import Settings
from swarm.events import EventBus
from swarm.ledger import LedgerGateway
from swarm.license import LicenseGate
from swarm.orchestrator import CycleOrchestrator
from swarm.provisioner import IdentityProvisioner
from swarm.recovery import RecoveryEngine
from swarm.snapshot_format import SecretCodec
from swarm.snapshot_store import FileSnapshotStore
from swarm.swap import SwapVenue, SwapExecutor
from api.server import create_app

settings = Settings.from_env()

# Logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            formatted = record.getMessage()
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("swarm.main")


def build_app():
    events = EventBus()
    codec = SecretCodec(settings.snapshot_passphrase)
    if not codec.enabled:
        logger.warning("SNAPSHOT_PASSPHRASE not set — worker keys are stored in plaintext")
    store = FileSnapshotStore(settings.snapshot_dir, codec=codec)

    ledger = LedgerGateway(settings.rpc_url, settings.chain_id)
    venue = SwapVenue(
        settings.swap_api_url,
        settings.chain_id,
        api_key=settings.swap_api_key,
        slippage_bps=settings.slippage_bps,
    )
    swapper = SwapExecutor(venue, ledger)

    provisioner = IdentityProvisioner(store, events=events)
    recovery = RecoveryEngine(store, ledger, swapper=swapper, events=events)
    license_gate = LicenseGate(settings.license_secret)
    orchestrator = CycleOrchestrator(
        provisioner, ledger, swapper, recovery, license_gate, events=events,
    )

    @asynccontextmanager
    async def lifespan(app):
        """Startup and shutdown."""
        logger.info("=" * 60)
        logger.info(f"swarm control API on {settings.host}:{settings.port} (chain {settings.chain_id})")
        logger.info(f"Snapshots: {settings.snapshot_dir}")
        logger.info("=" * 60)
        yield
        if orchestrator.is_running or orchestrator.status()["cleanup_in_progress"]:
            logger.info("Shutdown: stopping swarm and waiting for fund recovery...")
            orchestrator.stop()
            await orchestrator.wait_idle()
        logger.info("swarm shut down")

    app = create_app(
        orchestrator=orchestrator,
        provisioner=provisioner,
        recovery=recovery,
        gateway=ledger,
        store=store,
        license_gate=license_gate,
        events=events,
    )
    app.router.lifespan_context = lifespan
    return app


app = build_app()


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
