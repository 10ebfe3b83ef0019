"""
Swarm Control API - FastAPI Backend

Endpoints:
- GET  /health            Heartbeat
- GET  /wallets           Reconciled owner + workers (public keys only)
- POST /wallets           Provision workers up to a count
- GET  /wallets/balances  ETH balance per worker
- POST /license/validate  Check a license key without starting
- POST /bot/start         Validate, fund workers, start cycling
- POST /bot/stop          Stop; unwind + recovery continue in background
- GET  /bot/status        State machine + public config
- GET  /bot/stats         Cycle statistics
- POST /recover           Sweep every known worker back to the owner
- GET  /snapshots         Snapshot history (no secrets)
- GET  /events            Recent log/stats/workers events

Bind to localhost: /bot/start and /recover take the owner key in the body.
Secrets never leave through a response.
"""

import os
import time
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from swarm.config import CycleConfig, LIMITS
from swarm.reconcile import Reconciler
from swarm.snapshot_store import SnapshotStoreError, StoreReadError

logger = logging.getLogger("swarm.api")


# ============================================================
# MODELS
# ============================================================

class ProvisionRequest(BaseModel):
    count: int = Field(..., ge=0, le=LIMITS.MAX_WORKERS)


class LicenseRequest(BaseModel):
    license_key: str


class StartRequest(BaseModel):
    token_address: str
    owner_private_key: str
    worker_count: int = Field(..., ge=1, le=LIMITS.MAX_WORKERS)
    buy_amount: float = Field(..., gt=0)
    license_key: str
    session_minutes: float = Field(0.0, ge=0)


class RecoverRequest(BaseModel):
    owner_private_key: str
    token_address: Optional[str] = None


# ============================================================
# APP
# ============================================================

def create_app(
    orchestrator,
    provisioner,
    recovery,
    gateway,
    store,
    license_gate,
    events,
) -> FastAPI:
    """Create FastAPI app wired to the swarm components."""
    app = FastAPI(
        title="swarm - worker wallet cycler",
        description="Control surface for the worker-wallet swarm.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    reconciler = Reconciler(store)
    started_at = time.time()

    def _reconciled():
        try:
            return reconciler.current()
        except StoreReadError as e:
            raise HTTPException(500, f"Snapshot store unreadable: {e}")

    # ============================================================
    # HEALTH
    # ============================================================

    @app.get("/health")
    async def health():
        """Heartbeat endpoint."""
        return {
            "ok": True,
            "state": orchestrator.state.value,
            "uptime_seconds": round(time.time() - started_at, 1),
            "chain": gateway.get_status(),
        }

    # ============================================================
    # WALLETS
    # ============================================================

    @app.get("/wallets")
    async def list_wallets():
        current = _reconciled()
        return {
            "owner": current.owner.public_key if current.owner else None,
            "owners": [o.to_public_dict() for o in current.owners],
            "workers": [w.to_public_dict() for w in current.workers],
            "conflicts": len(current.conflicts),
        }

    @app.post("/wallets")
    async def provision_wallets(req: ProvisionRequest):
        try:
            workers = provisioner.ensure(req.count)
        except SnapshotStoreError as e:
            raise HTTPException(500, f"Could not save worker wallets: {e}")
        return {"count": len(workers), "workers": [w.public_key for w in workers]}

    @app.get("/wallets/balances")
    async def wallet_balances():
        keys = _reconciled().worker_keys
        balances = await gateway.get_balances(keys)
        return {"balances": balances, "total": sum(balances.values())}

    # ============================================================
    # LICENSE
    # ============================================================

    @app.post("/license/validate")
    async def validate_license(req: LicenseRequest):
        result = license_gate.validate(req.license_key)
        return {
            "valid": result.valid,
            "error": result.error,
            "expires_at": result.expires_at,
            "remaining": result.remaining,
        }

    # ============================================================
    # BOT CONTROL
    # ============================================================

    @app.post("/bot/start")
    async def start_bot(req: StartRequest):
        config = CycleConfig(
            token_address=req.token_address,
            owner_private_key=req.owner_private_key,
            worker_count=req.worker_count,
            buy_amount=req.buy_amount,
            license_key=req.license_key,
            session_minutes=req.session_minutes,
        )
        result = await orchestrator.start(config)
        if not result.success:
            raise HTTPException(400, result.error)
        return {"success": True, "status": orchestrator.status()}

    @app.post("/bot/stop")
    async def stop_bot():
        result = orchestrator.stop()
        return {"success": result.success, "message": result.message}

    @app.get("/bot/status")
    async def bot_status():
        return orchestrator.status()

    @app.get("/bot/stats")
    async def bot_stats():
        return orchestrator.stats()

    # ============================================================
    # RECOVERY / HISTORY
    # ============================================================

    @app.post("/recover")
    async def recover(req: RecoverRequest):
        result = await recovery.recover_all(req.owner_private_key, req.token_address)
        if not result.success:
            raise HTTPException(400, result.error)
        return result.to_dict()

    @app.get("/snapshots")
    async def snapshots():
        try:
            return {"snapshots": store.describe()}
        except StoreReadError as e:
            raise HTTPException(500, f"Snapshot store unreadable: {e}")

    @app.get("/events")
    async def recent_events(limit: int = 100, kind: Optional[str] = None):
        return {"events": events.recent(limit=max(0, min(limit, 500)), kind=kind)}

    return app
