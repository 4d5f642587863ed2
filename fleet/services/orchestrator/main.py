"""
Fleet Orchestrator Service (port 8600)
---------------------------------------
Owns the tenant/identity registries and every live bot session of this process.

Boot order:
  1. create tables
  2. expire lapsed approvals
  3. ensure this process's tenant and re-assert its configured capacity
  4. resume approved bots, staggered, each with a grace deadline
  5. start the periodic expiry sweep
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from fleet.services.orchestrator.service import FleetService, build_components
from fleet.services.runtime.session import GatewaySessionFactory
from fleet.services.shared.context import TenantContext
from fleet.services.shared.database import create_all_tables

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()

EXPIRY_SWEEP_INTERVAL = int(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "3600"))


async def _run_expiry_loop(fleet: FleetService, interval: int) -> None:
    """Background loop: revert lapsed approvals every `interval` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await fleet.run_expiry_sweep()
        except Exception as exc:
            logger.error("expiry_loop_error", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("fleet_orchestrator_starting")
    create_all_tables()
    logger.info("fleet_orchestrator_tables_ready")

    factory = GatewaySessionFactory()
    fleet = FleetService(TenantContext.from_env(), build_components(factory))
    app.state.fleet = fleet
    await fleet.boot()

    expiry_task = asyncio.create_task(_run_expiry_loop(fleet, EXPIRY_SWEEP_INTERVAL))
    logger.info("expiry_loop_started", interval=EXPIRY_SWEEP_INTERVAL)

    yield

    expiry_task.cancel()
    await fleet.shutdown()
    await factory.aclose()
    logger.info("fleet_orchestrator_stopping")


app = FastAPI(
    title="Fleet Orchestrator Service",
    version="0.1.0",
    description="Places, approves, expires and resumes bot instances across capacity-limited tenants.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

from fleet.services.orchestrator.routes_bots     import router as bots_router      # noqa: E402
from fleet.services.orchestrator.routes_tenants  import router as tenants_router   # noqa: E402
from fleet.services.orchestrator.routes_registry import router as registry_router  # noqa: E402
from fleet.services.orchestrator.routes_activity import router as activity_router  # noqa: E402

app.include_router(bots_router,     prefix="/api", tags=["Bots"])
app.include_router(tenants_router,  prefix="/api", tags=["Tenants"])
app.include_router(registry_router, prefix="/api", tags=["Identity Registry"])
app.include_router(activity_router, prefix="/api", tags=["Activity"])


@app.websocket("/ws")
async def events(websocket: WebSocket):
    """Stream every broadcast event to the connected observer as JSON."""
    await websocket.accept()
    fleet = websocket.app.state.fleet
    queue = fleet.channel.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.as_dict())
    except WebSocketDisconnect:
        pass
    finally:
        fleet.channel.unsubscribe(queue)


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "fleet-orchestrator", "version": "0.1.0"}
