"""
LP Lock Agent API Server - FastAPI inspection surface

Endpoints:
- GET  /health     Liveness + loop phase
- GET  /status     Counters, constraints, observer stats, last state/decision/result
- GET  /state      Last fused state
- GET  /decision   Last policy decision (+ its execution result)

Read-only. Nothing here can trigger an action or change a constraint.
"""

import os
import time
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

logger = logging.getLogger("locker.api")


# ============================================================
# MODELS
# ============================================================

class HealthResponse(BaseModel):
    status: str
    phase: str
    cycles: int
    health_status: Optional[str] = None
    last_state_timestamp: Optional[int] = None
    timestamp: float


class DecisionResponse(BaseModel):
    decision: dict
    result: Optional[dict] = None


# ============================================================
# APP
# ============================================================

def create_app(orchestrator, lifespan=None, version: str = "0.1.0") -> FastAPI:
    """
    Create FastAPI app wired to a CycleOrchestrator.

    lifespan: optional async context manager (main.py passes one that starts
    and stops the orchestrator loop).
    """
    app = FastAPI(
        title="LP Lock Agent",
        description="Autonomous LP locker control loop: observe, decide, execute.",
        version=version,
        lifespan=lifespan,
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        state = orchestrator.last_state
        return HealthResponse(
            status="ok" if orchestrator.is_running else "stopped",
            phase=orchestrator.phase.value,
            cycles=orchestrator.stats.cycles,
            health_status=state.health_status.name if state else None,
            last_state_timestamp=state.timestamp if state else None,
            timestamp=time.time(),
        )

    @app.get("/status")
    async def status():
        data = orchestrator.get_status()
        data["policy"] = orchestrator.policy.get_status()
        data["observer"] = orchestrator.observer.get_status()
        return data

    @app.get("/state")
    async def state():
        if orchestrator.last_state is None:
            raise HTTPException(404, "No state observed yet")
        return orchestrator.last_state.to_dict()

    @app.get("/decision", response_model=DecisionResponse)
    async def decision():
        if orchestrator.last_decision is None:
            raise HTTPException(404, "No decision made yet")
        result = orchestrator.last_result
        return DecisionResponse(
            decision=orchestrator.last_decision.to_dict(),
            result=result.to_dict() if result else None,
        )

    return app
