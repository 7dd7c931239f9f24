"""
Bedrock Orchestrator: web bridge.
FastAPI + WebSocket front door to per-session AgentRuntimes.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import logging

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from web import bridge
from web.state import get_manager

logger = logging.getLogger(__name__)

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title="Bedrock Orchestrator")


@app.on_event("startup")
async def _on_startup():
    get_manager().start()


@app.on_event("shutdown")
async def _on_shutdown():
    """Abort running tasks, stop servers and flush transcripts before exit."""
    manager = get_manager()
    count = len(manager)
    await manager.stop()
    logger.info(f"Shutdown: closed {count} runtime(s)")


@app.get("/health")
async def health():
    manager = get_manager()
    return {"status": "ok", "sessions": len(manager)}


# ============================================================
# Include routers from submodules
# ============================================================

app.include_router(bridge.router)
