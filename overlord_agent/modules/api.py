"""
Overlord Agent - FastAPI Backend

Mounts the agent router (``/api/agent``) and a health endpoint. The database
schema is created on startup.
"""

from __future__ import annotations

# Load environment variables from .env file FIRST
import os
from pathlib import Path
from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

import shutil
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .persistence.init import ensure_schema
from .remediation.api import router as agent_router

PRODUCTION_MODE = os.getenv("OVERLORD_PRODUCTION", "false").lower() == "true"
ALLOWED_ORIGINS = os.getenv("OVERLORD_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(f"Overlord Agent API v{API_VERSION} starting up...")
    await ensure_schema()
    yield
    logger.info("Overlord Agent API shutting down...")


app = FastAPI(
    title="Overlord Agent API",
    description="Autonomous static-analysis remediation agent",
    version=API_VERSION,
    docs_url="/docs" if not PRODUCTION_MODE else None,
    redoc_url="/redoc" if not PRODUCTION_MODE else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if PRODUCTION_MODE else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

app.include_router(agent_router)


@app.get("/")
async def root() -> Dict[str, Any]:
    """Health check & API info."""
    return {
        "name": "Overlord Agent API",
        "version": API_VERSION,
        "status": "healthy",
        "checks": {
            "php": "available" if shutil.which(os.getenv("OVERLORD_AGENT_PHP_BINARY", "php")) else "missing",
            "database": "configured" if os.getenv("DATABASE_URL") else "local-sqlite",
        },
        "endpoints": {
            "start": "POST /api/agent/start",
            "status": "GET /api/agent/sessions/{id}",
            "logs": "GET /api/agent/sessions/{id}/logs",
            "changes": "GET /api/agent/sessions/{id}/changes",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "modules.api:app",
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "8001")),
    )
