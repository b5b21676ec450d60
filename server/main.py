"""
FastAPI Main Application
========================

Main entry point for the sprint sync server.
Provides the sync trigger, sync status, sprint report and Jira connection
test endpoints.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.database import create_database, dispose_engine, set_session_maker
from jira_sync.settings import SyncSettings

from .routers import jira_router, sprints_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    settings = SyncSettings.from_env()
    _, SessionLocal = create_database(settings.db_path)
    set_session_maker(SessionLocal)
    app.state.settings = settings
    logger.info("Sprint store ready at %s", settings.db_path)

    yield

    set_session_maker(None)
    dispose_engine(settings.db_path)


# Create FastAPI app
app = FastAPI(
    title="Jira Sprint Sync",
    description="Mirrors Jira sprints and issues into a local store for reporting",
    version="1.0.0",
    lifespan=lifespan,
)

# Module logger
logger = logging.getLogger(__name__)

ALLOW_REMOTE = os.environ.get("SPRINT_SYNC_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")

# CORS - allow all origins when remote access is enabled, otherwise localhost only
if ALLOW_REMOTE:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",      # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:8888",      # Production
            "http://127.0.0.1:8888",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed triggers and headers are client errors (400)."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(sprints_router)
app.include_router(jira_router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server.main:app",
        host="127.0.0.1",  # Localhost only for security
        port=8888,
        reload=True,
    )
