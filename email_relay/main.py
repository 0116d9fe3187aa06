"""
Email Command Relay Service
FastAPI application that relays emailed commands into live terminal sessions
"""
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import RelaySettings
from .database import DatabaseManager
from .relay import CommandRelay

# Load environment variables from the working directory
load_dotenv(find_dotenv(usecwd=True))

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration from environment variables
settings = RelaySettings.from_env()

# Global state
db_manager: Optional[DatabaseManager] = None
relay: Optional[CommandRelay] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    global db_manager, relay

    # Startup
    logger.info("Starting Email Command Relay")
    settings.validate_credentials()

    db_manager = DatabaseManager(settings.database_url)
    logger.info("Audit database initialized")

    relay = CommandRelay(settings, audit=db_manager)
    await relay.start()

    yield

    # Shutdown
    logger.info("Shutting down Email Command Relay")
    if relay:
        await relay.stop()

    if db_manager:
        db_manager.close()


# Create FastAPI app
app = FastAPI(
    title="Email Command Relay",
    description="Relays commands from reply emails into live assistant sessions",
    version="1.0.0",
    lifespan=lifespan
)


# API Models
class HealthResponse(BaseModel):
    status: str
    service: str
    mailbox_connected: bool
    watcher_running: bool
    processed_messages: int


class InjectionListResponse(BaseModel):
    injections: List[Dict[str, Any]]
    total: int


class ProcessedListResponse(BaseModel):
    messages: List[Dict[str, Any]]
    total: int


def _require_relay() -> CommandRelay:
    if relay is None:
        raise HTTPException(status_code=503, detail="Relay not started")
    return relay


# API Endpoints
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    current = _require_relay()

    return HealthResponse(
        status="healthy" if current.is_running else "degraded",
        service="email-relay",
        mailbox_connected=current.watcher.is_connected,
        watcher_running=current.is_running,
        processed_messages=len(current.store)
    )


@app.get("/sessions/{token}")
async def get_session(token: str):
    """Get the session record registered for a token"""
    current = _require_relay()
    record = current.registry.get(token)

    if not record:
        raise HTTPException(status_code=404, detail="Session not found")

    data = record.model_dump(mode="json")
    data["usable"] = record.is_usable(int(time.time()))
    return data


@app.get("/injections", response_model=InjectionListResponse)
async def get_injections(limit: int = 50, token: Optional[str] = None):
    """Get recent injection audit entries"""
    if db_manager is None:
        raise HTTPException(status_code=503, detail="Audit database not available")

    injections = db_manager.get_recent_injections(limit=limit, token=token)
    return InjectionListResponse(injections=injections, total=len(injections))


@app.get("/processed", response_model=ProcessedListResponse)
async def get_processed_messages():
    """Get all processed-message markers"""
    current = _require_relay()

    messages = [
        marker.model_dump(mode="json")
        for marker in current.store.get_all_markers().values()
    ]
    return ProcessedListResponse(messages=messages, total=len(messages))


@app.post("/cleanup")
async def cleanup_old_entries(days: int = 7):
    """Clean up processed markers older than specified days"""
    current = _require_relay()
    removed = current.store.cleanup_old_entries(days)
    current.store.flush()
    return {"message": f"Cleaned up {removed} old entries", "removed": removed}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
