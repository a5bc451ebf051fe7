from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Dict, Any
import json
import logging
from datetime import datetime, timezone

from app.api import fleet, incidents, ridership, routes, shifts, tracking
from app.config import settings
from app.core.errors import (
    CapacityError, ConflictError, NotFoundError, StateError, TransportError, ValidationError
)
from app.core.events import EventBus, EventType, TransportEvent
from app.database import AsyncSessionLocal, create_db_and_tables, engine
from app.repository import SqlRepository
from app.services import TransportServices
from app.utils.notifications import register_notification_channels

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ValidationError: 422,
    ConflictError: 409,
    NotFoundError: 404,
    CapacityError: 409,
    StateError: 409,
}

LIVE_FEED_EVENTS = [
    EventType.LOCATION_UPDATED,
    EventType.BUS_ARRIVED_AT_STOP,
    EventType.EMERGENCY_ALERT,
]

# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket, client_id: str):
        await websocket.accept()
        self.active_connections[client_id] = websocket
        logger.info(f"WebSocket connected: {client_id}")

    def disconnect(self, client_id: str):
        if client_id in self.active_connections:
            del self.active_connections[client_id]
            logger.info(f"WebSocket disconnected: {client_id}")

    async def broadcast(self, data: dict[str, Any]):
        disconnected = []
        for client_id, websocket in list(self.active_connections.items()):
            try:
                await websocket.send_text(json.dumps(data, default=str))
            except Exception as e:
                logger.warning(f"Error broadcasting to {client_id}: {e}")
                disconnected.append(client_id)

        # Clean up disconnected clients
        for client_id in disconnected:
            self.disconnect(client_id)

    async def broadcast_event(self, event: TransportEvent):
        await self.broadcast(event.to_dict())

manager = ConnectionManager()

# Lifespan manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    owns_database = getattr(app.state, "services", None) is None
    if owns_database:
        await create_db_and_tables()
        bus = EventBus()
        register_notification_channels(bus)
        app.state.services = TransportServices(SqlRepository(AsyncSessionLocal), bus)
        logger.info("Database tables created")

    app.state.services.bus.subscribe(manager.broadcast_event, LIVE_FEED_EVENTS)
    logger.info("Application starting up")
    yield
    # Shutdown
    await app.state.services.bus.drain()
    if owns_database:
        await engine.dispose()
        app.state.services = None
    logger.info("Application shutting down")

app = FastAPI(
    title="School Fleet Transport API",
    description="Real-time vehicle tracking, ridership and incident management for a school fleet",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        400
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())

# Include routers
app.include_router(tracking.router, prefix="/api/tracking", tags=["Tracking"])
app.include_router(routes.router, prefix="/api/routes", tags=["Routes"])
app.include_router(ridership.router, prefix="/api/ridership", tags=["Ridership"])
app.include_router(incidents.router, prefix="/api/incidents", tags=["Incidents"])
app.include_router(shifts.router, prefix="/api/shifts", tags=["Shifts"])
app.include_router(fleet.router, prefix="/api/fleet", tags=["Fleet"])

@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str):
    await manager.connect(websocket, client_id)
    try:
        while True:
            # Keep connection alive and handle incoming messages
            await websocket.receive_text()
            # Echo back for heartbeat
            await websocket.send_text(json.dumps({
                "type": "heartbeat",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }))
    except WebSocketDisconnect:
        manager.disconnect(client_id)
    except Exception as e:
        logger.error(f"WebSocket error for {client_id}: {e}")
        manager.disconnect(client_id)

@app.get("/")
async def root():
    return {
        "message": "School Fleet Transport API",
        "status": "active",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

# Health check endpoint
@app.get("/health")
async def health_check() -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "active_connections": len(manager.active_connections)
    }

# Make manager available to other modules
app.state.websocket_manager = manager

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        ws_ping_interval=settings.WEBSOCKET_PING_INTERVAL,
        ws_ping_timeout=settings.WEBSOCKET_PING_TIMEOUT
    )
