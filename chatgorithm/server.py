"""ASGI server for Chatgorithm: FastAPI (REST + webhook) and Socket.IO.

Run with:
    uvicorn chatgorithm.server:asgi_app --host 0.0.0.0 --port 3000
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress

import socketio
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from chatgorithm.agent import create_booking_agent
from chatgorithm.api.routes import router
from chatgorithm.api.sockets import SocketHandlers
from chatgorithm.api.webhooks import router as webhook_router
from chatgorithm.config import (
    CORS_ORIGINS,
    SCHEDULE_MAINTENANCE_INTERVAL_SECONDS,
    SERVER_HOST,
    SERVER_PORT,
)
from chatgorithm.services.airtable_store import AirtableStore
from chatgorithm.services.assistant import BookingAssistant
from chatgorithm.services.booking import BookingService
from chatgorithm.services.chat import ChatService
from chatgorithm.services.inbound import InboundProcessor
from chatgorithm.services.metrics import metrics
from chatgorithm.services.realtime import Broadcaster
from chatgorithm.services.scheduling import run_schedule_maintenance
from chatgorithm.services.whatsapp_client import WhatsAppClient

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# ── Socket.IO server ─────────────────────────────────────────────────
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*" if CORS_ORIGINS == ["*"] else CORS_ORIGINS,
)


async def _schedule_maintenance_loop(store: AirtableStore) -> None:
    """Keep the agenda filled: prune past free slots, add upcoming ones."""
    while True:
        try:
            await asyncio.to_thread(run_schedule_maintenance, store)
        except Exception:
            logger.exception("Schedule maintenance failed, retrying next cycle")
        await asyncio.sleep(SCHEDULE_MAINTENANCE_INTERVAL_SECONDS)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build every service once and store it in app state."""
    broadcaster = Broadcaster(sio)
    broadcaster.bind_loop(asyncio.get_running_loop())

    store = AirtableStore()
    whatsapp = WhatsAppClient()
    chat = ChatService(store, whatsapp, broadcaster)
    booking = BookingService(store, whatsapp, chat)

    logger.info("Compiling LangGraph booking agent…")
    assistant = BookingAssistant(create_booking_agent(), chat, booking, store)

    application.state.broadcaster = broadcaster
    application.state.store = store
    application.state.whatsapp = whatsapp
    application.state.chat = chat
    application.state.booking = booking
    application.state.assistant = assistant
    application.state.inbound = InboundProcessor(chat)

    SocketHandlers(sio, store=store, chat=chat, assistant=assistant).register()
    maintenance = asyncio.create_task(_schedule_maintenance_loop(store))
    logger.info("Chatgorithm ready, business lines: %s", ", ".join(whatsapp.accounts()))

    yield

    maintenance.cancel()
    with suppress(asyncio.CancelledError):
        await maintenance
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Chatgorithm",
    description="WhatsApp inbox backend with a Gemini booking assistant.",
    version=VERSION,
    lifespan=lifespan,
)

# ── CORS (web and mobile clients) ────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(webhook_router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Chatgorithm",
        "version": VERSION,
        "docs": "/docs",
        "health": "/api/health",
    }


# Socket.IO on /socket.io, everything else handled by FastAPI.
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app)


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Chatgorithm on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "chatgorithm.server:asgi_app",
        host=SERVER_HOST,
        port=SERVER_PORT,
    )
