"""
ShareLink relay — FastAPI application entry point.

Runs the signaling relay on a websocket endpoint and a small REST API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager, serve_client
from config import API_HOST, API_PORT, CORS_ORIGINS, SWEEP_INTERVAL
from signaling.registry import DeviceRegistry
from signaling.relay import SignalingRelay

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(sweep_interval: float = SWEEP_INTERVAL) -> FastAPI:
    """Build the relay app with its own registry and connection set."""
    ws_manager = ConnectionManager()
    relay = SignalingRelay(
        DeviceRegistry(),
        broadcast=ws_manager.broadcast,
        sweep_interval=sweep_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop the relay sweep."""
        logger.info("Starting ShareLink relay...")
        await relay.start()
        logger.info(f"ShareLink relay ready on {API_HOST}:{API_PORT}")
        try:
            yield
        finally:
            logger.info("Shutting down ShareLink relay...")
            await relay.stop()

    app = FastAPI(title="ShareLink Relay", version="1.0.0", lifespan=lifespan)
    app.state.relay = relay
    app.state.connections = ws_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    init_routes(relay, ws_manager)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await serve_client(websocket, ws_manager, relay)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
