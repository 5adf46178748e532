"""
Courier Server

FastAPI server receiving chat webhooks and feeding the capture pipeline.

Endpoints:
- POST /slack/events: Slack webhook endpoint
- GET /health: Health check
- POST /registry/reload: Atomically reload the registry (admin token)
- GET /events/{event_id}: Dedupe record and audit trail for one message

Each accepted message is acknowledged immediately and processed as its own
background task. On shutdown in-flight runs get ``server.drain_timeout``
seconds to finish before they are cancelled.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..common.config import CourierConfig, ensure_directories, load_config
from ..common.errors import AuthenticationError, RegistryError
from ..pipeline import Orchestrator, build_orchestrator
from .slack import SlackHandler

logger = logging.getLogger("courier.intake.server")


# Global state
config: Optional[CourierConfig] = None
orchestrator: Optional[Orchestrator] = None
slack_handler: Optional[SlackHandler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup, drain them on shutdown"""
    global config, orchestrator, slack_handler

    logger.info("Starting up...")

    config = load_config()
    ensure_directories(config)

    # A registry that cannot be loaded is fatal at startup
    orchestrator = build_orchestrator(config)
    logger.info(
        "Pipeline ready (registry v%d, llm %s, notes %s)",
        orchestrator.resolver.version,
        "available" if orchestrator.classifier.is_available else "unavailable",
        config.notes.backend,
    )

    slack_handler = SlackHandler(
        signing_secret=config.slack.signing_secret,
        capture_channels=config.slack.capture_channels,
    )

    logger.info("Ready to receive events")

    yield

    logger.info("Shutting down...")
    cancelled = await orchestrator.drain(timeout=config.server.drain_timeout)
    if cancelled:
        logger.warning("%d run(s) cancelled at shutdown", cancelled)
    await orchestrator.close()
    orchestrator = None
    slack_handler = None


app = FastAPI(
    title="Courier",
    description="Chat capture to notes",
    version=__version__,
    lifespan=lifespan
)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "courier",
        "initialized": orchestrator is not None,
        "registry_version": orchestrator.resolver.version if orchestrator else None,
        "registry_entries": len(orchestrator.resolver.snapshot) if orchestrator else 0,
        "llm_available": orchestrator.classifier.is_available if orchestrator else False,
        "in_flight": orchestrator.in_flight if orchestrator else 0,
    }


@app.post("/slack/events")
async def slack_events(
    request: Request,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None)
):
    """
    Handle Slack webhook events.

    This is the main entry point for Slack integration.
    """
    if not slack_handler or not orchestrator:
        raise HTTPException(status_code=503, detail="Handler not initialized")

    body = await request.body()

    try:
        slack_handler.authenticate(body, x_slack_signature, x_slack_request_timestamp)
    except AuthenticationError:
        logger.warning("Rejected Slack request with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    # Handle URL verification challenge
    if slack_handler.is_url_verification(data):
        return JSONResponse({"challenge": slack_handler.get_challenge(data)})

    event = slack_handler.parse_event(data)
    if event and slack_handler.should_process(event):
        # Process in background (don't block the acknowledgment)
        orchestrator.submit(event)
        logger.info("Accepted %s from %s", event.id, event.author or "unknown")

    return JSONResponse({"ok": True})


@app.post("/registry/reload")
async def reload_registry(x_courier_token: Optional[str] = Header(None)):
    """Re-read the registry document and swap it in atomically"""
    if not orchestrator or not config:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    if not config.server.admin_token:
        raise HTTPException(status_code=403, detail="Registry reload is disabled (no admin token configured)")
    if not x_courier_token or not hmac.compare_digest(x_courier_token, config.server.admin_token):
        raise HTTPException(status_code=401, detail="Invalid admin token")

    previous = orchestrator.resolver.version
    try:
        snapshot = orchestrator.resolver.reload()
    except RegistryError as e:
        logger.error("Registry reload failed: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "status": "reloaded",
        "previous_version": previous,
        "version": snapshot.version,
        "entries": len(snapshot),
    }


@app.get("/events/{event_id}")
async def get_event(event_id: str):
    """Dedupe record and audit trail for one message"""
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    status = await orchestrator.lookup(event_id)
    if status["record"] is None and not status["audit"]:
        raise HTTPException(status_code=404, detail="Event not found")
    return status


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server(config: Optional[CourierConfig] = None):
    """Run the Courier server"""
    import uvicorn

    config = config or load_config()

    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(
        "courier.intake.server:app",
        host=config.server.host,
        port=config.server.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
