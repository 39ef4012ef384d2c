"""
Signaling Server

Design Decision: Signaling Transport
====================================

Options Considered:
1. HTTP long-polling
   - Works everywhere, but slow and chatty for ICE trickle

2. Socket.IO
   - Rooms and reconnects built in
   - Pulls a protocol layer onto both ends

3. Plain WebSocket with a small JSON envelope
   - One persistent connection per client
   - {"event": ..., "data": ...} mirrors the event names peers already use
   - FastAPI serves it next to the HTTP health probe

Decision: FastAPI WebSocket + JSON envelope

API Design:
- GET /health  -> static liveness answer, never touches room state
- GET /stats   -> room/connection counts for operators
- WS  /ws      -> signaling events, see models.SignalEvent
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .models import (
    Envelope, JoinRoom, RelayRequest, HealthStatus, ServerStats,
    SignalEvent, RELAY_FIELDS, make_event,
)
from .relay import SignalingRelay
from ..config import Config

logger = logging.getLogger(__name__)


def create_app(relay: Optional[SignalingRelay] = None,
               config: Optional[Config] = None) -> FastAPI:
    """
    Create the signaling FastAPI application.

    Args:
        relay: Relay to route events through (a fresh one if not provided)
        config: Server configuration (defaults if not provided)

    Returns:
        FastAPI application
    """
    config = config or Config()
    relay = relay or SignalingRelay()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Signaling server starting...")
        yield
        logger.info(f"Signaling server stopping ({relay.connection_count} connections open)")

    app = FastAPI(
        title="PeerDrop Signaling",
        description="Room-based WebRTC signaling relay for browser-to-browser file sharing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # === Endpoints ===

    @app.get("/health", response_model=HealthStatus, tags=["General"])
    async def health():
        """Liveness probe, independent of room state."""
        return HealthStatus()

    @app.get("/stats", response_model=ServerStats, tags=["General"])
    async def stats():
        """Room and connection counts."""
        registry_stats = relay.registry.get_stats()
        return ServerStats(
            connections=relay.connection_count,
            rooms=registry_stats['rooms'],
            members=registry_stats['members'],
            largest_room=registry_stats['largest_room'],
            room_ids=relay.registry.list_rooms(),
        )

    @app.websocket("/ws")
    async def signaling_socket(websocket: WebSocket):
        """One signaling connection; its lifetime is the member's lifetime."""
        await websocket.accept()

        member_id = str(uuid.uuid4())
        relay.register(member_id, websocket.send_json)
        await websocket.send_json(make_event(SignalEvent.WELCOME, {'memberId': member_id}))

        try:
            while True:
                message = await websocket.receive()
                if message['type'] == 'websocket.disconnect':
                    logger.info(f"WebSocket disconnected: {member_id}")
                    break

                text = message.get('text')
                if text is None:
                    await _reject(relay, member_id, "Binary frames are not supported")
                    continue
                try:
                    raw = json.loads(text)
                except ValueError:
                    await _reject(relay, member_id, "Frame is not valid JSON")
                    continue
                await _dispatch(relay, member_id, raw)

        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected: {member_id}")
        except Exception as e:
            logger.error(f"WebSocket error for {member_id}: {e}")
        finally:
            await relay.disconnect(member_id)

    return app


async def _dispatch(relay: SignalingRelay, member_id: str, raw) -> None:
    """Handle one inbound frame. Invalid frames get an error event back."""
    try:
        envelope = Envelope.model_validate(raw)
        event = SignalEvent(envelope.event)
    except (ValidationError, ValueError):
        await _reject(relay, member_id, f"Unknown or malformed event: {str(raw)[:80]}")
        return

    logger.debug(f"Received {event.value} from {member_id}")

    if event == SignalEvent.JOIN_ROOM:
        try:
            request = JoinRoom(room_id=envelope.data)
        except ValidationError:
            await _reject(relay, member_id, "join-room expects a room code string")
            return
        try:
            await relay.join(member_id, request.room_id)
        except ValueError as e:
            await _reject(relay, member_id, str(e))

    elif event in RELAY_FIELDS:
        try:
            request = RelayRequest.model_validate(envelope.data)
        except ValidationError:
            await _reject(relay, member_id, f"{event.value} requires targetMemberId")
            return
        payload = request.payload_for(event)
        if payload is None:
            await _reject(relay, member_id,
                          f"{event.value} requires a {RELAY_FIELDS[event]} payload")
            return
        await relay.relay(event, member_id, request.target_member_id, payload)

    else:
        await _reject(relay, member_id, f"{event.value} cannot be sent by clients")


async def _reject(relay: SignalingRelay, member_id: str, message: str):
    logger.warning(f"Rejected frame from {member_id}: {message}")
    await relay.send_to(member_id, SignalEvent.ERROR, {'message': message})


async def run_server(config: Optional[Config] = None, relay: Optional[SignalingRelay] = None):
    """
    Run the signaling server until cancelled.

    Args:
        config: Host/port/log level (defaults if not provided)
        relay: Relay to serve (a fresh one if not provided)
    """
    import uvicorn

    config = config or Config()
    app = create_app(relay, config)

    server_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(server_config)
    logger.info(f"Signaling server running on port {config.port}")
    await server.serve()
