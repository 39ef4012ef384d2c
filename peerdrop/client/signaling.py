"""
Signaling Client

Talks to the signaling server: a pre-flight `GET /health`, then one
WebSocket carrying `{"event": ..., "data": ...}` frames.

Connection Flow:
1. Health probe (tells "server unreachable" apart from "negotiation failed")
2. WebSocket connect, up to `reconnect_attempts` tries, fixed delay between
3. First frame is `welcome` with our member id
4. Reader task dispatches every later frame to registered handlers

An unexpected drop fires the `disconnect` handlers and then runs the same
bounded reconnect, re-joining the last room on success.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from ..errors import SignalingError
from ..signaling.models import SignalEvent, make_event
from ..signaling.registry import normalize_room_id

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


# Local events, never sent by the server
CONNECT = "connect"
DISCONNECT = "disconnect"

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class SignalingClient:
    """WebSocket client for the signaling server."""

    def __init__(self, server_url: str, health_timeout: float = 5.0,
                 connect_timeout: float = 10.0, reconnect_attempts: int = 3,
                 reconnect_delay: float = 3.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.server_url = server_url.rstrip('/')
        self.health_timeout = health_timeout
        self.connect_timeout = connect_timeout
        self.reconnect_attempts = max(1, reconnect_attempts)
        self.reconnect_delay = reconnect_delay

        self.state = ConnectionState.DISCONNECTED
        self.error: Optional[str] = None
        self.member_id: Optional[str] = None
        self.room_id: Optional[str] = None

        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._closing = False

    @property
    def ws_url(self) -> str:
        if self.server_url.startswith('https://'):
            return 'wss://' + self.server_url[len('https://'):] + '/ws'
        if self.server_url.startswith('http://'):
            return 'ws://' + self.server_url[len('http://'):] + '/ws'
        return self.server_url + '/ws'

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def on(self, event: Union[SignalEvent, str], handler: Optional[EventHandler] = None):
        """Register a handler for an event. Usable as a decorator."""
        name = event.value if isinstance(event, SignalEvent) else event

        def register(f: EventHandler):
            self._handlers.setdefault(name, []).append(f)
            return f

        if handler is not None:
            return register(handler)
        return register

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # === Connection ===

    async def check_health(self) -> bool:
        """Pre-flight reachability check against GET /health."""
        try:
            session = self._get_session()
            timeout = aiohttp.ClientTimeout(total=self.health_timeout)
            async with session.get(f"{self.server_url}/health", timeout=timeout) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.info(f"Signaling server health check failed: {e}")
            return False

    async def connect(self) -> bool:
        """
        Connect to the signaling server.

        Returns:
            True once connected; False with `state` FAILED and a
            human-readable `error` otherwise
        """
        if self.is_connected:
            return True

        self._closing = False
        self.state = ConnectionState.CONNECTING
        self.error = None

        logger.info("Checking signaling server health...")
        if not await self.check_health():
            self.state = ConnectionState.FAILED
            self.error = (f"Signaling server not accessible. Please ensure the "
                          f"server is running on {self.server_url}")
            logger.error(self.error)
            return False

        return await self._open_with_retries()

    async def _open_with_retries(self) -> bool:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.reconnect_attempts + 1):
            try:
                await self._open()
                return True
            except (aiohttp.ClientError, asyncio.TimeoutError, SignalingError) as e:
                last_error = e
                logger.warning(f"Signaling connect attempt {attempt}/"
                               f"{self.reconnect_attempts} failed: {e}")
                if attempt < self.reconnect_attempts and not self._closing:
                    await asyncio.sleep(self.reconnect_delay)

        self.state = ConnectionState.FAILED
        self.error = f"Connection failed: {last_error}"
        return False

    async def _open(self):
        session = self._get_session()
        logger.info(f"Connecting to signaling server at {self.ws_url}...")
        ws = await asyncio.wait_for(session.ws_connect(self.ws_url), self.connect_timeout)

        try:
            welcome = await asyncio.wait_for(ws.receive_json(), self.connect_timeout)
            if welcome.get('event') != SignalEvent.WELCOME.value:
                raise ValueError(f"expected welcome, got {welcome.get('event')!r}")
            member_id = welcome['data']['memberId']
        except (TypeError, ValueError, KeyError, AttributeError, asyncio.TimeoutError) as e:
            await ws.close()
            raise SignalingError(f"Bad welcome frame: {e}") from e

        self._ws = ws
        self.member_id = member_id
        self.state = ConnectionState.CONNECTED
        self.error = None
        logger.info(f"Connected to signaling server with ID: {self.member_id}")

        self._reader = asyncio.create_task(self._read_loop(ws))
        await self._dispatch(CONNECT, self.member_id)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse):
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                    event = frame['event']
                except (ValueError, KeyError, TypeError):
                    logger.warning(f"Ignoring malformed signaling frame: {msg.data[:80]}")
                    continue
                await self._dispatch(event, frame.get('data'))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"Signaling connection error: {ws.exception()}")
                break

        if not self._closing and ws is self._ws:
            await self._handle_drop()

    async def _handle_drop(self):
        logger.warning("Disconnected from signaling server")
        self._ws = None
        self.member_id = None
        self.state = ConnectionState.DISCONNECTED
        await self._dispatch(DISCONNECT, None)

        if await self._open_with_retries() and self.room_id:
            await self.join_room(self.room_id)

    async def _dispatch(self, event: str, data: Any):
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"Handler for {event} failed")

    async def close(self):
        """Disconnect on purpose. No disconnect handlers, no reconnect."""
        self._closing = True

        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()

        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None

        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

        self.member_id = None
        self.state = ConnectionState.DISCONNECTED
        logger.info("Signaling client closed")

    # === Events ===

    async def emit(self, event: SignalEvent, data: Any = None):
        """Send one event to the server."""
        if self._ws is None or self._ws.closed:
            raise SignalingError(f"Cannot send {event.value}: not connected")
        await self._ws.send_json(make_event(event, data))

    async def join_room(self, room_id: str):
        self.room_id = normalize_room_id(room_id)
        await self.emit(SignalEvent.JOIN_ROOM, self.room_id)
        logger.info(f"Joining room {self.room_id}")

    async def send_offer(self, target_member_id: str, offer: dict):
        await self.emit(SignalEvent.OFFER, {'offer': offer, 'targetMemberId': target_member_id})

    async def send_answer(self, target_member_id: str, answer: dict):
        await self.emit(SignalEvent.ANSWER, {'answer': answer, 'targetMemberId': target_member_id})

    async def send_candidate(self, target_member_id: str, candidate: dict):
        await self.emit(SignalEvent.ICE_CANDIDATE,
                        {'candidate': candidate, 'targetMemberId': target_member_id})
