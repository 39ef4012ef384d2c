"""
Session Orchestrator

Design Decision: One Event Queue per Peer
=========================================

Options Considered:
1. Callbacks closing over a shared peer map
   - What most WebRTC samples do
   - Handlers for one peer can interleave across awaits

2. One lock per peer
   - Serializes, but every callback has to remember to take it

3. One asyncio.Queue + runner task per peer session
   - Connection callbacks only enqueue
   - The runner handles one event at a time, in arrival order
   - Different peers still run concurrently

Decision: Option 3

State Machine:
```
negotiating --(transport connected)--> connected
     |                                     |
     +--(timeout / transport failed)--> failed
     +--(closed / peer left / close)--> closed <--+
```

Teardown is synchronous bookkeeping (cancel the timeout, leave the session
map, stop the runner) followed by releasing the peer connection exactly
once. Tearing down twice is a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .rtc import (
    DATA_CHANNEL_LABEL, description_to_dict, description_from_dict,
    candidate_to_dict, candidate_from_dict,
)

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 10.0  # seconds


class SessionState(Enum):
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAILED)


class SessionRole(Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


class EventKind(Enum):
    NEGOTIATE = "negotiate"  # offerer: create channel + offer
    OFFER = "offer"
    ANSWER = "answer"
    REMOTE_CANDIDATE = "remote-candidate"
    LOCAL_CANDIDATE = "local-candidate"
    TRANSPORT = "transport"


@dataclass
class SessionEvent:
    kind: EventKind
    payload: Any = None


class PeerSession:
    """Negotiation and connection state for one remote member."""

    def __init__(self, remote_id: str, role: SessionRole, connection, signaling,
                 orchestrator: 'SessionOrchestrator', timeout: float = CONNECTION_TIMEOUT):
        self.remote_id = remote_id
        self.role = role
        self.connection = connection
        self.channel = None
        self.state = SessionState.NEGOTIATING
        self.close_reason: Optional[str] = None

        self._signaling = signaling
        self._orchestrator = orchestrator
        self._timeout = timeout
        self._timer: Optional[asyncio.TimerHandle] = None
        self._events: 'asyncio.Queue[Optional[SessionEvent]]' = asyncio.Queue()
        self._runner: Optional[asyncio.Task] = None
        self._release: Optional[asyncio.Task] = None
        self._remote_described = False
        self._early_candidates: List[Any] = []

        self._bind_connection()

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_released(self) -> bool:
        return self._release is not None

    def _bind_connection(self):
        pc = self.connection

        @pc.on("connectionstatechange")
        def on_connection_state():
            self.post(EventKind.TRANSPORT, pc.connectionState)

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Received data channel from {self.remote_id}")
            self._attach_channel(channel)

        @pc.on("icecandidate")
        def on_icecandidate(candidate):
            if candidate is not None:
                self.post(EventKind.LOCAL_CANDIDATE, candidate)

    def _attach_channel(self, channel):
        self.channel = channel
        self._orchestrator._channel_attached(self, channel)

    # === Lifecycle ===

    def start(self):
        """Arm the connection timeout and start handling events."""
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._timeout, self._on_timeout)
        self._runner = asyncio.create_task(self._run())

    def post(self, kind: EventKind, payload: Any = None):
        """Queue an event for this session. Ignored once terminal."""
        if not self.is_terminal:
            self._events.put_nowait(SessionEvent(kind, payload))

    async def _run(self):
        while not self.is_terminal:
            event = await self._events.get()
            if event is None or self.is_terminal:
                break
            try:
                await self._handle(event)
            except Exception as e:
                if self.is_terminal:
                    logger.debug(f"[{self.remote_id}] {event.kind.value} interrupted by close: {e}")
                else:
                    logger.error(f"[{self.remote_id}] Error handling {event.kind.value}: {e}")

    async def _handle(self, event: SessionEvent):
        pc = self.connection
        kind = event.kind

        if kind == EventKind.NEGOTIATE:
            self._attach_channel(pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            if not self.is_terminal:
                logger.info(f"Sending offer to {self.remote_id}")
                await self._signaling.send_offer(
                    self.remote_id, description_to_dict(pc.localDescription))

        elif kind == EventKind.OFFER:
            await self._apply_remote_description(event.payload)
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            if not self.is_terminal:
                logger.info(f"Sending answer to {self.remote_id}")
                await self._signaling.send_answer(
                    self.remote_id, description_to_dict(pc.localDescription))

        elif kind == EventKind.ANSWER:
            if self.role != SessionRole.OFFERER or self._remote_described:
                logger.warning(f"Ignoring unexpected answer from {self.remote_id}")
                return
            await self._apply_remote_description(event.payload)
            logger.info(f"Set remote description for {self.remote_id}")

        elif kind == EventKind.REMOTE_CANDIDATE:
            candidate = candidate_from_dict(event.payload)
            if candidate is None:
                return
            if not self._remote_described:
                # addIceCandidate needs the remote description first
                self._early_candidates.append(candidate)
                return
            await pc.addIceCandidate(candidate)

        elif kind == EventKind.LOCAL_CANDIDATE:
            await self._signaling.send_candidate(self.remote_id, candidate_to_dict(event.payload))

        elif kind == EventKind.TRANSPORT:
            self._on_transport_state(event.payload)

    async def _apply_remote_description(self, payload: dict):
        await self.connection.setRemoteDescription(description_from_dict(payload))
        self._remote_described = True

        early, self._early_candidates = self._early_candidates, []
        for candidate in early:
            await self.connection.addIceCandidate(candidate)

    def _on_transport_state(self, state: str):
        logger.info(f"Peer connection state with {self.remote_id}: {state}")

        if state == "connected":
            if self.state == SessionState.NEGOTIATING:
                self._cancel_timer()
                self.state = SessionState.CONNECTED
                logger.info(f"Successfully connected to peer {self.remote_id}")
                self._orchestrator._session_connected(self)
        elif state == "failed":
            self.terminate(SessionState.FAILED, "connection failed")
        elif state in ("disconnected", "closed"):
            self.terminate(SessionState.CLOSED, f"connection {state}")

    def _on_timeout(self):
        self._timer = None
        if self.state == SessionState.NEGOTIATING:
            logger.info(f"Connection timeout with {self.remote_id}")
            self.terminate(SessionState.FAILED, "negotiation timed out")

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def terminate(self, state: SessionState = SessionState.CLOSED,
                  reason: Optional[str] = None) -> bool:
        """
        Move to a terminal state.

        Synchronously cancels the timeout, stops the runner and leaves the
        orchestrator; the connection is released in the background, once.

        Returns:
            False if the session was already terminal
        """
        if self.is_terminal:
            return False
        if not state.is_terminal:
            raise ValueError(f"{state.value} is not a terminal state")

        self._cancel_timer()
        self.state = state
        self.close_reason = reason
        self._events.put_nowait(None)

        logger.info(f"Session with {self.remote_id} {state.value}"
                    + (f": {reason}" if reason else ""))

        self._orchestrator._session_terminated(self)
        self._release = asyncio.ensure_future(self._release_connection())
        return True

    async def _release_connection(self):
        try:
            await self.connection.close()
        except Exception as e:
            logger.warning(f"Error closing connection to {self.remote_id}: {e}")

    async def close(self, state: SessionState = SessionState.CLOSED,
                    reason: Optional[str] = None):
        """Terminate and wait until the connection is released."""
        self.terminate(state, reason)
        if self._release is not None:
            await self._release

        runner = self._runner
        if runner is not None and not runner.done() and runner is not asyncio.current_task():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

    def to_dict(self) -> dict:
        return {
            'remote_id': self.remote_id,
            'role': self.role.value,
            'state': self.state.value,
            'channel': getattr(self.channel, 'readyState', None),
            'close_reason': self.close_reason,
        }


# Listener types
SessionListener = Callable[[PeerSession], None]
ChannelListener = Callable[[PeerSession, Any], None]


class SessionOrchestrator:
    """
    Owns one PeerSession per remote member.

    Only the orchestrator mutates the session map and the connected-peers
    set; everything else reads them.
    """

    def __init__(self, signaling, connection_factory: Callable[[], Any],
                 connect_timeout: float = CONNECTION_TIMEOUT):
        """
        Args:
            signaling: Object with async send_offer/send_answer/send_candidate
            connection_factory: Returns a new RTCPeerConnection
            connect_timeout: Seconds a session may spend negotiating
        """
        self.signaling = signaling
        self.connection_factory = connection_factory
        self.connect_timeout = connect_timeout

        self._sessions: Dict[str, PeerSession] = {}
        self._connected: Set[str] = set()

        self._channel_listeners: List[ChannelListener] = []
        self._connected_listeners: List[SessionListener] = []
        self._closed_listeners: List[SessionListener] = []

        # Statistics
        self.sessions_created = 0
        self.sessions_failed = 0

    # === Listeners ===

    def on_channel(self, callback: ChannelListener):
        """Called when a session gets its data channel (created or received)."""
        self._channel_listeners.append(callback)

    def on_connected(self, callback: SessionListener):
        self._connected_listeners.append(callback)

    def on_closed(self, callback: SessionListener):
        self._closed_listeners.append(callback)

    def _notify(self, listeners, *args):
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Session listener failed")

    def _channel_attached(self, session: PeerSession, channel):
        self._notify(self._channel_listeners, session, channel)

    def _session_connected(self, session: PeerSession):
        self._connected.add(session.remote_id)
        self._notify(self._connected_listeners, session)

    def _session_terminated(self, session: PeerSession):
        if self._sessions.get(session.remote_id) is session:
            del self._sessions[session.remote_id]
            self._connected.discard(session.remote_id)
        if session.state == SessionState.FAILED:
            self.sessions_failed += 1
        self._notify(self._closed_listeners, session)

    # === Queries ===

    @property
    def connected_peers(self) -> List[str]:
        return sorted(self._connected)

    @property
    def sessions(self) -> Dict[str, PeerSession]:
        return dict(self._sessions)

    def get_session(self, remote_id: str) -> Optional[PeerSession]:
        return self._sessions.get(remote_id)

    def open_channels(self) -> Dict[str, Any]:
        """Data channels that are ready to send, by remote member id."""
        return {
            remote_id: session.channel
            for remote_id, session in self._sessions.items()
            if session.channel is not None and session.channel.readyState == 'open'
        }

    # === Negotiation entry points ===

    def _create(self, remote_id: str, role: SessionRole) -> PeerSession:
        logger.info(f"Creating peer connection with {remote_id} as {role.value}")
        session = PeerSession(
            remote_id=remote_id,
            role=role,
            connection=self.connection_factory(),
            signaling=self.signaling,
            orchestrator=self,
            timeout=self.connect_timeout,
        )
        self._sessions[remote_id] = session
        self.sessions_created += 1
        session.start()
        return session

    def connect_to(self, member_ids: Iterable[str]) -> List[PeerSession]:
        """Open an offerer session to every listed member we have none with."""
        own_id = getattr(self.signaling, 'member_id', None)
        created = []
        for member_id in member_ids:
            if member_id == own_id or member_id in self._sessions:
                continue
            session = self._create(member_id, SessionRole.OFFERER)
            session.post(EventKind.NEGOTIATE)
            created.append(session)
        return created

    def handle_offer(self, sender_id: str, offer: dict) -> PeerSession:
        """Answer an inbound offer, replacing any session with that sender."""
        logger.info(f"Received offer from: {sender_id}")
        existing = self._sessions.get(sender_id)
        if existing is not None:
            existing.terminate(SessionState.CLOSED, "replaced by a new offer")

        session = self._create(sender_id, SessionRole.ANSWERER)
        session.post(EventKind.OFFER, offer)
        return session

    def handle_answer(self, sender_id: str, answer: dict):
        session = self._sessions.get(sender_id)
        if session is None:
            logger.debug(f"Dropping answer from {sender_id}: no session")
            return
        session.post(EventKind.ANSWER, answer)

    def handle_candidate(self, sender_id: str, candidate: dict):
        session = self._sessions.get(sender_id)
        if session is None:
            logger.debug(f"Dropping ICE candidate from {sender_id}: no session")
            return
        session.post(EventKind.REMOTE_CANDIDATE, candidate)

    def handle_member_left(self, member_id: str):
        """The signaling service says a member is gone."""
        session = self._sessions.get(member_id)
        if session is not None:
            session.terminate(SessionState.CLOSED, "peer left the room")

    # === Teardown ===

    async def close_session(self, remote_id: str, reason: str = "closed locally"):
        session = self._sessions.get(remote_id)
        if session is not None:
            await session.close(SessionState.CLOSED, reason)

    async def close_all(self, reason: str = "closed locally"):
        sessions = list(self._sessions.values())
        if sessions:
            logger.info(f"Closing {len(sessions)} peer session(s): {reason}")
            await asyncio.gather(*(s.close(SessionState.CLOSED, reason) for s in sessions))

    def get_stats(self) -> dict:
        """Get orchestrator statistics."""
        return {
            'sessions': {rid: s.to_dict() for rid, s in self._sessions.items()},
            'connected_peers': self.connected_peers,
            'sessions_created': self.sessions_created,
            'sessions_failed': self.sessions_failed,
        }
