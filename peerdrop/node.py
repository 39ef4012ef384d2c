"""
Peer Node - Main Controller

This is the client-side entry point that wires all components together:
- Signaling client for room membership and negotiation relay
- Session orchestrator for one WebRTC data channel per room member
- Sender/receiver for chunked transfers over those channels
- Transfer ledger that the CLI (or any other UI) reads from
"""

import asyncio
import logging
import secrets
import string
from pathlib import Path
from typing import Any, Callable, List, Optional

import aiofiles

from .client import (
    SignalingClient, ConnectionState, SessionOrchestrator, PeerSession,
    DISCONNECT, create_peer_connection,
)
from .config import Config
from .errors import TransferNotFoundError
from .signaling.models import SignalEvent
from .signaling.registry import normalize_room_id
from .transfer import (
    ChunkReceiver, FileSender, Transfer, TransferLedger, TransferDirection,
)

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
ROOM_CODE_LENGTH = 6


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    """Random room code of upper-case letters and digits."""
    return ''.join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def _safe_filename(name: str) -> str:
    name = Path(name.replace('\\', '/')).name.strip()
    if name in ('', '.', '..'):
        return 'download'
    return name


def _unique_path(directory: Path, name: str) -> Path:
    """First of name, "stem (1).ext", "stem (2).ext"... not already taken."""
    path = directory / name
    counter = 1
    while path.exists():
        path = directory / f"{Path(name).stem} ({counter}){Path(name).suffix}"
        counter += 1
    return path


class PeerNode:
    """
    A complete file sharing peer.

    Combines all components into a unified interface:
    - create_room() / join_room(code): rendezvous with other peers
    - send_file(path): send a file to every connected peer
    - save_transfer(id): write a completed incoming transfer to disk
    - incoming / outgoing: the transfer ledger
    """

    def __init__(self, config: Optional[Config] = None,
                 signaling: Optional[SignalingClient] = None,
                 connection_factory: Optional[Callable[[], Any]] = None):
        """
        Initialize a peer node.

        Args:
            config: Node configuration (uses defaults if not provided)
            signaling: Signaling client (built from config if not provided)
            connection_factory: Creates peer connections (aiortc if not provided)
        """
        self.config = config or Config()

        self.signaling = signaling or SignalingClient(
            self.config.server_url,
            health_timeout=self.config.health_timeout,
            connect_timeout=self.config.connect_timeout,
            reconnect_attempts=self.config.reconnect_attempts,
            reconnect_delay=self.config.reconnect_delay,
        )

        if connection_factory is None:
            ice_servers = list(self.config.ice_servers)
            connection_factory = lambda: create_peer_connection(ice_servers)

        self.orchestrator = SessionOrchestrator(
            self.signaling,
            connection_factory,
            connect_timeout=self.config.connect_timeout,
        )

        self.ledger = TransferLedger()
        self.receiver = ChunkReceiver(self.ledger)
        self.sender = FileSender(
            self.ledger,
            chunk_size=self.config.chunk_size,
            max_buffered_amount=self.config.max_buffered_amount,
            buffered_amount_low_threshold=self.config.buffered_amount_low_threshold,
        )

        # State
        self.connection_state = ConnectionState.DISCONNECTED
        self.connection_error: Optional[str] = None
        self._room_id: Optional[str] = None
        self._peers_changed = asyncio.Event()

        self._wire()

    def _wire(self):
        signaling = self.signaling
        signaling.on(SignalEvent.ALL_USERS, self._on_all_users)
        signaling.on(SignalEvent.USER_JOINED, self._on_user_joined)
        signaling.on(SignalEvent.OFFER, self._on_offer)
        signaling.on(SignalEvent.ANSWER, self._on_answer)
        signaling.on(SignalEvent.ICE_CANDIDATE, self._on_candidate)
        signaling.on(SignalEvent.USER_DISCONNECTED, self._on_user_disconnected)
        signaling.on(SignalEvent.ERROR, self._on_server_error)
        signaling.on(DISCONNECT, self._on_signaling_lost)

        self.orchestrator.on_channel(self._on_channel)
        self.orchestrator.on_connected(lambda session: self._notify_peers())
        self.orchestrator.on_closed(self._on_session_closed)

    # === Properties ===

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def member_id(self) -> Optional[str]:
        return self.signaling.member_id

    @property
    def connected_peers(self) -> List[str]:
        return self.orchestrator.connected_peers

    @property
    def incoming(self) -> List[Transfer]:
        return self.ledger.incoming

    @property
    def outgoing(self) -> List[Transfer]:
        return self.ledger.outgoing

    # === Signaling events ===

    def _on_all_users(self, members):
        self.connection_state = ConnectionState.CONNECTED
        self.connection_error = None
        members = members or []
        logger.info(f"Joined room {self._room_id} with {len(members)} other member(s)")
        self.orchestrator.connect_to(members)

    def _on_user_joined(self, member_id):
        # The newcomer sends the offer
        logger.info(f"User joined: {member_id}")

    def _on_offer(self, data):
        self.orchestrator.handle_offer(data['senderMemberId'], data['offer'])

    def _on_answer(self, data):
        self.orchestrator.handle_answer(data['senderMemberId'], data['answer'])

    def _on_candidate(self, data):
        self.orchestrator.handle_candidate(data['senderMemberId'], data['candidate'])

    def _on_user_disconnected(self, member_id):
        logger.info(f"User disconnected: {member_id}")
        self.orchestrator.handle_member_left(member_id)

    def _on_server_error(self, data):
        message = data.get('message') if isinstance(data, dict) else data
        logger.warning(f"Signaling server error: {message}")

    async def _on_signaling_lost(self, _):
        self.connection_state = ConnectionState.DISCONNECTED
        await self.orchestrator.close_all("signaling connection lost")
        self._notify_peers()

    # === Session events ===

    def _on_channel(self, session: PeerSession, channel):
        peer_id = session.remote_id

        @channel.on('message')
        def on_message(message):
            self.receiver.handle_message(peer_id, message)

        @channel.on('open')
        def on_open():
            logger.info(f"Data channel opened with {peer_id}")
            self._notify_peers()

        @channel.on('close')
        def on_close():
            logger.info(f"Data channel closed with {peer_id}")
            self._notify_peers()

        if channel.readyState == 'open':
            self._notify_peers()

    def _on_session_closed(self, session: PeerSession):
        failed = self.receiver.fail_peer(
            session.remote_id, f"Peer session {session.state.value}"
        )
        if failed:
            logger.warning(f"{failed} incoming transfer(s) from {session.remote_id} failed")
        self._notify_peers()

    def _notify_peers(self):
        self._peers_changed.set()

    # === Rooms ===

    async def join_room(self, room_id: str) -> bool:
        """
        Join a room, connecting to the signaling server first if needed.

        Returns:
            False with `connection_error` set if the server is unreachable
        """
        room_id = normalize_room_id(room_id)
        self.connection_error = None

        if not self.signaling.is_connected:
            self.connection_state = ConnectionState.CONNECTING
            if not await self.signaling.connect():
                self.connection_state = ConnectionState.FAILED
                self.connection_error = self.signaling.error
                return False

        if self._room_id is not None and self._room_id != room_id:
            await self.orchestrator.close_all(f"left room {self._room_id}")

        self._room_id = room_id
        await self.signaling.join_room(room_id)
        return True

    async def create_room(self) -> Optional[str]:
        """Join a freshly generated room. Returns the code, or None on failure."""
        room_id = generate_room_code()
        if not await self.join_room(room_id):
            return None
        logger.info(f"Created room {room_id}")
        return room_id

    async def wait_for_peers(self, count: int = 1, timeout: Optional[float] = None) -> bool:
        """
        Wait until at least `count` data channels are open.

        Returns:
            False if the timeout expired first
        """
        async def wait():
            while len(self.orchestrator.open_channels()) < count:
                self._peers_changed.clear()
                await self._peers_changed.wait()

        try:
            await asyncio.wait_for(wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # === Transfers ===

    async def send_file(self, file_path: Path, mime_type: Optional[str] = None) -> Transfer:
        """Send a file to every peer with an open data channel."""
        return await self.sender.send_file(
            file_path, self.orchestrator.open_channels(), mime_type
        )

    async def send_bytes(self, name: str, data: bytes,
                         mime_type: str = 'application/octet-stream') -> Transfer:
        return await self.sender.send_bytes(
            name, data, self.orchestrator.open_channels(), mime_type
        )

    async def save_transfer(self, transfer_id: str,
                            output_dir: Optional[Path] = None) -> Path:
        """
        Write a completed incoming transfer to disk.

        Existing files are never overwritten; a numbered name is used instead.

        Returns:
            Path of the written file
        """
        payload = self.ledger.completed_payload(transfer_id)
        if payload is None:
            raise TransferNotFoundError(f"No completed incoming transfer {transfer_id}")

        transfer = self.ledger.get(transfer_id, TransferDirection.INCOMING)
        output_dir = Path(output_dir or self.config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        path = _unique_path(output_dir, _safe_filename(transfer.name))
        async with aiofiles.open(path, 'wb') as f:
            await f.write(payload)

        logger.info(f"Saved {transfer.name} ({len(payload):,} bytes) to {path}")
        return path

    # === Lifecycle ===

    async def stop(self):
        """Close every peer session and the signaling connection."""
        logger.info("Stopping peer node...")
        await self.orchestrator.close_all("node stopped")
        await self.signaling.close()
        self.connection_state = ConnectionState.DISCONNECTED
        self._room_id = None
        logger.info("Peer node stopped")

    def get_stats(self) -> dict:
        """Get complete node statistics."""
        return {
            'member_id': self.member_id,
            'room_id': self._room_id,
            'connection_state': self.connection_state.value,
            'connection_error': self.connection_error,
            'sessions': self.orchestrator.get_stats(),
            'sender': self.sender.get_stats(),
            'receiver': self.receiver.get_stats(),
            'ledger': self.ledger.get_stats(),
        }
