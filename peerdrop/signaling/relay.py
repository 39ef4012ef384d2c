"""
Signaling Relay

Store-and-forward fan-out keyed by room membership. The relay knows who is
connected and which room they are in; it does not know or care what the
negotiation payloads mean.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .models import SignalEvent, RELAY_FIELDS, make_event
from .registry import RoomRegistry, normalize_room_id

logger = logging.getLogger(__name__)

# Sends one JSON-serializable frame to a connected client
SendFunc = Callable[[dict], Awaitable[None]]


class SignalingRelay:
    """
    Routes signaling events between connected members.

    The registry is injected so several relays (or tests) never share an
    ambient room table.
    """

    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry()
        self._connections: Dict[str, SendFunc] = {}

        # Statistics
        self.messages_relayed = 0
        self.messages_dropped = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def is_connected(self, member_id: str) -> bool:
        return member_id in self._connections

    def register(self, member_id: str, send: SendFunc):
        """Attach a member's connection."""
        self._connections[member_id] = send
        logger.info(f"Member connected: {member_id} ({len(self._connections)} total)")

    async def send_to(self, member_id: str, event: SignalEvent, data: Any = None) -> bool:
        """
        Send an event to one member.

        Returns:
            False if the member is not connected or the send failed
        """
        send = self._connections.get(member_id)
        if send is None:
            logger.debug(f"Member {member_id} not connected, dropping {event.value}")
            return False

        try:
            await send(make_event(event, data))
            return True
        except Exception as e:
            logger.error(f"Error sending {event.value} to {member_id}: {e}")
            return False

    async def join(self, member_id: str, room_id: str) -> List[str]:
        """
        Put a member into a room and introduce it to the others.

        The joiner gets `all-users` with the existing members; each existing
        member gets `user-joined` with the joiner.
        """
        room_id = normalize_room_id(room_id)
        if not room_id:
            raise ValueError("Room id must not be empty")

        previous = self.registry.get_room_of(member_id)
        if previous is not None and previous != room_id:
            await self._leave_rooms(member_id)

        others = await self.registry.join(room_id, member_id)

        await self.send_to(member_id, SignalEvent.ALL_USERS, others)
        if previous == room_id:
            # Already introduced
            return others
        for other in others:
            await self.send_to(other, SignalEvent.USER_JOINED, member_id)

        return others

    async def relay(self, event: SignalEvent, sender_id: str, target_id: str,
                    payload: Any) -> bool:
        """
        Forward a negotiation payload to exactly one member.

        The sender id is stamped here; whatever the client claimed is ignored.
        Dropped silently if the target is not connected.
        """
        if event not in RELAY_FIELDS:
            raise ValueError(f"{event.value} is not a relayed event")

        if target_id not in self._connections:
            self.messages_dropped += 1
            logger.debug(f"Dropping {event.value} from {sender_id}: "
                         f"{target_id} not connected")
            return False

        delivered = await self.send_to(target_id, event, {
            RELAY_FIELDS[event]: payload,
            'senderMemberId': sender_id,
        })
        if delivered:
            self.messages_relayed += 1
            logger.debug(f"Relayed {event.value}: {sender_id} -> {target_id}")
        else:
            self.messages_dropped += 1
        return delivered

    async def disconnect(self, member_id: str):
        """Detach a member, leave its rooms and tell the members left behind."""
        self._connections.pop(member_id, None)
        await self._leave_rooms(member_id)
        logger.info(f"Member disconnected: {member_id} ({len(self._connections)} total)")

    async def _leave_rooms(self, member_id: str):
        for room_id, remaining in await self.registry.leave(member_id):
            for other in remaining:
                await self.send_to(other, SignalEvent.USER_DISCONNECTED, member_id)

    def get_stats(self) -> dict:
        """Get relay statistics."""
        return {
            'connections': len(self._connections),
            'messages_relayed': self.messages_relayed,
            'messages_dropped': self.messages_dropped,
            **self.registry.get_stats(),
        }
