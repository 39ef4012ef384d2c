"""
Room Registry

Holds the active rooms and their members. A room exists exactly while it
has at least one member; a member is in at most one room.

Concurrency: every mutation of a room runs under that room's asyncio.Lock,
so joins and leaves on the same room never interleave while rooms are
independent of each other.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


def normalize_room_id(room_id: str) -> str:
    """Room codes are case-insensitive."""
    return room_id.strip().upper()


@dataclass
class Room:
    """A named rendezvous group."""
    room_id: str
    members: Set[str] = field(default_factory=set)


class RoomRegistry:
    """Explicitly owned room table, injected into the signaling relay."""

    def __init__(self):
        self._rooms: Dict[str, Room] = {}
        self._member_rooms: Dict[str, str] = {}  # member_id -> room_id
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    async def join(self, room_id: str, member_id: str) -> List[str]:
        """
        Add a member to a room, creating the room if needed.

        A member already in another room is moved out of it first; use
        `leave` beforehand to learn who was left behind.

        Returns:
            The other members of the room, excluding the joiner
        """
        room_id = normalize_room_id(room_id)
        if not room_id:
            raise ValueError("Room id must not be empty")

        previous = self._member_rooms.get(member_id)
        if previous is not None and previous != room_id:
            await self._remove(previous, member_id)

        async with self._lock(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                room = self._rooms[room_id] = Room(room_id=room_id)
                logger.info(f"Room {room_id} created")

            others = sorted(m for m in room.members if m != member_id)
            room.members.add(member_id)
            self._member_rooms[member_id] = room_id

        logger.info(f"{member_id} joined room {room_id}. Room size: {len(room.members)}")
        return others

    async def leave(self, member_id: str) -> List[Tuple[str, List[str]]]:
        """
        Remove a member from every room it belongs to.

        Returns:
            (room_id, remaining_members) for each room that was left
        """
        room_id = self._member_rooms.get(member_id)
        if room_id is None:
            return []

        remaining = await self._remove(room_id, member_id)
        return [(room_id, remaining)]

    async def _remove(self, room_id: str, member_id: str) -> List[str]:
        async with self._lock(room_id):
            room = self._rooms.get(room_id)
            if self._member_rooms.get(member_id) == room_id:
                del self._member_rooms[member_id]
            if room is None:
                return []

            room.members.discard(member_id)
            remaining = sorted(room.members)

            if not room.members:
                del self._rooms[room_id]
                self._locks.pop(room_id, None)
                logger.info(f"Room {room_id} is empty, removed")

        logger.info(f"{member_id} left room {room_id}")
        return remaining

    def get_members(self, room_id: str) -> List[str]:
        room = self._rooms.get(normalize_room_id(room_id))
        return sorted(room.members) if room else []

    def get_room_of(self, member_id: str) -> Optional[str]:
        return self._member_rooms.get(member_id)

    def has_room(self, room_id: str) -> bool:
        return normalize_room_id(room_id) in self._rooms

    def list_rooms(self) -> List[str]:
        return sorted(self._rooms)

    def get_stats(self) -> dict:
        """Get registry statistics."""
        return {
            'rooms': len(self._rooms),
            'members': len(self._member_rooms),
            'largest_room': max((len(r.members) for r in self._rooms.values()), default=0),
        }
