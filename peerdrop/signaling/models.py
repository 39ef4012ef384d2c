"""
Signaling wire models.

Every WebSocket frame is a JSON object {"event": <name>, "data": <payload>}.
Negotiation payloads (SDP, candidates) are opaque to the service and
forwarded as-is.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SignalEvent(str, Enum):
    """Event names used on the signaling WebSocket."""
    # service -> client
    WELCOME = "welcome"
    ALL_USERS = "all-users"
    USER_JOINED = "user-joined"
    USER_DISCONNECTED = "user-disconnected"
    ERROR = "error"

    # client -> service
    JOIN_ROOM = "join-room"

    # both directions (relayed)
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


# Relayed event -> name of the field carrying its payload
RELAY_FIELDS = {
    SignalEvent.OFFER: 'offer',
    SignalEvent.ANSWER: 'answer',
    SignalEvent.ICE_CANDIDATE: 'candidate',
}


class Envelope(BaseModel):
    """A single signaling frame."""
    event: str
    data: Any = None


class JoinRoom(BaseModel):
    """Validated payload of join-room (a bare room code string on the wire)."""
    room_id: str = Field(min_length=1, max_length=64)


class RelayRequest(BaseModel):
    """Inbound offer / answer / ice-candidate payload."""
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    target_member_id: str = Field(alias='targetMemberId', min_length=1)
    offer: Optional[Dict[str, Any]] = None
    answer: Optional[Dict[str, Any]] = None
    candidate: Optional[Dict[str, Any]] = None

    def payload_for(self, event: SignalEvent) -> Optional[Dict[str, Any]]:
        return getattr(self, RELAY_FIELDS[event])


class HealthStatus(BaseModel):
    """GET /health response."""
    status: str = "ok"
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


class ServerStats(BaseModel):
    """GET /stats response."""
    connections: int
    rooms: int
    members: int
    largest_room: int
    room_ids: List[str]


def make_event(event: SignalEvent, data: Any = None) -> dict:
    """Build an outgoing frame."""
    return {'event': event.value, 'data': data}
