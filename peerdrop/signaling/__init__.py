"""
Signaling Module - Room Registry and Negotiation Relay

Server side of the rendezvous: who is in which room, and forwarding
offers/answers/candidates between them. No file data passes through here.
"""

from .registry import Room, RoomRegistry, normalize_room_id
from .relay import SignalingRelay
from .models import SignalEvent, make_event
from .server import create_app, run_server

__all__ = [
    'Room',
    'RoomRegistry',
    'normalize_room_id',
    'SignalingRelay',
    'SignalEvent',
    'make_event',
    'create_app',
    'run_server',
]
