"""
Client Module - Signaling Client and Peer Sessions

Connects to the signaling server and turns relayed negotiation messages
into one WebRTC data channel per room member.
"""

from .signaling import SignalingClient, ConnectionState, CONNECT, DISCONNECT
from .session import (
    PeerSession, SessionOrchestrator, SessionState, SessionRole, CONNECTION_TIMEOUT,
)
from .rtc import DATA_CHANNEL_LABEL, create_peer_connection, build_rtc_configuration

__all__ = [
    'SignalingClient',
    'ConnectionState',
    'CONNECT',
    'DISCONNECT',
    'PeerSession',
    'SessionOrchestrator',
    'SessionState',
    'SessionRole',
    'CONNECTION_TIMEOUT',
    'DATA_CHANNEL_LABEL',
    'create_peer_connection',
    'build_rtc_configuration',
]
