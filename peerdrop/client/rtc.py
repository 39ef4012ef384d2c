"""
WebRTC adapters.

Builds aiortc peer connections from configured STUN URLs and converts
session descriptions and ICE candidates to and from the JSON shapes
browsers put on the signaling channel:

    description: {"type": "offer", "sdp": "v=0..."}
    candidate:   {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}
"""

from typing import List, Optional

from aiortc import (
    RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

DATA_CHANNEL_LABEL = "fileTransfer"
CANDIDATE_PREFIX = "candidate:"


def build_rtc_configuration(ice_servers: List[str]) -> RTCConfiguration:
    """RTCConfiguration with one RTCIceServer per STUN/TURN URL."""
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


def create_peer_connection(ice_servers: List[str]) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {'type': description.type, 'sdp': description.sdp}


def description_from_dict(data: dict) -> RTCSessionDescription:
    """
    Parse a JSON session description.

    Raises:
        ValueError: missing fields or an unknown description type
    """
    if not isinstance(data, dict) or 'sdp' not in data or 'type' not in data:
        raise ValueError(f"Not a session description: {data!r:.80}")
    return RTCSessionDescription(sdp=data['sdp'], type=data['type'])


def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    return {
        'candidate': CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict) -> Optional[RTCIceCandidate]:
    """
    Parse a JSON ICE candidate.

    Returns:
        The candidate, or None for an end-of-candidates marker
    """
    if not isinstance(data, dict):
        raise ValueError(f"Not an ICE candidate: {data!r:.80}")

    text = data.get('candidate') or ''
    if not text:
        return None
    if text.startswith(CANDIDATE_PREFIX):
        text = text[len(CANDIDATE_PREFIX):]

    candidate = candidate_from_sdp(text)
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate
