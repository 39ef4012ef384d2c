"""
PeerDrop - Room-based peer-to-peer file sharing over WebRTC data channels.

A small signaling server introduces members of a room to each other; files
then travel directly between peers in 16KB chunks.
"""

from .config import Config, load_config
from .node import PeerNode, generate_room_code

__version__ = '1.0.0'

__all__ = [
    'Config',
    'load_config',
    'PeerNode',
    'generate_room_code',
]
