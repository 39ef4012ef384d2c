"""
Transfer Module - Chunked File Transfer over Data Channels

Frames, sends, receives and tracks files moving between peers.
"""

from .protocol import (
    ControlMessageType, FileStart, parse_control_message,
    encode_transfer_id, decode_transfer_id, normalize_transfer_id,
    encode_chunk, decode_chunk, TRANSFER_ID_BYTES,
)
from .ledger import Transfer, TransferLedger, TransferStatus, TransferDirection
from .receiver import ChunkReceiver
from .sender import FileSender, CHUNK_SIZE

__all__ = [
    'ControlMessageType',
    'FileStart',
    'parse_control_message',
    'encode_transfer_id',
    'decode_transfer_id',
    'normalize_transfer_id',
    'encode_chunk',
    'decode_chunk',
    'TRANSFER_ID_BYTES',
    'Transfer',
    'TransferLedger',
    'TransferStatus',
    'TransferDirection',
    'ChunkReceiver',
    'FileSender',
    'CHUNK_SIZE',
]
