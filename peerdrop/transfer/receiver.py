"""
Chunk Receiver

Reassembles incoming transfers from data channel messages.

Receive Flow:
1. Text frame -> control message; file-start opens a reassembly buffer
2. Binary frame -> look up the buffer by the 36-byte id prefix, append
3. When received bytes reach the declared size, join the chunks, attach
   the payload to the ledger entry and drop the buffer
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Union

from .ledger import Transfer, TransferLedger, TransferDirection, TransferStatus
from .protocol import (
    ControlMessageType, FileStart, parse_control_message, decode_chunk,
    normalize_transfer_id, calculate_progress,
)
from ..errors import ProtocolError

logger = logging.getLogger(__name__)


@dataclass
class PendingTransfer:
    """Reassembly state for one incoming transfer."""
    transfer_id: str  # ledger id, as announced by the sender
    peer_id: str
    total: int
    chunks: List[bytes] = field(default_factory=list)
    received: int = 0


class ChunkReceiver:
    """
    Turns data channel messages into completed incoming transfers.

    Pending buffers are keyed by the id as it appears on the wire and are
    evicted on completion or when the owning peer goes away.
    """

    def __init__(self, ledger: TransferLedger):
        self.ledger = ledger
        self._pending: Dict[str, PendingTransfer] = {}

        # Statistics
        self.chunks_received = 0
        self.bytes_received = 0
        self.chunks_dropped = 0
        self.messages_rejected = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_pending(self, transfer_id: str) -> bool:
        return normalize_transfer_id(transfer_id) in self._pending

    def handle_message(self, peer_id: str, message: Union[str, bytes]):
        """Entry point for every message arriving on a peer's data channel."""
        if isinstance(message, str):
            self._handle_control(peer_id, message)
        else:
            self._handle_chunk(peer_id, message)

    # === Control messages ===

    def _handle_control(self, peer_id: str, text: str):
        try:
            message = parse_control_message(text)
        except ProtocolError as e:
            self.messages_rejected += 1
            logger.warning(f"Dropping malformed control message from {peer_id}: {e}")
            return

        if message.type == ControlMessageType.FILE_START:
            self._start_transfer(peer_id, message)

    def _start_transfer(self, peer_id: str, start: FileStart):
        key = normalize_transfer_id(start.transfer_id)

        if key in self._pending or self.ledger.get(start.transfer_id, TransferDirection.INCOMING):
            self.messages_rejected += 1
            logger.warning(f"Ignoring duplicate file-start {start.transfer_id} from {peer_id}")
            return

        logger.info(f"Receiving {start.name} ({start.size:,} bytes) from {peer_id}")

        self.ledger.add(Transfer(
            id=start.transfer_id,
            name=start.name,
            size=start.size,
            mime_type=start.file_type,
            direction=TransferDirection.INCOMING,
            peer=peer_id,
            status=TransferStatus.TRANSFERRING,
        ))

        if start.size == 0:
            # Nothing will follow
            self.ledger.update(
                start.transfer_id, TransferDirection.INCOMING,
                status=TransferStatus.COMPLETED, payload=b'',
            )
            logger.info(f"Transfer complete: {start.name} (empty file)")
            return

        self._pending[key] = PendingTransfer(
            transfer_id=start.transfer_id,
            peer_id=peer_id,
            total=start.size,
        )

    # === Chunks ===

    def _handle_chunk(self, peer_id: str, frame: bytes):
        try:
            key, payload = decode_chunk(bytes(frame))
        except ProtocolError as e:
            self.messages_rejected += 1
            logger.warning(f"Dropping malformed chunk from {peer_id}: {e}")
            return

        pending = self._pending.get(key)
        if pending is None or pending.peer_id != peer_id:
            self.chunks_dropped += 1
            logger.debug(f"Dropping chunk for unknown transfer {key!r} from {peer_id}")
            return

        pending.chunks.append(payload)
        pending.received += len(payload)
        self.chunks_received += 1
        self.bytes_received += len(payload)

        if pending.received >= pending.total:
            data = b''.join(pending.chunks)
            del self._pending[key]
            self.ledger.update(
                pending.transfer_id, TransferDirection.INCOMING,
                status=TransferStatus.COMPLETED,
                bytes_transferred=pending.received,
                payload=data,
            )
            logger.info(f"Transfer complete: {pending.transfer_id} "
                        f"({len(data):,} bytes from {peer_id})")
        else:
            self.ledger.update(
                pending.transfer_id, TransferDirection.INCOMING,
                progress=calculate_progress(pending.received, pending.total),
                bytes_transferred=pending.received,
            )

    def fail_peer(self, peer_id: str, reason: str = "Peer disconnected") -> int:
        """
        Fail every in-flight transfer from a peer whose session ended.

        Returns:
            Number of transfers marked failed
        """
        keys = [k for k, p in self._pending.items() if p.peer_id == peer_id]
        for key in keys:
            pending = self._pending.pop(key)
            self.ledger.update(
                pending.transfer_id, TransferDirection.INCOMING,
                status=TransferStatus.FAILED, error=reason,
            )
            logger.warning(f"Transfer {pending.transfer_id} from {peer_id} failed: "
                           f"{reason} ({pending.received:,}/{pending.total:,} bytes)")
        return len(keys)

    def get_stats(self) -> dict:
        """Get receiver statistics."""
        return {
            'pending': len(self._pending),
            'chunks_received': self.chunks_received,
            'bytes_received': self.bytes_received,
            'chunks_dropped': self.chunks_dropped,
            'messages_rejected': self.messages_rejected,
        }
