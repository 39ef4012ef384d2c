"""
Transfer Ledger

Tracks every incoming and outgoing transfer by transfer id. Entries are
never removed or replaced by the core; updates merge into the existing
record so the presentation layer can show finished transfers and fetch
their payloads.
"""

import time
import logging
from collections import OrderedDict
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..errors import DuplicateTransferError, TransferNotFoundError

logger = logging.getLogger(__name__)


class TransferStatus(Enum):
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED)


class TransferDirection(Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


@dataclass
class Transfer:
    """One file moving between this client and one or more peers."""
    id: str
    name: str
    size: int
    mime_type: str
    direction: TransferDirection
    peer: Optional[str] = None  # sender of an incoming transfer

    progress: int = 0  # percent, never decreases
    status: TransferStatus = TransferStatus.PENDING
    bytes_transferred: int = 0
    error: Optional[str] = None

    # Outgoing only: per-peer progress and the peers whose stream failed
    peer_progress: Dict[str, int] = field(default_factory=dict)
    failed_peers: List[str] = field(default_factory=list)

    # Incoming only, once completed
    payload: Optional[bytes] = None

    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.status == TransferStatus.COMPLETED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization (payload excluded)."""
        return {
            'id': self.id,
            'name': self.name,
            'size': self.size,
            'type': self.mime_type,
            'direction': self.direction.value,
            'peer': self.peer,
            'progress': self.progress,
            'status': self.status.value,
            'bytes_transferred': self.bytes_transferred,
            'error': self.error,
            'peers': dict(self.peer_progress),
            'failed_peers': list(self.failed_peers),
            'created_at': self.created_at,
            'completed_at': self.completed_at,
        }


# Called after every add/update with the affected transfer
TransferListener = Callable[[Transfer], None]

_UPDATABLE_FIELDS = {
    'bytes_transferred', 'error', 'payload', 'peer_progress', 'failed_peers',
}


class TransferLedger:
    """
    Insertion-ordered record of incoming and outgoing transfers.

    Only the transfer codec writes to the ledger; everything else reads.
    """

    def __init__(self):
        self._incoming: 'OrderedDict[str, Transfer]' = OrderedDict()
        self._outgoing: 'OrderedDict[str, Transfer]' = OrderedDict()
        self._listeners: List[TransferListener] = []

    def _table(self, direction: TransferDirection) -> 'OrderedDict[str, Transfer]':
        if direction == TransferDirection.INCOMING:
            return self._incoming
        return self._outgoing

    @property
    def incoming(self) -> List[Transfer]:
        return list(self._incoming.values())

    @property
    def outgoing(self) -> List[Transfer]:
        return list(self._outgoing.values())

    def subscribe(self, listener: TransferListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, transfer: Transfer):
        for listener in list(self._listeners):
            try:
                listener(transfer)
            except Exception:
                logger.exception(f"Transfer listener failed for {transfer.id}")

    def add(self, transfer: Transfer) -> Transfer:
        """Append a new transfer. Existing ids are never overwritten."""
        table = self._table(transfer.direction)
        if transfer.id in table:
            raise DuplicateTransferError(
                f"{transfer.direction.value} transfer {transfer.id} already exists"
            )
        table[transfer.id] = transfer
        logger.debug(f"Ledger: added {transfer.direction.value} transfer "
                     f"{transfer.id} ({transfer.name}, {transfer.size:,} bytes)")
        self._notify(transfer)
        return transfer

    def get(self, transfer_id: str,
            direction: Optional[TransferDirection] = None) -> Optional[Transfer]:
        """Look up a transfer, optionally restricted to one direction."""
        if direction is not None:
            return self._table(direction).get(transfer_id)
        return self._incoming.get(transfer_id) or self._outgoing.get(transfer_id)

    def update(self, transfer_id: str, direction: TransferDirection,
               progress: Optional[int] = None,
               status: Optional[TransferStatus] = None,
               **changes) -> Transfer:
        """
        Merge changes into an existing transfer.

        Progress is clamped to 0..100, never lowered, and only reaches 100
        together with the completed status. Completed and failed are final;
        later updates are ignored.
        """
        transfer = self._table(direction).get(transfer_id)
        if transfer is None:
            raise TransferNotFoundError(f"No {direction.value} transfer {transfer_id}")

        if transfer.status.is_terminal:
            logger.debug(f"Ignoring update to finished transfer {transfer_id}")
            return transfer

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown transfer fields: {', '.join(sorted(unknown))}")

        for key, value in changes.items():
            setattr(transfer, key, value)

        if status is not None:
            transfer.status = status

        if progress is not None:
            progress = max(0, min(int(progress), 100))
            transfer.progress = max(transfer.progress, progress)

        if transfer.status == TransferStatus.COMPLETED:
            transfer.progress = 100
            transfer.completed_at = time.time()
        elif transfer.progress >= 100:
            transfer.progress = 99

        if transfer.status == TransferStatus.FAILED:
            transfer.completed_at = time.time()

        self._notify(transfer)
        return transfer

    def completed_payload(self, transfer_id: str) -> Optional[bytes]:
        """Payload of a completed incoming transfer, or None."""
        transfer = self._incoming.get(transfer_id)
        if transfer is None or not transfer.is_complete:
            return None
        return transfer.payload

    def get_stats(self) -> dict:
        """Get ledger statistics."""
        def count(table, status):
            return sum(1 for t in table.values() if t.status == status)

        return {
            'incoming': len(self._incoming),
            'outgoing': len(self._outgoing),
            'incoming_completed': count(self._incoming, TransferStatus.COMPLETED),
            'outgoing_completed': count(self._outgoing, TransferStatus.COMPLETED),
            'failed': (count(self._incoming, TransferStatus.FAILED) +
                       count(self._outgoing, TransferStatus.FAILED)),
        }
