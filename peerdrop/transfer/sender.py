"""
File Sender

Design Decision: Pacing Outgoing Chunks
=======================================

Options Considered:
1. Fixed sleep between chunks
   - Trivial, but either too slow on fast links or too fast on slow ones

2. Backpressure from the data channel
   - `bufferedAmount` says how much is queued but not yet sent
   - `bufferedamountlow` fires once the queue drains below a threshold

Decision: Backpressure
- Keep sending while bufferedAmount <= max_buffered_amount
- Otherwise wait for `bufferedamountlow` (re-checking channel state on a
  short poll so a closed channel never leaves us waiting)

Send Flow (per peer, independent of other peers):
1. Send the file-start control message
2. Read the file sequentially in chunk_size slices
3. Check the channel is open, frame the slice, send it
4. Update the peer's progress; the transfer's progress is the slowest
   surviving peer
"""

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

import aiofiles

from .ledger import Transfer, TransferLedger, TransferDirection, TransferStatus
from .protocol import FileStart, encode_chunk, calculate_progress

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024  # 16KB
MAX_BUFFERED_AMOUNT = 1024 * 1024
BUFFERED_AMOUNT_LOW_THRESHOLD = 256 * 1024
DEFAULT_MIME_TYPE = 'application/octet-stream'


class _BytesReader:
    """Async reader over an in-memory payload, shaped like an aiofiles handle."""

    def __init__(self, data: bytes):
        self._data = memoryview(data)
        self._offset = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def read(self, size: int) -> bytes:
        chunk = bytes(self._data[self._offset:self._offset + size])
        self._offset += len(chunk)
        return chunk


class _OutgoingState:
    """Bytes sent to each peer for one outgoing transfer."""

    def __init__(self, transfer: Transfer, peers: List[str]):
        self.transfer = transfer
        self.sent: Dict[str, int] = {peer: 0 for peer in peers}
        self.failed: List[str] = []

    @property
    def active(self) -> List[str]:
        return [p for p in self.sent if p not in self.failed]

    def peer_progress(self) -> Dict[str, int]:
        return {p: calculate_progress(n, self.transfer.size) for p, n in self.sent.items()}

    def slowest(self) -> int:
        active = self.active
        if not active:
            return 0
        return min(self.sent[p] for p in active)


class FileSender:
    """
    Streams files to every peer whose data channel is open.

    Channels are passed in per call as a peer id -> channel mapping, so the
    sender never touches the session map.
    """

    def __init__(self, ledger: TransferLedger, chunk_size: int = CHUNK_SIZE,
                 max_buffered_amount: int = MAX_BUFFERED_AMOUNT,
                 buffered_amount_low_threshold: int = BUFFERED_AMOUNT_LOW_THRESHOLD,
                 drain_poll_interval: float = 0.5):
        self.ledger = ledger
        self.chunk_size = chunk_size
        self.max_buffered_amount = max_buffered_amount
        self.buffered_amount_low_threshold = buffered_amount_low_threshold
        self.drain_poll_interval = drain_poll_interval

        # Statistics
        self.chunks_sent = 0
        self.bytes_sent = 0

    async def send_file(self, file_path: Path, channels: Dict[str, object],
                        mime_type: Optional[str] = None) -> Transfer:
        """
        Send a file to every open channel.

        Returns once every peer stream has finished or failed.
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        if mime_type is None:
            mime_type = mimetypes.guess_type(file_path.name)[0] or DEFAULT_MIME_TYPE

        return await self._send(
            name=file_path.name,
            size=file_path.stat().st_size,
            mime_type=mime_type,
            open_source=lambda: aiofiles.open(file_path, 'rb'),
            channels=channels,
        )

    async def send_bytes(self, name: str, data: bytes, channels: Dict[str, object],
                         mime_type: str = DEFAULT_MIME_TYPE) -> Transfer:
        """Send an in-memory payload to every open channel."""
        return await self._send(
            name=name,
            size=len(data),
            mime_type=mime_type,
            open_source=lambda: _BytesReader(data),
            channels=channels,
        )

    async def _send(self, name: str, size: int, mime_type: str,
                    open_source: Callable, channels: Dict[str, object]) -> Transfer:
        transfer = self.ledger.add(Transfer(
            id=str(uuid.uuid4()),
            name=name,
            size=size,
            mime_type=mime_type,
            direction=TransferDirection.OUTGOING,
        ))

        open_channels = {
            peer_id: channel for peer_id, channel in channels.items()
            if channel.readyState == 'open'
        }
        if not open_channels:
            logger.warning(f"Not sending {name}: no open peer channels")
            return self.ledger.update(
                transfer.id, TransferDirection.OUTGOING,
                status=TransferStatus.FAILED, error="No connected peers",
            )

        state = _OutgoingState(transfer, list(open_channels))
        self.ledger.update(
            transfer.id, TransferDirection.OUTGOING,
            status=TransferStatus.TRANSFERRING,
            peer_progress=state.peer_progress(),
        )

        logger.info(f"Sending {name} ({size:,} bytes) to {len(open_channels)} peer(s)")

        start = FileStart(transfer_id=transfer.id, name=name, size=size, file_type=mime_type)
        await asyncio.gather(*(
            self._stream(state, peer_id, channel, start, open_source)
            for peer_id, channel in open_channels.items()
        ))

        if state.active:
            logger.info(f"Sent {name} to {len(state.active)} peer(s)")
            return self.ledger.update(
                transfer.id, TransferDirection.OUTGOING,
                status=TransferStatus.COMPLETED,
                bytes_transferred=size,
                peer_progress=state.peer_progress(),
                failed_peers=list(state.failed),
            )

        return self.ledger.update(
            transfer.id, TransferDirection.OUTGOING,
            status=TransferStatus.FAILED,
            error="Every peer stream failed",
            peer_progress=state.peer_progress(),
            failed_peers=list(state.failed),
        )

    async def _stream(self, state: _OutgoingState, peer_id: str, channel,
                      start: FileStart, open_source: Callable) -> bool:
        """Send one transfer to one peer. Returns True on success."""
        size = start.size
        try:
            self._ensure_open(channel, peer_id)
            channel.bufferedAmountLowThreshold = self.buffered_amount_low_threshold
            channel.send(start.to_json())

            sent = 0
            if size == 0:
                return True

            async with open_source() as reader:
                while sent < size:
                    data = await reader.read(self.chunk_size)
                    if not data:
                        raise IOError(f"Source ended after {sent:,} of {size:,} bytes")

                    await self._wait_for_buffer(channel, peer_id)
                    self._ensure_open(channel, peer_id)
                    channel.send(encode_chunk(start.transfer_id, data))

                    sent += len(data)
                    self.chunks_sent += 1
                    self.bytes_sent += len(data)
                    state.sent[peer_id] = sent
                    self._publish(state)

                    # Let other peers' streams run
                    await asyncio.sleep(0)

            logger.debug(f"Finished {start.name} -> {peer_id}")
            return True

        except Exception as e:
            logger.error(f"Sending {start.name} to {peer_id} failed: {e}")
            state.failed.append(peer_id)
            self._publish(state)
            return False

    def _publish(self, state: _OutgoingState):
        self.ledger.update(
            state.transfer.id, TransferDirection.OUTGOING,
            progress=calculate_progress(state.slowest(), state.transfer.size),
            bytes_transferred=state.slowest(),
            peer_progress=state.peer_progress(),
            failed_peers=list(state.failed),
        )

    @staticmethod
    def _ensure_open(channel, peer_id: str):
        if channel.readyState != 'open':
            raise ConnectionError(f"Data channel to {peer_id} is {channel.readyState}")

    async def _wait_for_buffer(self, channel, peer_id: str):
        """Block while the channel has more than max_buffered_amount queued."""
        if channel.bufferedAmount <= self.max_buffered_amount:
            return

        drained = asyncio.Event()
        on_low = drained.set
        channel.on('bufferedamountlow', on_low)
        try:
            while channel.bufferedAmount > self.max_buffered_amount:
                self._ensure_open(channel, peer_id)
                drained.clear()
                try:
                    await asyncio.wait_for(drained.wait(), timeout=self.drain_poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            channel.remove_listener('bufferedamountlow', on_low)

    def get_stats(self) -> dict:
        """Get sender statistics."""
        return {
            'chunks_sent': self.chunks_sent,
            'bytes_sent': self.bytes_sent,
            'chunk_size': self.chunk_size,
        }
