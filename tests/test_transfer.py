import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from fakes import FakeChannel
from peerdrop.transfer.ledger import TransferLedger, TransferStatus, TransferDirection
from peerdrop.transfer.protocol import FileStart, encode_chunk
from peerdrop.transfer.receiver import ChunkReceiver
from peerdrop.transfer.sender import FileSender

IN = TransferDirection.INCOMING


def make_payload(size):
    return bytes(i % 251 for i in range(size))


class BrokenChannel(FakeChannel):

    def send(self, data):
        raise ConnectionError("boom")


class SendReceiveTest(unittest.IsolatedAsyncioTestCase):
    """A sender and a receiver joined by an in-memory channel."""

    def setUp(self):
        self.sender_ledger = TransferLedger()
        self.receiver_ledger = TransferLedger()
        self.sender = FileSender(self.sender_ledger)
        self.receiver = ChunkReceiver(self.receiver_ledger)
        self.channel = FakeChannel(
            deliver=lambda data: self.receiver.handle_message('peer-a', data)
        )

    async def test_one_megabyte_transfer(self):
        data = make_payload(1_000_000)

        outgoing = await self.sender.send_bytes('big.bin', data, {'peer-b': self.channel})

        self.assertEqual(outgoing.status, TransferStatus.COMPLETED)
        self.assertEqual(outgoing.progress, 100)
        self.assertEqual(outgoing.peer_progress, {'peer-b': 100})

        frames = self.channel.frames
        self.assertEqual(len(frames), 62)  # ceil(1_000_000 / 16384)
        self.assertTrue(all(len(f) == 36 + 16384 for f in frames[:-1]))
        self.assertEqual(len(frames[-1]), 36 + 1_000_000 - 61 * 16384)

        incoming = self.receiver_ledger.incoming
        self.assertEqual(len(incoming), 1)
        self.assertEqual(incoming[0].id, outgoing.id)
        self.assertEqual(incoming[0].status, TransferStatus.COMPLETED)
        self.assertEqual(incoming[0].progress, 100)
        self.assertEqual(incoming[0].peer, 'peer-a')
        self.assertEqual(incoming[0].payload, data)
        self.assertEqual(self.receiver.pending_count, 0)

    async def test_progress_is_monotonic_and_capped(self):
        seen = []
        self.receiver_ledger.subscribe(lambda t: seen.append((t.progress, t.status)))

        await self.sender.send_bytes('f.bin', make_payload(100_000), {'peer-b': self.channel})

        progress = [p for p, _ in seen]
        self.assertEqual(progress, sorted(progress))
        for p, status in seen:
            if p == 100:
                self.assertEqual(status, TransferStatus.COMPLETED)

    async def test_file_start_precedes_chunks(self):
        await self.sender.send_bytes('f.txt', b'hello', {'peer-b': self.channel}, 'text/plain')

        self.assertIsInstance(self.channel.sent[0], str)
        start = json.loads(self.channel.sent[0])
        self.assertEqual(start['type'], 'file-start')
        self.assertEqual(start['fileType'], 'text/plain')
        self.assertEqual(start['size'], 5)
        self.assertEqual(self.receiver_ledger.incoming[0].mime_type, 'text/plain')

    async def test_zero_byte_file(self):
        outgoing = await self.sender.send_bytes('empty', b'', {'peer-b': self.channel})

        self.assertEqual(outgoing.status, TransferStatus.COMPLETED)
        self.assertEqual(self.channel.frames, [])
        incoming = self.receiver_ledger.incoming[0]
        self.assertEqual(incoming.status, TransferStatus.COMPLETED)
        self.assertEqual(incoming.payload, b'')

    async def test_send_file_from_disk(self):
        data = make_payload(40_000)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'notes.txt'
            path.write_bytes(data)

            outgoing = await self.sender.send_file(path, {'peer-b': self.channel})

        self.assertEqual(outgoing.name, 'notes.txt')
        self.assertEqual(outgoing.mime_type, 'text/plain')
        self.assertEqual(self.receiver_ledger.incoming[0].payload, data)

    async def test_send_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            await self.sender.send_file(Path('/nonexistent/file.bin'), {'peer-b': self.channel})

    async def test_no_open_channels(self):
        closed = FakeChannel(ready_state='closed')

        outgoing = await self.sender.send_bytes('f', b'data', {'peer-b': closed})

        self.assertEqual(outgoing.status, TransferStatus.FAILED)
        self.assertEqual(outgoing.error, 'No connected peers')
        self.assertEqual(closed.sent, [])

    async def test_one_failed_peer_does_not_fail_transfer(self):
        good = self.channel
        bad = BrokenChannel()

        outgoing = await self.sender.send_bytes(
            'f', make_payload(50_000), {'peer-b': good, 'peer-c': bad}
        )

        self.assertEqual(outgoing.status, TransferStatus.COMPLETED)
        self.assertEqual(outgoing.failed_peers, ['peer-c'])

    async def test_every_peer_failing_fails_transfer(self):
        bad = BrokenChannel()

        outgoing = await self.sender.send_bytes('f', b'data', {'peer-c': bad})

        self.assertEqual(outgoing.status, TransferStatus.FAILED)
        self.assertEqual(outgoing.error, 'Every peer stream failed')


class BackpressureTest(unittest.IsolatedAsyncioTestCase):

    async def test_waits_for_buffer_to_drain(self):
        ledger = TransferLedger()
        sender = FileSender(ledger, max_buffered_amount=1000, drain_poll_interval=0.01)
        channel = FakeChannel()
        channel.bufferedAmount = 5000

        task = asyncio.create_task(sender.send_bytes('f', b'x' * 100, {'peer-b': channel}))
        await asyncio.sleep(0.05)

        # Announced, but no chunk while the buffer is full
        self.assertEqual(len(channel.control), 1)
        self.assertEqual(channel.frames, [])
        self.assertEqual(channel.bufferedAmountLowThreshold, sender.buffered_amount_low_threshold)

        channel.bufferedAmount = 0
        channel.emit('bufferedamountlow')
        outgoing = await asyncio.wait_for(task, 1.0)

        self.assertEqual(outgoing.status, TransferStatus.COMPLETED)
        self.assertEqual(len(channel.frames), 1)

    async def test_channel_closing_while_blocked_fails_stream(self):
        ledger = TransferLedger()
        sender = FileSender(ledger, max_buffered_amount=1000, drain_poll_interval=0.01)
        channel = FakeChannel()
        channel.bufferedAmount = 5000

        task = asyncio.create_task(sender.send_bytes('f', b'x' * 100, {'peer-b': channel}))
        await asyncio.sleep(0.03)
        channel.close()
        outgoing = await asyncio.wait_for(task, 1.0)

        self.assertEqual(outgoing.status, TransferStatus.FAILED)
        self.assertEqual(outgoing.failed_peers, ['peer-b'])


class ReceiverTest(unittest.TestCase):

    def setUp(self):
        self.ledger = TransferLedger()
        self.receiver = ChunkReceiver(self.ledger)

    def start(self, tid='t1', size=10, peer='peer-a'):
        self.receiver.handle_message(peer, FileStart(tid, 'f.bin', size).to_json())

    def test_chunk_for_unknown_transfer_is_dropped(self):
        self.receiver.handle_message('peer-a', encode_chunk('never-announced', b'abc'))

        self.assertEqual(self.ledger.incoming, [])
        self.assertEqual(self.receiver.pending_count, 0)
        self.assertEqual(self.receiver.chunks_dropped, 1)

    def test_unknown_chunk_leaves_other_transfers_untouched(self):
        self.start(size=10)
        self.receiver.handle_message('peer-a', encode_chunk('t1', b'12345'))

        self.receiver.handle_message('peer-a', encode_chunk('never-announced', b'abc'))

        transfer = self.ledger.get('t1', IN)
        self.assertEqual(transfer.progress, 50)
        self.assertEqual(transfer.bytes_transferred, 5)
        self.assertTrue(self.receiver.has_pending('t1'))
        self.assertEqual(self.receiver.chunks_dropped, 1)

        self.receiver.handle_message('peer-a', encode_chunk('t1', b'67890'))
        self.assertEqual(self.ledger.completed_payload('t1'), b'1234567890')

    def test_chunk_after_completion_is_dropped(self):
        self.start(size=3)
        self.receiver.handle_message('peer-a', encode_chunk('t1', b'abc'))
        self.assertEqual(self.receiver.chunks_dropped, 0)

        self.receiver.handle_message('peer-a', encode_chunk('t1', b'late'))

        self.assertEqual(self.receiver.chunks_dropped, 1)
        self.assertEqual(self.ledger.completed_payload('t1'), b'abc')
        self.assertEqual(self.ledger.get('t1', IN).bytes_transferred, 3)

    def test_malformed_control_message_does_not_break_later_transfers(self):
        self.receiver.handle_message('peer-a', '{"type": "file-start"')
        self.receiver.handle_message('peer-a', '{"type": "bogus"}')
        self.start(size=3)
        self.receiver.handle_message('peer-a', encode_chunk('t1', b'abc'))

        self.assertEqual(self.receiver.messages_rejected, 2)
        self.assertEqual(self.ledger.completed_payload('t1'), b'abc')

    def test_malformed_chunk_is_rejected(self):
        self.receiver.handle_message('peer-a', b'short')
        self.assertEqual(self.receiver.messages_rejected, 1)

    def test_duplicate_file_start_ignored(self):
        self.start(size=6)
        self.receiver.handle_message('peer-a', encode_chunk('t1', b'abc'))
        self.start(size=6)
        self.receiver.handle_message('peer-a', encode_chunk('t1', b'def'))

        self.assertEqual(len(self.ledger.incoming), 1)
        self.assertEqual(self.ledger.completed_payload('t1'), b'abcdef')

    def test_chunk_from_other_peer_is_dropped(self):
        self.start(size=3)
        self.receiver.handle_message('peer-x', encode_chunk('t1', b'abc'))

        self.assertTrue(self.receiver.has_pending('t1'))
        self.assertEqual(self.receiver.chunks_dropped, 1)

    def test_partial_progress(self):
        self.start(size=10)
        self.receiver.handle_message('peer-a', encode_chunk('t1', b'12345'))

        transfer = self.ledger.get('t1', IN)
        self.assertEqual(transfer.status, TransferStatus.TRANSFERRING)
        self.assertEqual(transfer.progress, 50)
        self.assertEqual(transfer.bytes_transferred, 5)

    def test_fail_peer_fails_in_flight_transfers(self):
        self.start('t1', size=10, peer='peer-a')
        self.start('t2', size=10, peer='peer-b')

        failed = self.receiver.fail_peer('peer-a')

        self.assertEqual(failed, 1)
        self.assertEqual(self.ledger.get('t1', IN).status, TransferStatus.FAILED)
        self.assertEqual(self.ledger.get('t1', IN).error, 'Peer disconnected')
        self.assertEqual(self.ledger.get('t2', IN).status, TransferStatus.TRANSFERRING)
        self.assertFalse(self.receiver.has_pending('t1'))

    def test_long_transfer_id_matches_truncated_prefix(self):
        tid = 'transfer-' + 'x' * 40
        self.start(tid, size=2)
        self.receiver.handle_message('peer-a', encode_chunk(tid, b'ok'))

        self.assertEqual(self.ledger.completed_payload(tid), b'ok')


if __name__ == '__main__':
    unittest.main()
