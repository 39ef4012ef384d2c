import unittest

from peerdrop.signaling.models import SignalEvent
from peerdrop.signaling.registry import RoomRegistry
from peerdrop.signaling.relay import SignalingRelay


class Inbox:
    """Collects frames sent to one member."""

    def __init__(self):
        self.frames = []

    async def send(self, frame):
        self.frames.append(frame)

    def events(self, name):
        return [f['data'] for f in self.frames if f['event'] == name]


class FailingInbox(Inbox):

    async def send(self, frame):
        raise ConnectionResetError("socket gone")


class RelayTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.relay = SignalingRelay(RoomRegistry())
        self.inboxes = {}

    def connect(self, member_id, inbox=None):
        inbox = inbox or Inbox()
        self.inboxes[member_id] = inbox
        self.relay.register(member_id, inbox.send)
        return inbox

    async def test_join_introduces_members(self):
        a = self.connect('a')
        b = self.connect('b')

        await self.relay.join('a', 'ROOM1')
        await self.relay.join('b', 'ROOM1')

        self.assertEqual(a.events('all-users'), [[]])
        self.assertEqual(b.events('all-users'), [['a']])
        self.assertEqual(a.events('user-joined'), ['b'])
        self.assertEqual(b.events('user-joined'), [])

    async def test_offer_is_forwarded_with_sender_id(self):
        a = self.connect('a')
        b = self.connect('b')
        await self.relay.join('a', 'ROOM1')
        await self.relay.join('b', 'ROOM1')

        offer = {'type': 'offer', 'sdp': 'v=0'}
        delivered = await self.relay.relay(SignalEvent.OFFER, 'b', 'a', offer)

        self.assertTrue(delivered)
        self.assertEqual(a.events('offer'), [{'offer': offer, 'senderMemberId': 'b'}])
        self.assertEqual(b.events('offer'), [])
        self.assertEqual(self.relay.messages_relayed, 1)

    async def test_candidate_and_answer_use_their_own_fields(self):
        a = self.connect('a')
        self.connect('b')

        await self.relay.relay(SignalEvent.ANSWER, 'b', 'a', {'type': 'answer', 'sdp': 'x'})
        await self.relay.relay(SignalEvent.ICE_CANDIDATE, 'b', 'a', {'candidate': ''})

        self.assertIn('answer', a.events('answer')[0])
        self.assertIn('candidate', a.events('ice-candidate')[0])

    async def test_relay_to_unknown_target_is_dropped(self):
        a = self.connect('a')

        delivered = await self.relay.relay(SignalEvent.OFFER, 'a', 'ghost', {'sdp': 'x'})

        self.assertFalse(delivered)
        self.assertEqual(a.frames, [])
        self.assertEqual(self.relay.messages_dropped, 1)

    async def test_relay_rejects_non_negotiation_events(self):
        self.connect('a')
        with self.assertRaises(ValueError):
            await self.relay.relay(SignalEvent.WELCOME, 'a', 'a', {})

    async def test_disconnect_notifies_remaining_members(self):
        a = self.connect('a')
        self.connect('b')
        await self.relay.join('a', 'ROOM1')
        await self.relay.join('b', 'ROOM1')

        await self.relay.disconnect('b')

        self.assertEqual(a.events('user-disconnected'), ['b'])
        self.assertFalse(self.relay.is_connected('b'))
        self.assertEqual(self.relay.registry.get_members('ROOM1'), ['a'])

    async def test_last_disconnect_deletes_room(self):
        self.connect('a')
        await self.relay.join('a', 'ROOM1')
        await self.relay.disconnect('a')

        self.assertFalse(self.relay.registry.has_room('ROOM1'))

    async def test_switching_rooms_notifies_old_room(self):
        a = self.connect('a')
        b = self.connect('b')
        await self.relay.join('a', 'ROOM1')
        await self.relay.join('b', 'ROOM1')

        await self.relay.join('b', 'ROOM2')

        self.assertEqual(a.events('user-disconnected'), ['b'])
        self.assertEqual(b.events('all-users'), [['a'], []])

    async def test_empty_room_code_keeps_current_room(self):
        a = self.connect('a')
        b = self.connect('b')
        await self.relay.join('a', 'ABC123')
        await self.relay.join('b', 'ABC123')

        with self.assertRaises(ValueError):
            await self.relay.join('b', '   ')

        self.assertEqual(self.relay.registry.get_room_of('b'), 'ABC123')
        self.assertEqual(a.events('user-disconnected'), [])

    async def test_rejoining_same_room_does_not_reintroduce(self):
        a = self.connect('a')
        b = self.connect('b')
        await self.relay.join('a', 'ABC123')
        await self.relay.join('b', 'ABC123')

        await self.relay.join('b', 'abc123')

        self.assertEqual(a.events('user-joined'), ['b'])
        self.assertEqual(b.events('all-users'), [['a'], ['a']])
        self.assertEqual(self.relay.registry.get_members('ABC123'), ['a', 'b'])

    async def test_failed_send_does_not_raise(self):
        self.connect('a', FailingInbox())
        self.assertFalse(await self.relay.send_to('a', SignalEvent.ERROR, {'message': 'x'}))


if __name__ == '__main__':
    unittest.main()
