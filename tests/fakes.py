"""
In-memory stand-ins for aiortc peer connections and data channels.

Both are pyee AsyncIOEventEmitters, like their aiortc counterparts, so code
under test can bind handlers with `.on(...)` exactly as it does in production.
"""

import asyncio

from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter


async def settle(rounds: int = 20):
    """Let queued tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeChannel(AsyncIOEventEmitter):
    """Data channel that records (and optionally delivers) what is sent."""

    def __init__(self, label: str = 'fileTransfer', ready_state: str = 'open',
                 deliver=None):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent = []
        self._deliver = deliver

    def send(self, data):
        if self.readyState != 'open':
            raise ConnectionError("channel is not open")
        self.sent.append(data)
        if self._deliver is not None:
            self._deliver(data)

    def open(self):
        self.readyState = 'open'
        self.emit('open')

    def close(self):
        self.readyState = 'closed'
        self.emit('close')

    @property
    def frames(self):
        return [d for d in self.sent if isinstance(d, bytes)]

    @property
    def control(self):
        return [d for d in self.sent if isinstance(d, str)]


class FakePeerConnection(AsyncIOEventEmitter):
    """Peer connection whose negotiation completes instantly."""

    def __init__(self):
        super().__init__()
        self.connectionState = 'new'
        self.localDescription = None
        self.remoteDescription = None
        self.channels = []
        self.candidates = []
        self.close_calls = 0

    def createDataChannel(self, label, ordered=True):
        channel = FakeChannel(label, ready_state='connecting')
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0 offer', type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp='v=0 answer', type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.set_state('closed')

    def set_state(self, state: str):
        self.connectionState = state
        self.emit('connectionstatechange')


class FakeSignaling:
    """Records everything the orchestrator asks the signaling client to send."""

    def __init__(self, member_id: str = 'me'):
        self.member_id = member_id
        self.sent = []

    async def send_offer(self, target, offer):
        self.sent.append(('offer', target, offer))

    async def send_answer(self, target, answer):
        self.sent.append(('answer', target, answer))

    async def send_candidate(self, target, candidate):
        self.sent.append(('candidate', target, candidate))

    def of_kind(self, kind):
        return [s for s in self.sent if s[0] == kind]
