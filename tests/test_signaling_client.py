import asyncio
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from peerdrop.client.signaling import SignalingClient, ConnectionState, CONNECT
from peerdrop.errors import SignalingError
from peerdrop.signaling.models import SignalEvent


def make_server_app(welcome=True):
    """A minimal signaling server speaking the same envelope."""
    received = []

    async def health(request):
        return web.json_response({'status': 'ok'})

    async def ws_handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        if welcome:
            await ws.send_json({'event': 'welcome', 'data': {'memberId': 'member-1'}})
        else:
            await ws.send_json({'event': 'all-users', 'data': []})

        async for msg in ws:
            frame = msg.json()
            received.append(frame)
            if frame['event'] == 'join-room':
                await ws.send_json({'event': 'all-users', 'data': ['member-0']})
        return ws

    app = web.Application()
    app.router.add_get('/health', health)
    app.router.add_get('/ws', ws_handler)
    app['received'] = received
    return app


class UrlTest(unittest.TestCase):

    def test_ws_url(self):
        self.assertEqual(SignalingClient('http://localhost:3001/').ws_url,
                         'ws://localhost:3001/ws')
        self.assertEqual(SignalingClient('https://drop.example.com').ws_url,
                         'wss://drop.example.com/ws')


class UnreachableServerTest(unittest.IsolatedAsyncioTestCase):

    async def test_connect_fails_with_descriptive_error(self):
        client = SignalingClient('http://127.0.0.1:1', health_timeout=1.0)
        try:
            self.assertFalse(await client.connect())
        finally:
            await client.close()

        self.assertEqual(client.state, ConnectionState.DISCONNECTED)
        self.assertIn('Signaling server not accessible', client.error)
        self.assertIn('http://127.0.0.1:1', client.error)

    async def test_failed_state_before_close(self):
        client = SignalingClient('http://127.0.0.1:1', health_timeout=1.0)
        await client.connect()
        self.assertEqual(client.state, ConnectionState.FAILED)
        await client.close()

    async def test_emit_requires_connection(self):
        client = SignalingClient('http://127.0.0.1:1')
        with self.assertRaises(SignalingError):
            await client.join_room('ABC123')


class HandshakeTest(unittest.IsolatedAsyncioTestCase):

    async def start_server(self, **kwargs):
        app = make_server_app(**kwargs)
        server = TestServer(app)
        await server.start_server()
        self.addAsyncCleanup(server.close)
        return app, str(server.make_url('')).rstrip('/')

    async def test_welcome_then_join(self):
        app, url = await self.start_server()
        client = SignalingClient(url, reconnect_attempts=1)
        self.addAsyncCleanup(client.close)

        connected = []
        users = asyncio.Queue()
        client.on(CONNECT, connected.append)

        @client.on(SignalEvent.ALL_USERS)
        async def on_all_users(members):
            await users.put(members)

        self.assertTrue(await client.connect())
        self.assertEqual(client.member_id, 'member-1')
        self.assertEqual(connected, ['member-1'])

        await client.join_room('abc123')
        self.assertEqual(await asyncio.wait_for(users.get(), 2.0), ['member-0'])
        self.assertEqual(app['received'], [{'event': 'join-room', 'data': 'ABC123'}])

    async def test_bad_welcome_fails_connect(self):
        _, url = await self.start_server(welcome=False)
        client = SignalingClient(url, reconnect_attempts=2, reconnect_delay=0.01)
        self.addAsyncCleanup(client.close)

        self.assertFalse(await client.connect())
        self.assertEqual(client.state, ConnectionState.FAILED)
        self.assertIn('Bad welcome frame', client.error)


if __name__ == '__main__':
    unittest.main()
