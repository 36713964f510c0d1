import asyncio
import tempfile
import unittest
from pathlib import Path

from aiohttp import web
from aiohttp.test_utils import TestServer

from alumni_client import state_store
from alumni_client.chat_client import ChatClient
from alumni_client.conversation_state import ConversationState
from alumni_client.gateway_client import GatewayApi, GatewayApiError, session_start
from alumni_gateway.users import User, UserDirectory
from alumni_gateway.ws_transport import RUNTIME_KEY, create_app


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


class ChatClientGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        users = UserDirectory([User("alice", "Alice"), User("bob", "Bob"), User("carol", "Carol")])
        self.app = create_app(ping_interval_s=3600, users=users)
        self.runtime = self.app[RUNTIME_KEY]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/")).rstrip("/")
        self.tmpdir = tempfile.TemporaryDirectory()
        self.state_dir = Path(self.tmpdir.name)
        self.clients: list[ChatClient] = []

    async def asyncTearDown(self):
        for client in self.clients:
            await client._stop_live()
            await client.api.close()
        await self.server.close()
        self.tmpdir.cleanup()

    def _client(self, user_id: str) -> ChatClient:
        session = self.runtime.sessions.create(user_id)
        client = ChatClient(self.base_url, user_id, session.session_token, state_dir=self.state_dir)
        self.clients.append(client)
        return client

    async def test_message_reaches_online_peer_once(self):
        alice = self._client("alice")
        bob = self._client("bob")
        self.assertTrue(await alice.start())
        self.assertTrue(await bob.start())
        await wait_for(lambda: alice.state.is_online("bob") and bob.state.is_online("alice"))

        self.assertTrue(await alice.open_conversation("bob"))
        sent = await alice.send("hi bob")
        self.assertIsNotNone(sent)

        await wait_for(lambda: len(bob.state.messages_for("alice")) == 1)
        received = bob.state.messages_for("alice")[0]
        self.assertEqual((received.id, received.content), (sent.id, "hi bob"))
        self.assertEqual(bob.state.get_unread_count("alice"), 1)

        await asyncio.sleep(0.1)
        self.assertEqual(alice.state.messages_for("bob"), [sent])

        await bob.open_conversation("alice")
        self.assertEqual([m.id for m in bob.state.active_messages], [sent.id])
        self.assertEqual(bob.state.get_unread_count("alice"), 0)

    async def test_offline_peer_reads_message_from_history(self):
        alice = self._client("alice")
        await alice.start()
        await alice.open_conversation("bob")
        sent = await alice.send("while you were out")

        bob = self._client("bob")
        await bob.start()
        self.assertEqual(bob.state.messages_for("alice"), [])
        await bob.open_conversation("alice")

        self.assertEqual([m.id for m in bob.state.active_messages], [sent.id])

    async def test_close_persists_state_and_logout_clears_it(self):
        alice = self._client("alice")
        await alice.start()
        await alice.open_conversation("carol")
        sent = await alice.send("remember me")
        await alice.close()

        self.assertIsNotNone(state_store.load_state("alice", self.state_dir))

        again = self._client("alice")
        await again.start()
        self.assertEqual(again.state.selected, "carol")
        self.assertEqual([m.id for m in again.state.active_messages], [sent.id])

        await again.logout()
        self.assertIsNone(state_store.load_state("alice", self.state_dir))
        self.assertIsNone(again.state.selected)

    async def test_partners_and_reconnect(self):
        alice = self._client("alice")
        await alice.start()

        partners = await alice.partners()
        self.assertEqual([user["id"] for user in partners], ["bob", "carol"])

        await alice.open_conversation("bob")
        self.assertTrue(await alice.reconnect())
        presence = self.runtime.presence
        await wait_for(lambda: presence.connection_count() == 1 and presence.snapshot() == {"alice"})
        self.assertEqual(alice.state.selected, "bob")

    async def test_unreachable_gateway_surfaces_notices(self):
        alice = ChatClient("http://127.0.0.1:9", "alice", "st_none", state_dir=self.state_dir)
        self.clients.append(alice)

        self.assertFalse(await alice.start())
        self.assertEqual(await alice.partners(), [])
        self.assertEqual(
            [notice.text for notice in alice.state.notices],
            ["Live updates unavailable", "Failed to fetch users"],
        )


class GatewayApiTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600, users=UserDirectory([User("alice", "Alice"), User("bob", "Bob")]))
        self.server = TestServer(self.app)
        await self.server.start_server()
        base_url = str(self.server.make_url("/")).rstrip("/")
        token = self.app[RUNTIME_KEY].sessions.create("alice").session_token
        self.api = GatewayApi(base_url, token)
        self.anonymous = GatewayApi(base_url, "st_missing")

    async def asyncTearDown(self):
        await self.api.close()
        await self.anonymous.close()
        await self.server.close()

    async def test_append_and_list_between(self):
        stored = await self.api.append("bob", "hello")
        history = await self.api.list_between("bob")

        self.assertEqual(history, [stored])
        self.assertEqual(stored.sender_id, "alice")

    async def test_errors_carry_status_and_code(self):
        with self.assertRaises(GatewayApiError) as unauthorized:
            await self.anonymous.list_partners()
        self.assertEqual((unauthorized.exception.status, unauthorized.exception.code), (401, "unauthorized"))

        with self.assertRaises(GatewayApiError) as missing:
            await self.api.append("nobody", "hello")
        self.assertEqual(missing.exception.code, "not_found")
        self.assertEqual(str(missing.exception), "unknown user")


class SessionStartTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        users = UserDirectory([User("alice", "Alice"), User("bob", "Bob")])
        self.server = TestServer(create_app(ping_interval_s=3600, users=users, auth_token="host-secret"))
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/")).rstrip("/")
        self.tmpdir = tempfile.TemporaryDirectory()

    async def asyncTearDown(self):
        await self.server.close()
        self.tmpdir.cleanup()

    async def test_signed_in_client_can_message(self):
        session = await session_start(self.base_url, "host-secret", "alice")
        self.assertEqual(session["user_id"], "alice")

        client = ChatClient(self.base_url, "alice", session["session_token"], state_dir=Path(self.tmpdir.name))
        try:
            self.assertTrue(await client.start())
            self.assertEqual([user["id"] for user in await client.partners()], ["bob"])
            await client.open_conversation("bob")
            self.assertIsNotNone(await client.send("signed in"))
        finally:
            await client.close()

    async def test_wrong_auth_token_is_refused(self):
        with self.assertRaises(GatewayApiError) as refused:
            await session_start(self.base_url, "guess", "alice")
        self.assertEqual((refused.exception.status, refused.exception.code), (401, "unauthorized"))


class LegacyHistoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        async def history(_: web.Request) -> web.Response:
            return web.json_response(
                {
                    "messages": [
                        {"id": "m_good", "sender_id": "bob", "receiver_id": "me", "text": "fine", "created_at": 1},
                        {"_id": "legacy", "senderId": "bob", "message": "no receiver", "createdAt": 2},
                    ]
                }
            )

        app = web.Application()
        app.router.add_get("/v1/messages/{user_id}", history)
        self.server = TestServer(app)
        await self.server.start_server()
        self.api = GatewayApi(str(self.server.make_url("/")).rstrip("/"), "st_any")

    async def asyncTearDown(self):
        await self.api.close()
        await self.server.close()

    async def test_undecodable_record_is_skipped(self):
        state = ConversationState("me", self.api)

        self.assertTrue(await state.load_history("bob"))

        self.assertEqual([m.id for m in state.messages_for("bob")], ["m_good"])
        self.assertEqual(state._arrivals, {})
        self.assertEqual(state.notices, [])


class ScriptedLive:
    def __init__(self, frames):
        self._frames = frames

    async def frames(self):
        for frame in self._frames:
            yield frame

    async def close(self):
        return None


class LiveReaderTests(unittest.IsolatedAsyncioTestCase):
    async def test_reader_survives_bad_frames_and_reports_end(self):
        def boom(_):
            raise RuntimeError("display gone")

        with tempfile.TemporaryDirectory() as tmpdir:
            client = ChatClient("http://127.0.0.1:9", "me", "st_none", state_dir=Path(tmpdir), notifier=boom)
            client.live = ScriptedLive(
                [
                    {"t": "new-message", "body": "oops"},
                    {"t": "new-message", "body": {"id": "m_1", "sender_id": "bob", "receiver_id": "me", "text": "hi", "created_at": 1}},
                    {"t": "online-set-changed", "body": {"user_ids": ["bob"]}},
                ]
            )

            await client._read_events()
            await client.api.close()

        self.assertEqual([m.id for m in client.state.messages_for("bob")], ["m_1"])
        self.assertTrue(client.state.is_online("bob"))
        self.assertEqual([n.text for n in client.state.notices], ["Live updates stopped"])


if __name__ == "__main__":
    unittest.main()
