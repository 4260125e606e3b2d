import json
import sys
import unittest
from pathlib import Path
from typing import Callable, Dict, List, Optional

import anyio

sys.path.insert(0, str(Path(__file__).parents[1]))

from widget_mcp_server import (  # noqa: E402
    ServerSettings,
    SessionMultiplexer,
    SessionState,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Stand-in transport that answers every call with a tiny JSON body."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.requests: List[dict] = []
        self.close_calls = 0
        self.gate: Optional[anyio.Event] = None
        self.fail_with: Optional[Exception] = None
        self.fail_after_start = False
        self.server = None
        self._observers: List[Callable[[str], None]] = []
        self._stopped = anyio.Event()

    def on_close(self, callback: Callable[[str], None]) -> None:
        self._observers.append(callback)

    async def serve(self, server, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        self.server = server
        task_status.started()
        await self._stopped.wait()
        for callback in self._observers:
            callback(self.session_id)

    def stop(self) -> None:
        """Simulate the server loop ending on its own."""
        self._stopped.set()

    async def handle_request(self, scope, receive, send) -> None:
        self.requests.append(scope)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None and not self.fail_after_start:
            raise self.fail_with
        await send(
            {
                "type": "http.response.start",
                "status": 200,
                "headers": [(b"mcp-session-id", self.session_id.encode())],
            }
        )
        if self.fail_with is not None:
            raise self.fail_with
        await send({"type": "http.response.body", "body": b"{}"})

    async def close(self) -> None:
        self.close_calls += 1
        self._stopped.set()


class FakeRegistry:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.servers: List[object] = []

    async def register(self, server) -> None:
        # Yield so concurrent creations would interleave if they were not serialized.
        await anyio.sleep(0)
        if self.error is not None:
            raise self.error
        self.servers.append(server)


def header_of(scope: dict, name: bytes) -> Optional[str]:
    for key, value in scope["headers"]:
        if key == name:
            return value.decode()
    return None


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.001)


class MultiplexerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.registry = FakeRegistry()
        self.transports: List[FakeTransport] = []
        self.servers_built = 0
        self.settings = ServerSettings(sweep_interval=3600, idle_timeout=1800, coalesce_window=1.0)

    def build_server(self) -> Dict[str, int]:
        self.servers_built += 1
        return {"server": self.servers_built}

    def build_transport(self, session_id: str) -> FakeTransport:
        transport = FakeTransport(session_id)
        self.transports.append(transport)
        return transport

    def make_multiplexer(self) -> SessionMultiplexer:
        return SessionMultiplexer(
            self.registry,
            settings=self.settings,
            server_factory=self.build_server,
            transport_factory=self.build_transport,
            clock=self.clock,
        )

    async def call(
        self,
        mux: SessionMultiplexer,
        session_id: Optional[str] = None,
        *,
        client=("10.0.0.1", 50000),
        user_agent: str = "agent/1.0",
    ) -> List[dict]:
        headers = [(b"content-type", b"application/json"), (b"user-agent", user_agent.encode())]
        if session_id is not None:
            headers.append((b"mcp-session-id", session_id.encode()))
        scope = {"type": "http", "method": "POST", "path": "/mcp", "headers": headers, "client": client}
        sent: List[dict] = []

        async def receive() -> dict:
            return {"type": "http.request", "body": b"{}", "more_body": False}

        async def send(message: dict) -> None:
            sent.append(message)

        await mux.handle_request(scope, receive, send)
        return sent


class SessionCreationTests(MultiplexerTestCase):
    async def test_sessionless_call_creates_one_session(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            sent = await self.call(mux)

            self.assertEqual(mux.active_session_count, 1)
            self.assertEqual(len(self.registry.servers), 1)
            session_id = mux.session_ids()[0]
            self.assertEqual(mux.get(session_id).state, SessionState.ACTIVE)
            self.assertEqual(sent[0]["status"], 200)
            delegated = self.transports[0].requests[0]
            self.assertEqual(header_of(delegated, b"mcp-session-id"), session_id)

    async def test_known_id_reuses_existing_transport(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            session_id = mux.session_ids()[0]

            await self.call(mux, session_id)
            await self.call(mux, session_id)

            self.assertEqual(self.servers_built, 1)
            self.assertEqual(len(self.transports), 1)
            self.assertEqual(len(self.transports[0].requests), 3)

    async def test_registration_happens_before_serving(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            transport = self.transports[0]
            self.assertIs(transport.server, self.registry.servers[0])

    async def test_concurrent_calls_with_same_unknown_id_share_a_session(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            async with anyio.create_task_group() as tg:
                for _ in range(5):
                    tg.start_soon(self.call, mux, "stale-session-id")

            self.assertEqual(self.servers_built, 1)
            self.assertEqual(mux.active_session_count, 1)
            session_id = mux.session_ids()[0]
            self.assertNotEqual(session_id, "stale-session-id")
            for scope in self.transports[0].requests:
                self.assertEqual(header_of(scope, b"mcp-session-id"), session_id)

            # Later calls with the same stale id keep landing on that session.
            await self.call(mux, "stale-session-id")
            self.assertEqual(self.servers_built, 1)
            self.assertEqual(len(self.transports[0].requests), 6)

    async def test_simultaneous_sessionless_calls_create_one_session(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(self.call, mux)
                tg.start_soon(self.call, mux)

            self.assertEqual(self.servers_built, 1)
            self.assertEqual(mux.active_session_count, 1)
            self.assertEqual(len(self.transports[0].requests), 2)

    async def test_sessionless_calls_outside_window_get_new_sessions(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            self.clock.advance(self.settings.coalesce_window + 1)
            await self.call(mux)

            self.assertEqual(mux.active_session_count, 2)

    async def test_distinct_clients_get_distinct_sessions(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(self.call, mux)
                tg.start_soon(lambda: self.call(mux, user_agent="other-agent/2.0"))

            self.assertEqual(mux.active_session_count, 2)

    async def test_client_port_is_not_part_of_the_creation_key(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            async with anyio.create_task_group() as tg:
                tg.start_soon(lambda: self.call(mux, client=("10.0.0.1", 50000)))
                tg.start_soon(lambda: self.call(mux, client=("10.0.0.1", 50001)))

            self.assertEqual(self.servers_built, 1)
            self.assertEqual(mux.active_session_count, 1)

    async def test_registration_failure_rolls_back_and_reports(self) -> None:
        self.registry.error = RuntimeError("registry exploded")
        mux = self.make_multiplexer()
        async with mux.run():
            sent = await self.call(mux)

            self.assertEqual(mux.session_ids(), [])
            self.assertEqual(sent[0]["status"], 500)
            body = json.loads(sent[1]["body"])
            self.assertEqual(body["jsonrpc"], "2.0")
            self.assertIsNone(body["id"])
            self.assertEqual(body["error"]["code"], -32000)
            self.assertEqual(body["error"]["message"], "MCP initialization failed: registry exploded")
            self.assertEqual(self.transports[0].close_calls, 1)

    async def test_creation_outside_run_reports_error(self) -> None:
        mux = self.make_multiplexer()
        sent = await self.call(mux)

        self.assertEqual(sent[0]["status"], 500)
        self.assertIn("not running", json.loads(sent[1]["body"])["error"]["message"])
        self.assertEqual(mux.session_ids(), [])


class DelegationTests(MultiplexerTestCase):
    async def test_failure_before_response_sends_internal_error(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            transport = self.transports[0]
            transport.fail_with = RuntimeError("stream broke")

            sent = await self.call(mux, transport.session_id)

            self.assertEqual(sent[0]["status"], 500)
            body = json.loads(sent[1]["body"])
            self.assertEqual(body["error"]["code"], -32603)
            self.assertEqual(body["error"]["message"], "Internal server error")
            self.assertEqual(body["error"]["data"], "stream broke")

    async def test_failure_mid_response_is_only_logged(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            transport = self.transports[0]
            transport.fail_with = RuntimeError("stream broke")
            transport.fail_after_start = True

            with self.assertLogs("widget-mcp-server", level="ERROR"):
                sent = await self.call(mux, transport.session_id)

            self.assertEqual([m["type"] for m in sent], ["http.response.start"])
            self.assertEqual(sent[0]["status"], 200)
            self.assertEqual(mux.get(transport.session_id).in_flight, 0)

    async def test_aborted_call_reclaims_session(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            transport = self.transports[0]
            transport.gate = anyio.Event()

            async with anyio.create_task_group() as tg:
                tg.start_soon(self.call, mux, transport.session_id)
                await wait_for(lambda: len(transport.requests) == 2)
                tg.cancel_scope.cancel()

            self.assertEqual(mux.session_ids(), [])
            self.assertEqual(transport.close_calls, 1)

    async def test_transport_closing_itself_removes_session(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            transport = self.transports[0]

            transport.stop()
            await wait_for(lambda: not mux.session_ids())

            self.assertEqual(mux.active_session_count, 0)


class EvictionTests(MultiplexerTestCase):
    async def test_idle_session_is_evicted_once(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            session_id = mux.session_ids()[0]
            self.clock.advance(self.settings.idle_timeout + 1)

            self.assertEqual(await mux.evict_idle_sessions(), [session_id])
            self.assertEqual(await mux.evict_idle_sessions(), [])

            self.assertEqual(mux.session_ids(), [])
            self.assertEqual(self.transports[0].close_calls, 1)

    async def test_recent_session_survives_sweep(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            self.clock.advance(self.settings.idle_timeout - 1)

            self.assertEqual(await mux.evict_idle_sessions(), [])
            self.assertEqual(mux.active_session_count, 1)

    async def test_busy_session_is_not_evicted(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            transport = self.transports[0]
            transport.gate = anyio.Event()

            async with anyio.create_task_group() as tg:
                tg.start_soon(self.call, mux, transport.session_id)
                await wait_for(lambda: len(transport.requests) == 2)
                self.clock.advance(self.settings.idle_timeout + 1)

                self.assertEqual(await mux.evict_idle_sessions(), [])
                self.assertEqual(transport.close_calls, 0)
                transport.gate.set()

            self.clock.advance(self.settings.idle_timeout + 1)
            self.assertEqual(await mux.evict_idle_sessions(), [transport.session_id])

    async def test_evicted_id_is_treated_as_unknown(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            old_id = mux.session_ids()[0]
            self.clock.advance(self.settings.idle_timeout + 1)
            await mux.evict_idle_sessions()

            await self.call(mux, old_id)

            self.assertEqual(self.servers_built, 2)
            self.assertEqual(mux.active_session_count, 1)
            self.assertNotEqual(mux.session_ids()[0], old_id)


class TerminationTests(MultiplexerTestCase):
    async def test_terminate_closes_and_removes(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            session_id = mux.session_ids()[0]

            self.assertTrue(await mux.terminate(session_id))
            self.assertFalse(await mux.terminate(session_id))
            self.assertFalse(await mux.terminate("never-existed"))

            self.assertIsNone(mux.get(session_id))
            self.assertEqual(self.transports[0].close_calls, 1)

    async def test_shutdown_closes_every_session(self) -> None:
        mux = self.make_multiplexer()
        async with mux.run():
            await self.call(mux)
            await self.call(mux, user_agent="second/1.0")
            self.assertEqual(mux.active_session_count, 2)

        self.assertEqual(mux.session_ids(), [])
        self.assertEqual([t.close_calls for t in self.transports], [1, 1])


if __name__ == "__main__":  # pragma: no cover - convenience for direct runs
    unittest.main()
