#!/usr/bin/env python3
"""Widget MCP server: streamable-HTTP sessions multiplexed over stateless calls.

Every client session gets its own MCP ``Server`` and transport. The
:class:`SessionMultiplexer` creates them on demand, routes later calls by
``mcp-session-id`` and reclaims sessions that went idle. Tools registered on
each server render their results as widgets through :mod:`widget_bundler`.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import hashlib
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
)

import anyio
import uvicorn
from anyio.abc import TaskGroup
from mcp.server import NotificationOptions, Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from handlers import ToolRegistry, default_registry
from widget_bundler import DEFAULT_ASSET_TIMEOUT, DEFAULT_PAGE_TIMEOUT, WidgetBundler

SERVER_NAME = "widget-mcp-server"
SERVER_VERSION = "1.0.0"

logger = logging.getLogger(SERVER_NAME)


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


MCP_PATH = "/mcp"

# JSON-RPC error codes used in HTTP-level envelopes.
SERVER_ERROR = -32000
INTERNAL_ERROR = -32603


@dataclass(frozen=True)
class ServerSettings:
    """Runtime configuration; see from_env() for the environment variables."""

    host: str = "0.0.0.0"
    port: int = 3000
    source_url: str = "https://refhubs.com"
    dev_mode: bool = False
    sweep_interval: float = 600.0
    idle_timeout: float = 1800.0
    coalesce_window: float = 1.0
    json_response: bool = False
    page_timeout: float = DEFAULT_PAGE_TIMEOUT
    asset_timeout: float = DEFAULT_ASSET_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            host=os.environ.get("WIDGET_MCP_HOST", "0.0.0.0"),
            port=int(os.environ.get("WIDGET_MCP_PORT", os.environ.get("PORT", "3000"))),
            source_url=os.environ.get(
                "WIDGET_SOURCE_URL", os.environ.get("NEXTJS_URL", "https://refhubs.com")
            ),
            dev_mode=_env_flag("WIDGET_MCP_DEV_MODE"),
            sweep_interval=float(os.environ.get("WIDGET_MCP_SWEEP_INTERVAL", "600")),
            idle_timeout=float(os.environ.get("WIDGET_MCP_IDLE_TIMEOUT", "1800")),
            coalesce_window=float(os.environ.get("WIDGET_MCP_COALESCE_WINDOW", "1.0")),
            json_response=_env_flag("WIDGET_MCP_JSON_RESPONSE"),
            page_timeout=float(os.environ.get("WIDGET_PAGE_TIMEOUT", "10")),
            asset_timeout=float(os.environ.get("WIDGET_ASSET_TIMEOUT", "3")),
            log_level=os.environ.get("WIDGET_MCP_LOG_LEVEL", "INFO"),
        )


class TransportError(RuntimeError):
    """Raised when a session's server or transport cannot be set up."""

    def __init__(self, message: str, *, session_id: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id


def error_envelope(code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "error": error, "id": None}


def _header(scope: Scope, name: str) -> Optional[str]:
    name_bytes = name.lower().encode("latin-1")
    for key, value in scope.get("headers") or []:
        if key.lower() == name_bytes:
            return value.decode("latin-1")
    return None


def _with_session_header(scope: Scope, session_id: str) -> Scope:
    header = MCP_SESSION_ID_HEADER.encode("latin-1")
    headers = [(k, v) for k, v in scope.get("headers") or [] if k.lower() != header]
    headers.append((header, session_id.encode("latin-1")))
    return {**scope, "headers": headers}


def client_fingerprint(scope: Scope) -> str:
    """Short digest identifying the peer of a call without a session id.

    Host and User-Agent only: one client opens a new connection (and port) per
    call. Distinct clients behind one NAT with the same agent string share a
    session if they connect within ``coalesce_window``.
    """
    client = scope.get("client") or ("", 0)
    raw = f"{client[0]}|{_header(scope, 'user-agent') or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]


class SessionState(enum.Enum):
    CREATING = "creating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class TransportLike(Protocol):
    session_id: str

    def on_close(self, callback: Callable[[str], None]) -> None:  # pragma: no cover - typing only
        ...

    async def serve(self, server: Server, *, task_status: Any = ...) -> None:  # pragma: no cover - typing only
        ...

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:  # pragma: no cover - typing only
        ...

    async def close(self) -> None:  # pragma: no cover - typing only
        ...


class RegistryLike(Protocol):
    async def register(self, server: Server) -> None:  # pragma: no cover - typing only
        ...


@dataclass
class Session:
    """One client's server/transport pair."""

    id: str
    server: Server
    transport: TransportLike
    last_activity: float
    state: SessionState = SessionState.CREATING
    in_flight: int = 0
    created_at: float = field(default_factory=time.monotonic)

    @property
    def live(self) -> bool:
        return self.state is SessionState.ACTIVE


class SessionTransport:
    """Streamable-HTTP transport for a single session.

    Wraps the SDK transport so that observers registered with :meth:`on_close`
    are notified exactly once, whether the session is closed explicitly or its
    server loop ends on its own.
    """

    def __init__(self, session_id: str, *, json_response: bool = False) -> None:
        self.session_id = session_id
        self._http = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )
        self._observers: List[Callable[[str], None]] = []
        self._cancel_scope: Optional[anyio.CancelScope] = None
        self._closed = False
        self._notified = False

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[[str], None]) -> None:
        self._observers.append(callback)

    def _notify_closed(self) -> None:
        if self._notified:
            return
        self._notified = True
        for callback in self._observers:
            try:
                callback(self.session_id)
            except Exception:
                logger.exception("Close observer failed for session %s", self.session_id)

    async def serve(self, server: Server, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
        """Run ``server`` on this transport until the session closes."""
        try:
            with anyio.CancelScope() as scope:
                self._cancel_scope = scope
                async with self._http.connect() as (read_stream, write_stream):
                    task_status.started()
                    # Sessions recreated for a stale id must answer without a new handshake.
                    await server.run(
                        read_stream,
                        write_stream,
                        server.create_initialization_options(
                            NotificationOptions(resources_changed=True, tools_changed=True)
                        ),
                        stateless=True,
                    )
        except Exception:
            logger.error("Session %s crashed", self.session_id, exc_info=True)
        finally:
            self._closed = True
            with anyio.CancelScope(shield=True):
                await self._http.terminate()
            self._notify_closed()

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._http.handle_request(scope, receive, send)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._http.terminate()
        finally:
            if self._cancel_scope is not None:
                self._cancel_scope.cancel()
            self._notify_closed()


class _ResponseTracker:
    """ASGI send wrapper remembering whether response bytes went out."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self.started = False

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.started = True
        await self._send(message)


@dataclass
class _LockEntry:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class _KeyedLock:
    """Per-key mutual exclusion; entries disappear once nobody holds or waits."""

    def __init__(self) -> None:
        self._entries: Dict[str, _LockEntry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.setdefault(key, _LockEntry())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)


def _default_server_factory() -> Server:
    return Server(SERVER_NAME, version=SERVER_VERSION)


class SessionMultiplexer:
    """Own the session-id -> Session map and route calls into it.

    Calls naming a live session go straight to its transport. Anything else
    creates a session, serialized per creation key so that concurrent calls for
    the same unknown id (or from the same session-less client within
    ``coalesce_window`` seconds) end up on one session.
    """

    def __init__(
        self,
        registry: RegistryLike,
        *,
        settings: Optional[ServerSettings] = None,
        server_factory: Callable[[], Server] = _default_server_factory,
        transport_factory: Optional[Callable[[str], TransportLike]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.settings = settings or ServerSettings()
        self._server_factory = server_factory
        self._transport_factory = transport_factory or (
            lambda session_id: SessionTransport(session_id, json_response=self.settings.json_response)
        )
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._claims: Dict[str, Tuple[str, float]] = {}
        self._creation_locks = _KeyedLock()
        self._task_group: Optional[TaskGroup] = None

    # Introspection -----------------------------------------------------------

    @property
    def active_session_count(self) -> int:
        return sum(1 for session in self._sessions.values() if session.live)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    # Lifecycle ---------------------------------------------------------------

    @asynccontextmanager
    async def run(self) -> AsyncIterator["SessionMultiplexer"]:
        """Own the task group session servers run in, plus the idle sweep."""
        if self._task_group is not None:
            raise RuntimeError("SessionMultiplexer is already running")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            tg.start_soon(self._sweep_loop)
            logger.info(
                "Session multiplexer started (sweep every %ss, idle timeout %ss)",
                self.settings.sweep_interval,
                self.settings.idle_timeout,
            )
            try:
                yield self
            finally:
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def _sweep_loop(self) -> None:
        while True:
            await anyio.sleep(self.settings.sweep_interval)
            try:
                await self.evict_idle_sessions()
            except Exception:
                logger.exception("Idle session sweep failed")

    async def evict_idle_sessions(self) -> List[str]:
        """Close every session idle past ``idle_timeout``; return their ids.

        Sessions with a request in flight are left for the next sweep.
        """
        now = self._clock()
        evicted: List[str] = []
        for session in list(self._sessions.values()):
            if not session.live or now - session.last_activity <= self.settings.idle_timeout:
                continue
            if session.in_flight:
                logger.debug("Session %s idle but busy (%d in flight), skipping", session.id, session.in_flight)
                continue
            logger.info("Evicting idle session %s (idle %.0fs)", session.id, now - session.last_activity)
            await self._close_session(session)
            evicted.append(session.id)
        self._prune_claims(now)
        logger.info("Active MCP sessions: %d", self.active_session_count)
        return evicted

    async def terminate(self, session_id: str) -> bool:
        """Close one session out of band. Unknown or already closing ids are a no-op."""
        session = self._sessions.get(session_id)
        if session is None or not session.live:
            return False
        logger.info("Terminating session %s", session_id)
        await self._close_session(session)
        return True

    async def close_all(self) -> None:
        sessions = [s for s in self._sessions.values() if s.state is not SessionState.CLOSED]
        if sessions:
            logger.info("Closing %d MCP sessions", len(sessions))
        for session in sessions:
            await self._close_session(session)

    async def _close_session(self, session: Session) -> None:
        session.state = SessionState.CLOSING
        try:
            await session.transport.close()
        except Exception:
            logger.warning("Error closing transport for session %s", session.id, exc_info=True)
        finally:
            self._discard(session.id)

    def _discard(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.state = SessionState.CLOSED
        for key in [key for key, (sid, _) in self._claims.items() if sid == session_id]:
            del self._claims[key]
        logger.info("Session %s closed (%d active)", session_id, self.active_session_count)

    def _prune_claims(self, now: float) -> None:
        for key, (_, claimed_at) in list(self._claims.items()):
            if key.startswith("client:") and now - claimed_at > self.settings.coalesce_window:
                del self._claims[key]

    # Request routing ---------------------------------------------------------

    def _claimed_session(self, key: str) -> Optional[Session]:
        claim = self._claims.get(key)
        if claim is None:
            return None
        session_id, claimed_at = claim
        session = self._sessions.get(session_id)
        if session is None or not session.live:
            del self._claims[key]
            return None
        if key.startswith("client:") and self._clock() - claimed_at > self.settings.coalesce_window:
            del self._claims[key]
            return None
        return session

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        tracker = _ResponseTracker(send)
        presented_id = _header(scope, MCP_SESSION_ID_HEADER)

        session = self._sessions.get(presented_id) if presented_id else None
        if session is not None and session.live:
            await self._delegate(session, scope, receive, tracker)
            return

        key = f"id:{presented_id}" if presented_id else f"client:{client_fingerprint(scope)}"
        async with self._creation_locks.hold(key):
            session = self._claimed_session(key)
            if session is None:
                try:
                    session = await self._create_session()
                except TransportError as exc:
                    logger.error("Failed to create session %s: %s", exc.session_id, exc, exc_info=True)
                    if not tracker.started:
                        response = JSONResponse(
                            error_envelope(SERVER_ERROR, f"MCP initialization failed: {exc}"),
                            status_code=500,
                        )
                        await response(scope, receive, tracker)
                    return
                self._claims[key] = (session.id, self._clock())
            else:
                logger.debug("Reusing session %s for %s", session.id, key)

        await self._delegate(session, _with_session_header(scope, session.id), receive, tracker)

    async def _create_session(self) -> Session:
        if self._task_group is None:
            raise TransportError("SessionMultiplexer is not running")

        session_id = uuid.uuid4().hex
        transport: Optional[TransportLike] = None
        try:
            server = self._server_factory()
            transport = self._transport_factory(session_id)
            session = Session(id=session_id, server=server, transport=transport, last_activity=self._clock())
            self._sessions[session_id] = session
            await self.registry.register(server)
            transport.on_close(self._discard)
            # Capabilities are derived from the handlers registered above.
            await self._task_group.start(transport.serve, server)
        except Exception as exc:
            self._sessions.pop(session_id, None)
            if transport is not None:
                with anyio.CancelScope(shield=True):
                    try:
                        await transport.close()
                    except Exception:
                        logger.debug("Error closing half-open session %s", session_id, exc_info=True)
            raise TransportError(str(exc) or type(exc).__name__, session_id=session_id) from exc

        session.state = SessionState.ACTIVE
        logger.info("Created MCP session %s (%d active)", session_id, self.active_session_count)
        return session

    async def _delegate(self, session: Session, scope: Scope, receive: Receive, tracker: _ResponseTracker) -> None:
        session.last_activity = self._clock()
        session.in_flight += 1
        try:
            await session.transport.handle_request(scope, receive, tracker)
        except anyio.get_cancelled_exc_class():
            logger.info("Request on session %s aborted, closing session", session.id)
            with anyio.CancelScope(shield=True):
                await self._close_session(session)
            raise
        except Exception as exc:
            logger.error("Request on session %s failed", session.id, exc_info=True)
            if not tracker.started:
                response = JSONResponse(
                    error_envelope(INTERNAL_ERROR, "Internal server error", str(exc)),
                    status_code=500,
                )
                await response(scope, receive, tracker)
        finally:
            session.in_flight -= 1
            session.last_activity = self._clock()


class McpEndpoint:
    """ASGI endpoint for ``/mcp``: POST goes to the multiplexer."""

    def __init__(self, multiplexer: SessionMultiplexer) -> None:
        self.multiplexer = multiplexer

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        method = scope.get("method", "")
        if method == "POST":
            await self.multiplexer.handle_request(scope, receive, send)
            return

        if method == "DELETE":
            session_id = _header(scope, MCP_SESSION_ID_HEADER)
            if session_id:
                await self.multiplexer.terminate(session_id)
            response = JSONResponse(
                {"jsonrpc": "2.0", "result": {"message": "Session terminated"}, "id": None}
            )
        else:
            response = JSONResponse(
                error_envelope(SERVER_ERROR, "Method not allowed. Use POST for MCP requests."),
                status_code=405,
                headers={"Allow": "POST, DELETE"},
            )
        await response(scope, receive, send)


def create_app(
    settings: Optional[ServerSettings] = None,
    *,
    bundler: Optional[WidgetBundler] = None,
    registry: Optional[ToolRegistry] = None,
    **multiplexer_options: Any,
) -> Starlette:
    """Build the Starlette app serving the MCP endpoint."""
    settings = settings or ServerSettings.from_env()
    if bundler is None:
        bundler = WidgetBundler(
            settings.source_url,
            cache_enabled=not settings.dev_mode,
            page_timeout=settings.page_timeout,
            asset_timeout=settings.asset_timeout,
        )
    if registry is None:
        registry = default_registry(bundler)
    multiplexer = SessionMultiplexer(registry, settings=settings, **multiplexer_options)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with multiplexer.run():
            try:
                yield
            finally:
                await bundler.aclose()

    app = Starlette(routes=[Route(MCP_PATH, endpoint=McpEndpoint(multiplexer))], lifespan=lifespan)
    app.state.settings = settings
    app.state.bundler = bundler
    app.state.multiplexer = multiplexer
    return app


async def serve(settings: ServerSettings) -> None:
    app = create_app(settings)
    config = uvicorn.Config(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    server = uvicorn.Server(config)
    logger.info(
        "Starting %s on %s:%d%s (widgets from %s, cache %s)",
        SERVER_NAME,
        settings.host,
        settings.port,
        MCP_PATH,
        settings.source_url,
        "off" if settings.dev_mode else "on",
    )
    await server.serve()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Serve widget-backed MCP tools over streamable HTTP.")
    parser.add_argument("--host", help="Bind host (default: $WIDGET_MCP_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Bind port (default: $WIDGET_MCP_PORT, $PORT or 3000)")
    parser.add_argument("--source-url", help="Base URL widget pages are fetched from")
    parser.add_argument("--dev", action="store_true", help="Disable widget shell caching")
    args = parser.parse_args(argv)

    settings = ServerSettings.from_env()
    overrides: Dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.source_url:
        overrides["source_url"] = args.source_url
    if args.dev:
        overrides["dev_mode"] = True
    if overrides:
        settings = replace(settings, **overrides)

    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(name)s - %(message)s")
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
