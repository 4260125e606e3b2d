import sys
from pathlib import Path

import httpx
import pytest
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parents[1]))

from widget_bundler import WidgetBundler  # noqa: E402
from widget_mcp_server import ServerSettings, create_app  # noqa: E402

SOURCE = "https://widgets.example.com"
PROTOCOL_VERSION = "2025-06-18"
HEADERS = {
    "accept": "application/json, text/event-stream",
    "mcp-protocol-version": PROTOCOL_VERSION,
}

WIDGET_PAGE = """<!DOCTYPE html>
<html><head><title>greet</title><link rel="stylesheet" href="/_next/static/css/w.css"></head>
<body><div id="root"></div></body></html>
"""


def upstream(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/widgets/greet"):
        return httpx.Response(200, text=WIDGET_PAGE)
    if request.url.path == "/_next/static/css/w.css":
        return httpx.Response(200, text="#root{margin:0}")
    return httpx.Response(404)


def rpc(method: str, params: dict | None = None, request_id: int | None = 1) -> dict:
    message: dict = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    if request_id is not None:
        message["id"] = request_id
    return message


@pytest.fixture
def client():
    bundler = WidgetBundler(SOURCE, client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))
    settings = ServerSettings(source_url=SOURCE, json_response=True, sweep_interval=3600)
    app = create_app(settings, bundler=bundler)
    with TestClient(app) as test_client:
        yield test_client


def open_session(client: TestClient) -> str:
    response = client.post(
        "/mcp",
        json=rpc(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "endpoint-test", "version": "0.0.1"},
            },
        ),
        headers=HEADERS,
    )
    assert response.status_code == 200
    session_id = response.headers["mcp-session-id"]
    initialized = client.post(
        "/mcp",
        json=rpc("notifications/initialized", request_id=None),
        headers={**HEADERS, "mcp-session-id": session_id},
    )
    assert initialized.status_code == 202
    return session_id


def test_get_is_rejected(client: TestClient) -> None:
    response = client.get("/mcp")

    assert response.status_code == 405
    assert response.json() == {
        "jsonrpc": "2.0",
        "error": {"code": -32000, "message": "Method not allowed. Use POST for MCP requests."},
        "id": None,
    }


def test_delete_without_session_is_acknowledged(client: TestClient) -> None:
    response = client.delete("/mcp")

    assert response.status_code == 200
    assert response.json() == {"jsonrpc": "2.0", "result": {"message": "Session terminated"}, "id": None}


def test_initialize_advertises_list_changed(client: TestClient) -> None:
    response = client.post(
        "/mcp",
        json=rpc(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "endpoint-test", "version": "0.0.1"},
            },
        ),
        headers=HEADERS,
    )

    result = response.json()["result"]
    assert result["serverInfo"]["name"] == "widget-mcp-server"
    assert result["capabilities"]["tools"]["listChanged"] is True
    assert result["capabilities"]["resources"]["listChanged"] is True
    assert client.app.state.multiplexer.active_session_count == 1


def test_tools_and_resources_are_listed(client: TestClient) -> None:
    session_id = open_session(client)
    headers = {**HEADERS, "mcp-session-id": session_id}

    tools = client.post("/mcp", json=rpc("tools/list", request_id=2), headers=headers).json()["result"]["tools"]
    resources = client.post("/mcp", json=rpc("resources/list", request_id=3), headers=headers).json()["result"][
        "resources"
    ]

    assert {tool["name"] for tool in tools} == {"greet-ko", "calculate-ko", "saju-ko", "saju-en"}
    greet = next(tool for tool in tools if tool["name"] == "greet-ko")
    assert greet["_meta"]["openai/outputTemplate"] == "ui://widget/greet-template-ko.html"
    assert {res["uri"] for res in resources} == {
        "ui://widget/greet-template-ko.html",
        "ui://widget/calculate-template-ko.html",
        "ui://widget/saju-template-ko.html",
        "ui://widget/saju-template-en.html",
    }
    assert all(res["mimeType"] == "text/html+skybridge" for res in resources)


def test_greet_tool_returns_bundled_widget(client: TestClient) -> None:
    session_id = open_session(client)

    response = client.post(
        "/mcp",
        json=rpc("tools/call", {"name": "greet-ko", "arguments": {"name": "철수"}}, request_id=4),
        headers={**HEADERS, "mcp-session-id": session_id},
    )

    result = response.json()["result"]
    assert result.get("isError") is not True
    text, widget = result["content"]
    assert text["text"] == "안녕하세요, 철수님! 만나서 반갑습니다! 🎉"
    assert widget["type"] == "resource"
    html = widget["resource"]["text"]
    assert "#root{margin:0}" in html
    assert "window.__WIDGET_DATA__" in html
    assert result["structuredContent"]["toolType"] == "greet"


def test_delete_terminates_session(client: TestClient) -> None:
    session_id = open_session(client)
    multiplexer = client.app.state.multiplexer

    response = client.delete("/mcp", headers={"mcp-session-id": session_id})

    assert response.status_code == 200
    assert multiplexer.get(session_id) is None

    # The old id is now unknown: the next call lands on a fresh session.
    again = client.post(
        "/mcp",
        json=rpc("tools/list", request_id=5),
        headers={**HEADERS, "mcp-session-id": session_id},
    )
    assert again.status_code == 200
    assert again.headers["mcp-session-id"] != session_id
    assert "tools" in again.json()["result"]
