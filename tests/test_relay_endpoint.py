from __future__ import annotations

import asyncio
from typing import Any

import fakeredis
import httpx

from gemini_relay.gateway.forwarder import RequestDescriptor
from gemini_relay.main import _forward_until_disconnected
from tests.client_test_utils import build_test_client, unreachable_redis_server

BASE_URL = "https://generativelanguage.googleapis.com"


def _seeded_server(*values: str) -> fakeredis.FakeServer:
    server = fakeredis.FakeServer()
    if values:
        fakeredis.FakeRedis(server=server).rpush("gemini-proxy", *values)
    return server


def test_get_is_forwarded_with_pool_credential(monkeypatch: Any) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(
            200,
            headers={"content-type": "application/json", "x-goog-trace": "abc"},
            json={"models": [{"name": "models/gemini-pro"}]},
        )

    with build_test_client(
        monkeypatch,
        redis_server=_seeded_server('{"key":"ABCDEFGH12"}'),
        upstream_handler=handler,
    ) as client:
        response = client.get("/v1/models?foo=1")

    assert seen == [f"{BASE_URL}/v1/models?foo=1&key=ABCDEFGH12"]
    assert response.status_code == 200
    assert response.json() == {"models": [{"name": "models/gemini-pro"}]}
    assert response.headers["x-goog-trace"] == "abc"
    assert response.headers["x-content-from"] == "gemini"
    assert response.headers["x-trace-id"]


def test_caller_key_overrides_pool(monkeypatch: Any) -> None:
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json={})

    with build_test_client(
        monkeypatch,
        redis_server=_seeded_server('{"key":"ABCDEFGH12"}'),
        upstream_handler=handler,
    ) as client:
        response = client.get("/v1/models", params={"key": "caller-key-99", "x": "1"})

    assert response.status_code == 200
    assert seen[0].params.get_list("key") == ["caller-key-99"]
    assert seen[0].params["x"] == "1"


def test_post_body_and_status_are_relayed(monkeypatch: Any) -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["body"] = request.content
        captured["content_type"] = request.headers.get("content-type")
        return httpx.Response(
            429,
            headers={"content-type": "application/json", "retry-after": "7"},
            content=b'{"error":{"status":"RESOURCE_EXHAUSTED"}}',
        )

    with build_test_client(
        monkeypatch,
        redis_server=_seeded_server('{"key":"ABCDEFGH12"}'),
        upstream_handler=handler,
    ) as client:
        response = client.post(
            "/v1beta/models/gemini-pro:generateContent",
            content=b'{"contents":[{"parts":[{"text":"hi"}]}]}',
            headers={"content-type": "application/json"},
        )

    assert captured == {
        "method": "POST",
        "body": b'{"contents":[{"parts":[{"text":"hi"}]}]}',
        "content_type": "application/json",
    }
    assert response.status_code == 429
    assert response.content == b'{"error":{"status":"RESOURCE_EXHAUSTED"}}'
    assert response.headers["retry-after"] == "7"
    assert response.headers["x-content-from"] == "gemini"


def test_missing_upstream_content_type_defaults_to_json(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        _ = request
        return httpx.Response(200, content=b"{}")

    with build_test_client(
        monkeypatch,
        redis_server=_seeded_server('{"key":"ABCDEFGH12"}'),
        upstream_handler=handler,
    ) as client:
        response = client.get("/v1/models")

    assert response.headers["content-type"] == "application/json"


def test_unreachable_redis_rotates_configured_keys(monkeypatch: Any) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["key"])
        return httpx.Response(200, json={})

    with build_test_client(
        monkeypatch,
        redis_server=unreachable_redis_server(),
        upstream_handler=handler,
        API_KEY="fallback-key-01, fallback-key-02",
    ) as client:
        for _ in range(3):
            assert client.get("/v1/models").status_code == 200

    assert seen == ["fallback-key-01", "fallback-key-02", "fallback-key-01"]


def test_startup_seeds_empty_pool_once(monkeypatch: Any) -> None:
    server = fakeredis.FakeServer()

    with build_test_client(
        monkeypatch,
        redis_server=server,
        upstream_handler=lambda request: httpx.Response(200, json={}),
        API_KEY='seed-key-0001,{"key":"seed-key-0002","proxy":"http://egress:3128"}',
    ):
        pass

    with build_test_client(
        monkeypatch,
        redis_server=server,
        upstream_handler=lambda request: httpx.Response(200, json={}),
        API_KEY="other-key-0003",
    ):
        pass

    assert fakeredis.FakeRedis(server=server).lrange("gemini-proxy", 0, -1) == [
        b'{"key":"seed-key-0001"}',
        b'{"key":"seed-key-0002","proxy":"http://egress:3128"}',
    ]


def test_no_credentials_returns_self_generated_error(monkeypatch: Any) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with build_test_client(
        monkeypatch,
        redis_server=unreachable_redis_server(),
        upstream_handler=handler,
    ) as client:
        response = client.get("/v1/models")

    assert calls == []
    assert response.status_code == 500
    assert response.json() == {
        "code": 500,
        "body": "Internal server error. details: invalid api key: <empty>",
    }
    assert response.headers["x-content-from"] == "agent"
    assert response.headers["x-trace-id"]


def test_upstream_failure_returns_self_generated_error(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        msg = "upstream down"
        raise httpx.ConnectError(msg, request=request)

    with build_test_client(
        monkeypatch,
        redis_server=_seeded_server('{"key":"ABCDEFGH12"}'),
        upstream_handler=handler,
    ) as client:
        response = client.get("/v1/models")

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == 500
    assert body["body"].startswith("Internal server error. details: could not send request")
    assert "upstream down" in body["body"]
    assert response.headers["x-content-from"] == "agent"


def test_each_request_gets_its_own_trace_id(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        redis_server=_seeded_server('{"key":"ABCDEFGH12"}'),
        upstream_handler=lambda request: httpx.Response(200, json={}),
    ) as client:
        first = client.get("/v1/models")
        second = client.get("/v1/models")

    assert first.headers["x-trace-id"] != second.headers["x-trace-id"]


class _DisconnectedRequest:
    async def receive(self) -> dict[str, Any]:
        return {"type": "http.disconnect"}


class _HangingForwarder:
    def __init__(self) -> None:
        self.cancelled = False

    async def forward(self, descriptor: Any) -> Any:
        _ = descriptor
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_client_disconnect_cancels_inflight_forward() -> None:
    forwarder = _HangingForwarder()
    result = asyncio.run(
        _forward_until_disconnected(
            _DisconnectedRequest(),  # type: ignore[arg-type]
            forwarder,  # type: ignore[arg-type]
            RequestDescriptor(method="GET", path="/v1/models"),
        )
    )
    assert result is None
    assert forwarder.cancelled is True


class _ConnectedRequest:
    async def receive(self) -> dict[str, Any]:
        await asyncio.sleep(3600)
        return {"type": "http.disconnect"}


def test_cancelled_relay_cancels_inflight_forward() -> None:
    forwarder = _HangingForwarder()

    async def scenario() -> None:
        relay_task = asyncio.create_task(
            _forward_until_disconnected(
                _ConnectedRequest(),  # type: ignore[arg-type]
                forwarder,  # type: ignore[arg-type]
                RequestDescriptor(method="GET", path="/v1/models"),
            )
        )
        await asyncio.sleep(0.01)
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass

    asyncio.run(scenario())
    assert forwarder.cancelled is True
