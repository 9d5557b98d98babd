"""Tests for API middleware (request context, threat screening)."""

from __future__ import annotations

import base64
from unittest.mock import AsyncMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from aether_guard.api.middleware import (
    create_request_context_middleware,
    create_threat_screening_middleware,
)
from aether_guard.security.detector import ThreatDetector
from aether_guard.security.recorder import SecurityEventRecorder


def _make_app(store: AsyncMock) -> web.Application:
    app = web.Application(
        middlewares=[create_request_context_middleware(), create_threat_screening_middleware()]
    )
    app["detector"] = ThreatDetector()
    app["recorder"] = SecurityEventRecorder(store)

    async def echo(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "request_id": request["request_id"],
                "tenant_id": request["context"].tenant_id,
                "sanitized": request.get("sanitized_body"),
                "threats": [t.to_dict() for t in request.get("detected_threats", [])],
                "isolated": request.get("isolated", False),
            }
        )

    app.router.add_get("/echo", echo)
    app.router.add_post("/echo", echo)
    return app


@pytest.fixture
def store() -> AsyncMock:
    return AsyncMock()


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


class TestRequestContextMiddleware:
    @pytest.mark.asyncio
    async def test_generates_request_id(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.get("/echo")
            data = await resp.json()
            assert resp.status == 200
            assert data["request_id"]
            assert resp.headers["X-Request-ID"] == data["request_id"]

    @pytest.mark.asyncio
    async def test_echoes_caller_request_id_and_tenant(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.get(
                "/echo", headers={"X-Request-ID": "req-42", "X-Tenant-ID": "tenant-a"}
            )
            data = await resp.json()
            assert resp.headers["X-Request-ID"] == "req-42"
            assert data["request_id"] == "req-42"
            assert data["tenant_id"] == "tenant-a"


# ---------------------------------------------------------------------------
# Threat screening
# ---------------------------------------------------------------------------


class TestThreatScreeningMiddleware:
    @pytest.mark.asyncio
    async def test_clean_body_passes(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post("/echo", json={"title": "Quarterly report"})
            data = await resp.json()
            assert resp.status == 200
            assert data["sanitized"] == {"title": "Quarterly report"}
            assert data["threats"] == []
            store.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_is_not_screened(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.get("/echo?q=<script>")
            data = await resp.json()
            assert resp.status == 200
            assert data["sanitized"] is None

    @pytest.mark.asyncio
    async def test_json_sent_as_plain_text_is_screened(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post(
                "/echo",
                data='{"query": "1 UNION SELECT password FROM users"}',
                headers={"Content-Type": "text/plain"},
            )
            data = await resp.json()

            assert resp.status == 422
            assert data["code"] == "SECURITY_BLOCKED"
            assert store.save.await_count == 2

    @pytest.mark.asyncio
    async def test_undecodable_body_reaches_handler_unscreened(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post("/echo", data="<script>alert(1)</script>")
            data = await resp.json()

            assert resp.status == 200
            assert data["sanitized"] is None
            store.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_json(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post(
                "/echo", data="{not json", headers={"Content-Type": "application/json"}
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_critical_threat_blocks_request(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post(
                "/echo",
                json={"title": "x'; DROP TABLE users;--"},
                headers={"X-Request-ID": "req-7", "X-Tenant-ID": "tenant-a"},
            )
            data = await resp.json()

            assert resp.status == 422
            assert data["code"] == "SECURITY_BLOCKED"
            assert data["request_id"] == "req-7"
            assert data["threat_types"] == ["sql_injection"]
            assert data["severity"] == "critical"

            assert store.save.await_count >= 1
            saved = store.save.await_args_list[0].args[0]
            assert saved.request_id == "req-7"
            assert saved.tenant_id == "tenant-a"
            assert saved.request_path == "/echo"
            assert saved.field_name == "title"

    @pytest.mark.asyncio
    async def test_nested_threat_path(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post(
                "/echo", json={"meta": {"tags": ["ok", "<script>x</script>"]}}
            )
            assert resp.status == 422
            fields = {call.args[0].field_name for call in store.save.await_args_list}
            assert "meta.tags[1]" in fields

    @pytest.mark.asyncio
    async def test_medium_threat_is_isolated(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post("/echo", json={"description": "see <img src=x>"})
            data = await resp.json()

            assert resp.status == 200
            assert data["isolated"] is True
            assert data["threats"][0]["type"] == "html_injection"
            assert data["threats"][0]["action"] == "isolated"
            assert "<img" not in data["sanitized"]["description"]
            store.save.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_low_threat_is_sanitized(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post("/echo", json={"title": "Hello <b>world</b>"})
            data = await resp.json()

            assert resp.status == 200
            assert data["isolated"] is False
            assert data["sanitized"] == {"title": "Hello world"}
            assert {t["action"] for t in data["threats"]} == {"sanitized"}

    @pytest.mark.asyncio
    async def test_password_passes_through(self, store):
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post("/echo", json={"password": "p'; DROP TABLE x;--"})
            data = await resp.json()

            assert resp.status == 200
            assert data["sanitized"] == {"password": "p'; DROP TABLE x;--"}
            assert data["threats"] == []

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_change_outcome(self, store):
        store.save.side_effect = ConnectionError("database down")
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post("/echo", json={"title": "<script>alert(1)</script>"})
            assert resp.status == 422

    @pytest.mark.asyncio
    async def test_script_in_text_upload_blocks_request(self, store):
        encoded = base64.b64encode(b"<script>alert(1)</script>").decode("ascii")
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post(
                "/echo", json={"mime_type": "text/html", "file_content": encoded}
            )
            data = await resp.json()

            assert resp.status == 422
            assert data["threat_types"] == ["xss"]
            fields = {call.args[0].field_name for call in store.save.await_args_list}
            assert fields == {"file_content_decoded"}

    @pytest.mark.asyncio
    async def test_binary_upload_passes_unchanged(self, store):
        encoded = base64.b64encode(b"\x89PNG<script>").decode("ascii")
        async with TestClient(TestServer(_make_app(store))) as client:
            resp = await client.post(
                "/echo", json={"mime_type": "image/png", "file_content": encoded}
            )
            data = await resp.json()

            assert resp.status == 200
            assert data["sanitized"]["file_content"] == encoded
            assert data["threats"] == []
