"""Unit tests for GuardAPIServer wiring and lifecycle."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer

from aether_guard.api.server import GuardAPIServer, main, run_server
from aether_guard.security.policy import ActionPolicy


def _server(**kwargs) -> GuardAPIServer:
    policy_storage = AsyncMock()
    policy_storage.fetch_policy_records.return_value = []
    return GuardAPIServer(AsyncMock(), policy_storage, **kwargs)


class TestCreateApp:
    def test_registers_shared_state(self) -> None:
        server = _server()
        app = server.create_app()

        for key in (
            "detector",
            "recorder",
            "field_validator",
            "event_storage",
            "policy_storage",
            "policy_cache",
        ):
            assert key in app
        assert app["policy_cache"] is server.policy_cache
        assert app["field_validator"].detector is app["detector"]

    def test_recorder_settings(self) -> None:
        app = _server(allow_rereview=True).create_app()
        assert app["recorder"].allow_rereview is True

    def test_body_limit(self) -> None:
        app = _server(max_body_bytes=1024).create_app()
        assert app._client_max_size == 1024

    def test_routes_registered(self) -> None:
        app = _server().create_app()
        paths = {r.resource.canonical for r in app.router.routes() if r.resource is not None}
        assert "/api/v1/health" in paths
        assert "/api/v1/validate/{schema}" in paths
        assert "/api/v1/security/events/{event_id}/review" in paths
        assert "/api/v1/security/events/resource" in paths
        assert "/api/v1/security/policies" in paths

    @pytest.mark.asyncio
    async def test_detector_uses_refreshed_policies(self) -> None:
        server = _server()
        server._policy_storage.fetch_policy_records.return_value = [
            {"id": "p1", "event_type": "*", "severity": "low", "action": "reject"}
        ]
        app = server.create_app()

        await server.policy_cache.refresh()

        threats = app["detector"].detect("Hello <b>world</b>", "title")
        assert threats
        assert ActionPolicy.strictest_action(threats).value == "rejected"

    @pytest.mark.asyncio
    async def test_health(self) -> None:
        server = _server()
        server._policy_storage.fetch_policy_records.return_value = [
            {"id": "p1", "severity": "low", "action": "sanitize"},
            {"id": "p2", "severity": "high", "action": "reject"},
        ]
        await server.policy_cache.refresh()

        async with TestClient(TestServer(server.create_app())) as client:
            resp = await client.get("/api/v1/health")
            data = await resp.json()

        assert resp.status == 200
        assert data["status"] == "healthy"
        assert data["policies_loaded"] == 2


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_loads_policies_and_serves(self) -> None:
        server = _server(host="127.0.0.1", port=9000)
        runner = AsyncMock()
        site = AsyncMock()

        with (
            patch("aether_guard.api.server.web.AppRunner", return_value=runner),
            patch("aether_guard.api.server.web.TCPSite", return_value=site) as mock_site_cls,
        ):
            await server.start()

        server._policy_storage.fetch_policy_records.assert_awaited_once()
        assert server.policy_cache.loaded_at is not None
        runner.setup.assert_awaited_once()
        mock_site_cls.assert_called_once_with(runner, "127.0.0.1", 9000)
        site.start.assert_awaited_once()
        assert server._refresh_task is not None

        await server.stop()

        runner.cleanup.assert_awaited_once()
        assert server._runner is None
        assert server._refresh_task is None

    @pytest.mark.asyncio
    async def test_stop_is_noop_when_not_started(self) -> None:
        server = _server()
        await server.stop()
        assert server._runner is None


class TestRunServer:
    @pytest.mark.asyncio
    async def test_run_server_stops_on_cancel(self) -> None:
        server = AsyncMock()

        with patch(
            "aether_guard.api.server.asyncio.sleep",
            side_effect=asyncio.CancelledError,
        ):
            await run_server(server)

        server.start.assert_awaited_once()
        server.stop.assert_awaited_once()


class TestMain:
    def test_main_builds_server_from_settings(self) -> None:
        settings = SimpleNamespace(
            postgres_dsn="postgresql://u:p@db:5432/guard",
            postgres_pool_min_size=1,
            postgres_pool_max_size=5,
            api_host="127.0.0.1",
            api_port=9100,
            security_record_sanitized_events=False,
            security_allow_rereview=True,
            security_policy_refresh_seconds=30,
            security_max_body_bytes=2048,
        )
        pool = MagicMock()
        pool.close = AsyncMock()
        event_storage = AsyncMock()

        with (
            patch("aether_guard.logging.setup_logging"),
            patch("aether_guard.config.get_settings", return_value=settings),
            patch(
                "aether_guard.api.server.asyncpg.create_pool",
                new_callable=AsyncMock,
                return_value=pool,
            ) as mock_create_pool,
            patch(
                "aether_guard.api.server.SecurityEventStorage", return_value=event_storage
            ),
            patch("aether_guard.api.server.run_server", new_callable=AsyncMock) as mock_run,
        ):
            main()

        mock_create_pool.assert_awaited_once_with(
            dsn="postgresql://u:p@db:5432/guard", min_size=1, max_size=5
        )
        event_storage.initialize.assert_awaited_once()
        server = mock_run.await_args.args[0]
        assert isinstance(server, GuardAPIServer)
        assert server._port == 9100
        assert server._policy_refresh_seconds == 30
        assert server.create_app()["recorder"].allow_rereview is True
        pool.close.assert_awaited_once()
