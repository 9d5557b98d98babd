"""Guard API server.

Screens every mutating JSON request for injection threats and exposes the
security event review and policy endpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import asyncpg  # type: ignore[import-not-found,import-untyped]
from aiohttp import web

from aether_guard.api.middleware import (
    create_request_context_middleware,
    create_threat_screening_middleware,
)
from aether_guard.api.routes.health import handle_health
from aether_guard.api.routes.security import register_security_routes
from aether_guard.api.routes.validate import handle_validate
from aether_guard.logging import get_logger
from aether_guard.security.detector import ThreatDetector
from aether_guard.security.policy import ActionPolicy, PolicyCache
from aether_guard.security.recorder import SecurityEventRecorder
from aether_guard.security.storage import SecurityEventStorage, SecurityPolicyStorage
from aether_guard.security.validator import FieldValidator

log = get_logger("aether_guard.api.server")

DEFAULT_MAX_BODY_BYTES = 10 * 1024 * 1024


class GuardAPIServer:
    """REST API server wiring the threat engine into aiohttp."""

    def __init__(
        self,
        event_storage: SecurityEventStorage,
        policy_storage: SecurityPolicyStorage,
        *,
        host: str = "0.0.0.0",  # nosec B104 - Intentional for Docker container
        port: int = 8080,
        record_sanitized: bool = True,
        allow_rereview: bool = False,
        policy_refresh_seconds: int = 60,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    ) -> None:
        self._event_storage = event_storage
        self._policy_storage = policy_storage
        self._host = host
        self._port = port
        self._policy_refresh_seconds = policy_refresh_seconds
        self._max_body_bytes = max_body_bytes

        self._policy_cache = PolicyCache(policy_storage)
        self._detector = ThreatDetector(policy=ActionPolicy(self._policy_cache))
        self._recorder = SecurityEventRecorder(
            event_storage,
            record_sanitized=record_sanitized,
            allow_rereview=allow_rereview,
        )
        self._field_validator = FieldValidator(self._detector)

        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._refresh_task: asyncio.Task[None] | None = None

        log.info("guard_api_initialized", host=host, port=port)

    @property
    def policy_cache(self) -> PolicyCache:
        return self._policy_cache

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp application."""
        middlewares: list[Any] = [
            # Context first so screening can attribute events
            create_request_context_middleware(),
            create_threat_screening_middleware(),
        ]

        app = web.Application(middlewares=middlewares, client_max_size=self._max_body_bytes)

        # Store shared state on app for handlers to access
        app["detector"] = self._detector
        app["recorder"] = self._recorder
        app["field_validator"] = self._field_validator
        app["event_storage"] = self._event_storage
        app["policy_storage"] = self._policy_storage
        app["policy_cache"] = self._policy_cache

        app.router.add_get("/api/v1/health", handle_health)
        app.router.add_post("/api/v1/validate/{schema}", handle_validate)
        register_security_routes(app)

        self._app = app
        return app

    async def _refresh_policies_forever(self) -> None:
        while True:
            await asyncio.sleep(self._policy_refresh_seconds)
            await self._policy_cache.refresh()

    async def start(self) -> None:
        """Load policies and start serving."""
        if self._app is None:
            self.create_app()

        if self._app is None:  # pragma: no cover
            raise RuntimeError("create_app() must be called first")

        await self._policy_cache.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_policies_forever())

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        log.info("guard_api_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the server and the policy refresh loop."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._refresh_task
            self._refresh_task = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("guard_api_stopped")


async def run_server(server: GuardAPIServer) -> None:
    """Run *server* until cancelled."""
    await server.start()

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()


def main() -> None:
    """Main entry point for the guard API service."""
    from aether_guard.config import get_settings
    from aether_guard.logging import setup_logging

    setup_logging()
    settings = get_settings()

    async def init_and_run() -> None:
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
        )
        try:
            event_storage = SecurityEventStorage(pool)
            await event_storage.initialize()

            server = GuardAPIServer(
                event_storage,
                SecurityPolicyStorage(pool),
                host=settings.api_host,
                port=settings.api_port,
                record_sanitized=settings.security_record_sanitized_events,
                allow_rereview=settings.security_allow_rereview,
                policy_refresh_seconds=settings.security_policy_refresh_seconds,
                max_body_bytes=settings.security_max_body_bytes,
            )
            await run_server(server)
        finally:
            await pool.close()

    try:
        asyncio.run(init_and_run())
    except KeyboardInterrupt:
        log.info("guard_api_shutdown")


if __name__ == "__main__":
    main()
