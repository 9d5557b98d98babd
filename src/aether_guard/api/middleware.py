"""Middleware for the guard API server.

Provides request context injection and threat screening of JSON bodies.
Routes read request bodies only through what the screening middleware
stored, never from the raw request.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from aiohttp import web

from aether_guard.logging import get_logger
from aether_guard.security.detector import highest_severity
from aether_guard.security.events import RequestContext
from aether_guard.security.models import ThreatAction
from aether_guard.security.policy import ActionPolicy
from aether_guard.security.screening import screen_payload

log = get_logger("aether_guard.api.middleware")

# Methods whose JSON bodies are screened
SCREENED_METHODS = frozenset({"POST", "PUT", "PATCH"})

REQUEST_ID_HEADER = "X-Request-ID"
TENANT_ID_HEADER = "X-Tenant-ID"
USER_ID_HEADER = "X-User-ID"

JSON_CONTENT_TYPE = "application/json"


def build_request_context(request: web.Request) -> RequestContext:
    """Describe *request* for security event records."""
    request_id = request.get("request_id") or request.headers.get(REQUEST_ID_HEADER)
    return RequestContext(
        request_id=request_id or str(uuid4()),
        request_path=request.path,
        request_method=request.method,
        client_ip=request.remote or "",
        user_agent=request.headers.get("User-Agent", ""),
        user_id=request.headers.get(USER_ID_HEADER) or None,
        tenant_id=request.headers.get(TENANT_ID_HEADER) or None,
    )


def unscreened_body_response(request: web.Request) -> web.Response:
    """Response for a route that needs a JSON body the screening middleware did not decode."""
    if request.body_exists:
        return web.json_response({"error": "Request body must be JSON"}, status=415)
    return web.json_response({"error": "Request body required"}, status=400)


def create_request_context_middleware() -> Any:
    """Create middleware that assigns a request ID and a :class:`RequestContext`.

    The request ID comes from ``X-Request-ID`` when the caller sends one and
    is echoed back on the response.
    """

    @web.middleware
    async def request_context_middleware(request: web.Request, handler: Any) -> web.Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request["request_id"] = request_id
        request["context"] = build_request_context(request)

        response = await handler(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response  # type: ignore[no-any-return]

    return request_context_middleware


def create_threat_screening_middleware() -> Any:
    """Create middleware that screens JSON bodies of mutating requests.

    A body is decoded as JSON whatever its ``Content-Type`` says. A body that
    does not decode is refused with 400 when it claims to be JSON and is
    otherwise left for the route, which cannot read it (see
    :func:`unscreened_body_response`).

    Every key and string value is scanned and sanitized. When the strictest
    action across the detected threats is ``rejected`` the events are
    recorded and the request fails with 422. Otherwise the handler sees:

    - ``request["json_body"]``: the decoded body as sent
    - ``request["sanitized_body"]``: the cleaned body
    - ``request["detected_threats"]``: every threat found
    - ``request["isolated"]``: True when any threat was isolated

    Requires ``detector`` and ``recorder`` on the application.
    """

    @web.middleware
    async def threat_screening_middleware(request: web.Request, handler: Any) -> web.Response:
        if request.method not in SCREENED_METHODS or not request.body_exists:
            return await handler(request)  # type: ignore[no-any-return]

        try:
            body = await request.json()
        except ValueError:
            if request.content_type == JSON_CONTENT_TYPE:
                return web.json_response({"error": "Invalid JSON body"}, status=400)
            log.debug(
                "screening_skipped_non_json_body",
                path=request.path,
                content_type=request.content_type,
            )
            return await handler(request)  # type: ignore[no-any-return]

        context: RequestContext = request.get("context") or build_request_context(request)
        result = screen_payload(body, request.app["detector"], tenant_id=context.tenant_id)

        request["json_body"] = body
        request["sanitized_body"] = result.sanitized
        request["detected_threats"] = result.threats
        request["isolated"] = result.isolated

        if not result.threats:
            return await handler(request)  # type: ignore[no-any-return]

        await request.app["recorder"].record(result.threats, context)

        strictest = ActionPolicy.strictest_action(result.threats)
        if strictest == ThreatAction.REJECTED:
            severity = highest_severity(result.threats)
            threat_types = sorted({t.type.value for t in result.threats})
            log.warning(
                "security_request_blocked",
                request_id=context.request_id,
                path=context.request_path,
                tenant_id=context.tenant_id,
                threat_types=threat_types,
                severity=severity.value if severity else None,
                threat_count=len(result.threats),
            )
            return web.json_response(
                {
                    "error": "Request blocked by security policy",
                    "code": "SECURITY_BLOCKED",
                    "request_id": context.request_id,
                    "threat_types": threat_types,
                    "severity": severity.value if severity else None,
                },
                status=422,
            )

        if result.isolated:
            log.info(
                "security_request_isolated",
                request_id=context.request_id,
                path=context.request_path,
                threat_count=len(result.threats),
            )
        return await handler(request)  # type: ignore[no-any-return]

    return threat_screening_middleware
