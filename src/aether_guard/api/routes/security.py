"""Security event and policy endpoints.

When the caller sends ``X-Tenant-ID`` every endpoint is scoped to that
tenant; without it the endpoints operate across tenants (operator access).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, TypeVar

from aiohttp import web
from pydantic import BaseModel, ValidationError

from aether_guard.api.middleware import unscreened_body_response
from aether_guard.api.models import (
    SecurityEventResourceRequest,
    SecurityEventReviewRequest,
    SecurityPolicyUpdate,
)
from aether_guard.logging import get_logger
from aether_guard.security.events import (
    DEFAULT_LIST_LIMIT,
    RequestContext,
    ReviewConflictError,
    SecurityEvent,
    SecurityEventFilters,
    SecurityEventNotFoundError,
    SecurityEventStatus,
)
from aether_guard.security.models import Severity, ThreatAction

log = get_logger("aether_guard.api.routes.security")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _context(request: web.Request) -> RequestContext:
    context = request.get("context")
    return context if isinstance(context, RequestContext) else RequestContext()


def _tenant_scope(request: web.Request) -> str | None:
    """Tenant from the caller's header, else from the ``tenant_id`` query param."""
    return _context(request).tenant_id or request.query.get("tenant_id") or None


def _bad_request(message: str, **extra: Any) -> web.Response:  # noqa: ANN401
    return web.json_response({"error": message, **extra}, status=400)


def _validation_details(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()
    ]


async def _read_body(request: web.Request, model: type[ModelT]) -> ModelT | web.Response:
    """Validate the screened JSON body against *model*, or build an error response."""
    if "sanitized_body" not in request:
        return unscreened_body_response(request)
    try:
        return model.model_validate(request["sanitized_body"])
    except ValidationError as exc:
        return _bad_request("Invalid request", details=_validation_details(exc))


def _parse_filters(request: web.Request) -> SecurityEventFilters:
    """Build list filters from query parameters.

    Raises:
        ValueError: On an unknown enum value, a malformed date or integer.
    """
    query = request.query

    def optional_date(name: str) -> datetime | None:
        raw = query.get(name)
        return datetime.fromisoformat(raw) if raw else None

    severity = query.get("severity")
    status = query.get("status")
    action = query.get("action")
    return SecurityEventFilters(
        tenant_id=_tenant_scope(request),
        event_type=query.get("event_type") or None,
        severity=Severity.parse(severity) if severity else None,
        status=SecurityEventStatus(status) if status else None,
        action=ThreatAction.parse(action) if action else None,
        start_date=optional_date("start_date"),
        end_date=optional_date("end_date"),
        limit=int(query.get("limit", DEFAULT_LIST_LIMIT)),
        offset=int(query.get("offset", 0)),
    )


async def _visible_event(request: web.Request) -> SecurityEvent | None:
    """Load the event named in the URL if the caller's tenant may see it."""
    storage = request.app["event_storage"]
    event = await storage.get(request.match_info["event_id"])
    tenant_id = _context(request).tenant_id
    if event is None or (tenant_id is not None and event.tenant_id != tenant_id):
        return None
    return event  # type: ignore[no-any-return]


async def handle_list_events(request: web.Request) -> web.Response:
    """GET /api/v1/security/events: paginated, filtered event list."""
    try:
        filters = _parse_filters(request)
    except ValueError as e:
        return _bad_request("Invalid query parameter", detail=str(e))

    events, total = await request.app["event_storage"].list(filters)
    return web.json_response(
        {
            "events": [e.to_dict() for e in events],
            "total": total,
            "limit": filters.limit,
            "offset": filters.offset,
        }
    )


async def handle_get_event(request: web.Request) -> web.Response:
    """GET /api/v1/security/events/{event_id}."""
    event = await _visible_event(request)
    if event is None:
        return web.json_response({"error": "Security event not found"}, status=404)
    return web.json_response(event.to_dict())


async def handle_review_event(request: web.Request) -> web.Response:
    """PUT /api/v1/security/events/{event_id}/review: record a final decision.

    Requires ``X-User-ID``; the reviewer is the calling user.
    """
    reviewer_id = _context(request).user_id
    if not reviewer_id:
        return web.json_response({"error": "Missing X-User-ID header"}, status=401)

    body = await _read_body(request, SecurityEventReviewRequest)
    if isinstance(body, web.Response):
        return body

    if await _visible_event(request) is None:
        return web.json_response({"error": "Security event not found"}, status=404)

    event_id = request.match_info["event_id"]
    try:
        event = await request.app["recorder"].review(event_id, reviewer_id, body)
    except SecurityEventNotFoundError:
        return web.json_response({"error": "Security event not found"}, status=404)
    except ReviewConflictError as e:
        return web.json_response(
            {"error": "Security event already reviewed", "status": e.status},
            status=409,
        )
    return web.json_response(event.to_dict())


async def handle_acknowledge_event(request: web.Request) -> web.Response:
    """POST /api/v1/security/events/{event_id}/acknowledge: mark NEW as REVIEWED."""
    reviewer_id = _context(request).user_id
    if not reviewer_id:
        return web.json_response({"error": "Missing X-User-ID header"}, status=401)

    if await _visible_event(request) is None:
        return web.json_response({"error": "Security event not found"}, status=404)

    try:
        event = await request.app["recorder"].acknowledge(
            request.match_info["event_id"], reviewer_id
        )
    except SecurityEventNotFoundError:
        return web.json_response({"error": "Security event not found"}, status=404)
    return web.json_response(event.to_dict())


async def handle_attach_resource(request: web.Request) -> web.Response:
    """POST /api/v1/security/events/resource: link a request's events to a resource.

    Called once an isolated request has gone on to create something, so a
    reviewer can find it. Tenant callers only touch their own events.
    """
    body = await _read_body(request, SecurityEventResourceRequest)
    if isinstance(body, web.Response):
        return body

    count = await request.app["recorder"].attach_resource(
        body.request_id,
        body.resource_id,
        body.resource_type,
        tenant_id=_context(request).tenant_id,
    )
    return web.json_response({**body.model_dump(), "updated": count})


async def handle_summary(request: web.Request) -> web.Response:
    """GET /api/v1/security/summary: dashboard counts."""
    summary = await request.app["event_storage"].summary(_tenant_scope(request))
    return web.json_response(summary.to_dict())


async def handle_list_policies(request: web.Request) -> web.Response:
    """GET /api/v1/security/policies: global policies plus the tenant's own."""
    policies = await request.app["policy_storage"].list_policies(_tenant_scope(request))
    return web.json_response({"policies": [p.to_dict() for p in policies]})


async def handle_upsert_policy(request: web.Request) -> web.Response:
    """PUT /api/v1/security/policies: create or replace an override.

    Tenant callers can only write their own policies. The policy cache is
    refreshed before responding so the change applies to the next request.
    """
    body = await _read_body(request, SecurityPolicyUpdate)
    if isinstance(body, web.Response):
        return body

    tenant_id = _context(request).tenant_id or body.tenant_id
    policy = await request.app["policy_storage"].upsert_policy(
        body.severity,
        body.action,
        tenant_id=tenant_id,
        event_type=body.event_type,
        enabled=body.enabled,
    )
    await request.app["policy_cache"].refresh()
    return web.json_response(policy.to_dict())


def register_security_routes(app: web.Application) -> None:
    """Register all security endpoints on *app*."""
    app.router.add_get("/api/v1/security/events", handle_list_events)
    app.router.add_get("/api/v1/security/events/{event_id}", handle_get_event)
    app.router.add_put("/api/v1/security/events/{event_id}/review", handle_review_event)
    app.router.add_post(
        "/api/v1/security/events/{event_id}/acknowledge", handle_acknowledge_event
    )
    app.router.add_post("/api/v1/security/events/resource", handle_attach_resource)
    app.router.add_get("/api/v1/security/summary", handle_summary)
    app.router.add_get("/api/v1/security/policies", handle_list_policies)
    app.router.add_put("/api/v1/security/policies", handle_upsert_policy)
