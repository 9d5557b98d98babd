"""Field validation endpoint.

Runs the declarative field rules against the body as sent, then returns the
sanitized record. Rule failures are routine input errors and are not
recorded as security events.
"""

from __future__ import annotations

from aiohttp import web

from aether_guard.api.middleware import unscreened_body_response
from aether_guard.api.models import VALIDATION_SCHEMAS
from aether_guard.logging import get_logger
from aether_guard.security.screening import sanitize_record

log = get_logger("aether_guard.api.routes.validate")


async def handle_validate(request: web.Request) -> web.Response:
    """POST /api/v1/validate/{schema}: validate and clean a record."""
    schema_name = request.match_info["schema"]
    schema = VALIDATION_SCHEMAS.get(schema_name)
    if schema is None:
        return web.json_response(
            {"error": f"Unknown schema: {schema_name}", "schemas": sorted(VALIDATION_SCHEMAS)},
            status=404,
        )

    if "json_body" not in request:
        return unscreened_body_response(request)
    record = request["json_body"]
    if not isinstance(record, dict):
        return web.json_response({"error": "Request body must be a JSON object"}, status=400)

    result = request.app["field_validator"].validate(schema, record)
    if not result.ok:
        log.debug("validation_failed", schema=schema_name, fields=[e.field for e in result.errors])
        return web.json_response(
            {
                "error": "Validation failed",
                "code": "VALIDATION_ERROR",
                "errors": [e.to_dict() for e in result.errors],
            },
            status=400,
        )

    cleaned = sanitize_record(result.value.model_dump(mode="json"))
    return web.json_response(
        {
            "valid": True,
            "data": cleaned,
            "isolated": bool(request.get("isolated", False)),
        }
    )
