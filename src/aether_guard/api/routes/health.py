"""Health check endpoint for the guard API."""

from aiohttp import web

API_VERSION = "0.1.0"


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/v1/health: liveness plus the size of the loaded policy table."""
    policy_cache = request.app.get("policy_cache")
    return web.json_response(
        {
            "status": "healthy",
            "version": API_VERSION,
            "policies_loaded": len(policy_cache.table) if policy_cache is not None else 0,
        }
    )
