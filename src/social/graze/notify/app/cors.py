from typing import Dict, List, Optional
from urllib.parse import urlparse

from aiohttp import web


def get_cors_headers(
    origin_value: Optional[str], path: str, allowed_origins: List[str], debug: bool
) -> Dict[str, str]:
    """Return appropriate CORS headers based on origin and path."""
    allowed_debug_hosts = {
        "localhost",
        "127.0.0.1",
    }

    headers = {
        "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": (
            "Keep-Alive, User-Agent, X-Requested-With, "
            "If-Modified-Since, Cache-Control, Content-Type, Last-Event-ID"
        ),
        "Vary": "Origin",
    }

    if path.startswith("/auth/"):
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin_value:
        parsed = urlparse(origin_value)
        base = (
            f"{parsed.scheme}://{parsed.netloc}"
            if parsed.scheme and parsed.netloc
            else origin_value
        )

        if base in allowed_origins:
            headers["Access-Control-Allow-Origin"] = origin_value
        elif debug and parsed.hostname in allowed_debug_hosts:
            headers["Access-Control-Allow-Origin"] = origin_value

    return headers


def cors_middleware_factory(allowed_origins: List[str], debug: bool):
    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        headers = get_cors_headers(
            request.headers.get("Origin"), request.path, allowed_origins, debug
        )

        if request.method == "OPTIONS":
            return web.Response(status=204, headers=headers)

        response = await handler(request)
        if not response.prepared:
            response.headers.update(headers)
        return response

    return cors_middleware
