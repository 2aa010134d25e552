"""Path normalisation so clients can address routes the way the PHP deployment did.

Accepted forms, all resolving to ``/categories``::

    /categories
    /api.php/categories
    /api.php?route=/categories
"""

from urllib.parse import parse_qs

from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response

SCRIPT_NAME = "/api.php"


def resolve_path(path: str, query_string: str = "") -> str:
    if path.startswith(SCRIPT_NAME + "/") or path == SCRIPT_NAME:
        path = path[len(SCRIPT_NAME):] or "/"

    route = parse_qs(query_string).get("route")
    if route and route[0]:
        path = "/" + route[0].lstrip("/")

    path = path.rstrip("/")
    return path or "/"


class RouteRewriteMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            await send({"type": "http.response.start", "status": 204, "headers": []})
            await send({"type": "http.response.body", "body": b""})
            return

        query = scope.get("query_string", b"").decode("latin-1")
        path = resolve_path(scope["path"], query)
        if path != scope["path"]:
            scope = dict(scope)
            scope["path"] = path
            scope["raw_path"] = path.encode("utf-8")
        await self.app(scope, receive, send)


class PreflightCORSMiddleware(CORSMiddleware):
    """CORS support whose preflight replies match the plain ``OPTIONS`` reply: 204, no body."""

    def preflight_response(self, request_headers):
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return JSONResponse(
                {"error": "CORS request not allowed", "detail": response.body.decode("utf-8")},
                status_code=response.status_code,
            )
        headers = {
            k: v
            for k, v in response.headers.items()
            if k not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)
