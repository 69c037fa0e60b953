from __future__ import annotations
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from docsign.config import settings
from docsign.metrics import REQS, LAT
import time
import uuid


def _too_large():
    return JSONResponse(
        {"success": False, "error": "payload_too_large", "message": f"Request body exceeds {settings.max_body_bytes} bytes", "details": {}},
        status_code=413,
    )


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = rid
        start = time.time()
        resp = await call_next(request)
        dur = time.time() - start
        # route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        LAT.labels(path=path, method=request.method).observe(dur)
        REQS.labels(path=path, method=request.method, status=str(resp.status_code)).inc()
        resp.headers["x-request-id"] = rid
        return resp


class BodySizeMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # hard cap via Content-Length if present
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > settings.max_body_bytes:
            return _too_large()
        body = await request.body()
        if len(body) > settings.max_body_bytes:
            return _too_large()
        return await call_next(request)
