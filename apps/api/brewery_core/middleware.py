import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from brewery_core.logging_config import LogContext


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        LogContext.clear()
        LogContext.set(correlation_id=req_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = req_id
        return response
