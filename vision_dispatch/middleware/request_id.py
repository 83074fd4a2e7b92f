from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from vision_dispatch.utils.request_context import new_request_id, request_id_scope


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Echoes X-Request-Id (or a fresh uuid4) on every response.

    Log records read the id from the context variable; exception handlers
    read request.state.request_id.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("X-Request-Id") or new_request_id()
        request.state.request_id = rid

        with request_id_scope(rid):
            response = await call_next(request)

        response.headers["X-Request-Id"] = rid
        return response
