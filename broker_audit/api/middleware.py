"""API middleware: correlation ID, request context (principal, client IP, user agent)."""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from broker_audit.core.context import client_ip_ctx, correlation_id_ctx, user_agent_ctx, username_ctx

CORRELATION_HEADER = "X-Correlation-ID"
FORWARDED_FOR_HEADER = "X-Forwarded-For"
PRINCIPAL_HEADER = "X-Authenticated-User"
USER_AGENT_HEADER = "User-Agent"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Generate or preserve correlation ID; attach to request.state, response header, and logging context."""

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        correlation_id_ctx.set(correlation_id)

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def client_ip_from(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Capture who is calling and from where, so audit records built further down
    the request path can fill principal, client IP and user agent without the
    handler passing them explicitly. Authentication itself happens upstream.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        principal = (request.headers.get(PRINCIPAL_HEADER) or "").strip() or None
        client_ip = client_ip_from(request)
        user_agent = request.headers.get(USER_AGENT_HEADER)

        request.state.principal = principal
        request.state.client_ip = client_ip
        request.state.user_agent = user_agent
        username_ctx.set(principal)
        client_ip_ctx.set(client_ip)
        user_agent_ctx.set(user_agent)
        return await call_next(request)
