import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.config import get_settings


REQUEST_ID_HEADER = "x-request-id"


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str | None
    pipeline_policy: str
    user_id: str | None = None
    role: str | None = None


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Per-request identity; the auth and actor dependencies fill in user and role."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = RequestContext(
            request_id=str(uuid.uuid4()),
            correlation_id=getattr(request.state, "correlation_id", None),
            pipeline_policy=get_settings().pipeline_policy,
        )
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.context.request_id
        return response
