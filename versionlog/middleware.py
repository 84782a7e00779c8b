"""Request middleware scoping an as-of time to one HTTP request."""

import logging
from datetime import datetime

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from versionlog.clock import ContextVarTimeProvider, normalize
from versionlog.config import settings

logger = logging.getLogger(__name__)


def parse_as_of(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: ``value`` isn't an ISO-8601 date or datetime.
    """
    return normalize(datetime.fromisoformat(value))


class AsOfMiddleware(BaseHTTPMiddleware):
    """Serve a request from historical state when it asks for a point in time.

    The time is read from the ``X-As-Of`` header, else the ``as_of`` query
    parameter (both configurable), and applies to every session used while
    handling the request whose version log reads through
    ``ContextVarTimeProvider``. An unparseable value is answered with 400.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        raw = request.headers.get(settings.as_of_header)
        if raw is None:
            raw = request.query_params.get(settings.as_of_query_param)
        if not raw:
            return await call_next(request)

        try:
            as_of = parse_as_of(raw)
        except ValueError:
            logger.warning("%s %s: invalid as-of time %r", request.method, request.url.path, raw)
            return JSONResponse(
                {"detail": f"Invalid as-of time {raw!r}; expected an ISO-8601 timestamp"},
                status_code=400,
            )

        logger.debug("%s %s as of %s", request.method, request.url.path, as_of.isoformat())
        with ContextVarTimeProvider.scope(as_of):
            return await call_next(request)
