# ==== CORRELATION ID MIDDLEWARE ==== #

"""
Request correlation for casewatch.

Each request carries an ``X-Correlation-Id``: the caller's when it is usable,
a fresh one otherwise. The id and the request's company are bound into the
loguru context for everything logged while the request runs, so escalation
and timeline logs emitted by services can be traced back to the API call.
"""

import re
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from loguru import logger as loguru_logger
from starlette.middleware.base import BaseHTTPMiddleware

from casewatch.observability.logging import get_logger
from casewatch.observability.metrics import http_request_latency_seconds
from casewatch.observability.tracing import get_tracer


CORRELATION_HEADER = "X-Correlation-Id"

# Ids are echoed into headers and logs, keep them short and printable
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

tracer = get_tracer(__name__)
logger = get_logger(__name__)


def resolve_correlation_id(incoming: Optional[str]) -> str:
    """Reuse the caller's correlation id when well formed, else mint one."""
    if incoming and _VALID_CORRELATION_ID.match(incoming):
        return incoming
    return uuid.uuid4().hex


# ==== CORRELATION MIDDLEWARE CLASS ==== #

class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Tag every request with a correlation id, a span and a latency sample.

    Runs inside the company scope middleware, so ``scope["company_id"]`` is
    already set for scoped routes.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        company_id = request.scope.get("company_id") or "unscoped"
        request.state.correlation_id = correlation_id

        started = time.perf_counter()

        with loguru_logger.contextualize(correlation_id=correlation_id, company_id=company_id), \
                tracer.start_as_current_span("casewatch.request") as span:
            span.set_attribute("http.method", request.method)
            span.set_attribute("http.target", request.url.path)
            span.set_attribute("casewatch.company_id", company_id)
            span.set_attribute("casewatch.correlation_id", correlation_id)

            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id

            # --► LATENCY BY ROUTE TEMPLATE
            elapsed = time.perf_counter() - started
            route = getattr(request.scope.get("route"), "path", "unmatched")
            http_request_latency_seconds.labels(
                company=company_id,
                method=request.method,
                route=route,
            ).observe(elapsed)

            span.set_attribute("http.status_code", response.status_code)
            logger.debug(
                "Request handled",
                method=request.method,
                route=route,
                status_code=response.status_code,
                duration_ms=round(elapsed * 1000, 1),
            )
            return response
