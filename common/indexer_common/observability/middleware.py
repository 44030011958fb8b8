"""
HTTP request metrics for the query API.

Series are labelled with the matched route template (``/transactions``),
never the concrete URL, so signature lookups do not mint one series per
transaction id. Unmatched requests fall back to the raw path.
"""

import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


def route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Count every handled request in ``counter`` (labels: method, path,
    status) and, when ``duration`` is given, observe its latency there
    (labels: method, path). Paths in ``ignored_paths`` are not recorded.
    """

    def __init__(
        self,
        app,
        counter: Counter,
        duration: Histogram | None = None,
        ignored_paths: set[str] | None = None,
    ):
        super().__init__(app)
        self.counter = counter
        self.duration = duration
        self.ignored_paths = frozenset(ignored_paths or ())

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        path = route_label(request)
        if path in self.ignored_paths:
            return response

        self.counter.labels(method=request.method, path=path, status=response.status_code).inc()
        if self.duration is not None:
            self.duration.labels(method=request.method, path=path).observe(elapsed)
        return response
