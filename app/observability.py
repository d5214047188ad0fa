import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY


def _route_path(request: Request) -> str:
    # Templated path keeps label cardinality bounded.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            labels = {"method": request.method, "path": _route_path(request), "status": status}
            REQUEST_COUNT.labels(**labels).inc()
            REQUEST_LATENCY.labels(**labels).observe(time.perf_counter() - start)
            if status.startswith("5"):
                REQUEST_ERRORS.labels(**labels).inc()
