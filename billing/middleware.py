import logging
import time

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware:
    """
    Logs method, path, status and duration of every request.

    Bodies are not logged: edit requests and responses can carry large image
    payloads, and settlement callbacks carry payment details.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        started = time.monotonic()
        response = self.get_response(request)
        duration_ms = (time.monotonic() - started) * 1000

        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "API %s %s status=%d duration_ms=%.1f",
            request.method,
            request.get_full_path(),
            response.status_code,
            duration_ms,
        )
        return response
