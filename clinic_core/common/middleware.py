from __future__ import annotations

import logging
import time

from django.utils.deprecation import MiddlewareMixin

from clinic_core.common.api.exceptions import ensure_request_id

logger = logging.getLogger("clinic_core.requests")

REQUEST_ID_HEADER = "X-Request-Id"
REQUEST_ID_META_KEY = "HTTP_X_REQUEST_ID"


class RequestLogMiddleware(MiddlewareMixin):
    """
    Attaches a request_id to every request and logs one line per response.

    Behavior:
      - Honours an inbound X-Request-Id (trimmed to 64 chars), otherwise generates one.
      - The same id is used by the error envelope and echoed in the response header.
      - Log level follows the status: >=500 error, >=400 warning, else info.
      - Docs/schema/admin/static paths are not logged.
    """

    QUIET_PATH_PREFIXES = (
        "/admin/",
        "/api/docs/",
        "/api/schema/",
        "/static/",
    )

    def process_request(self, request):
        inbound = (request.META.get(REQUEST_ID_META_KEY) or "").strip()
        if inbound:
            request.request_id = inbound[:64]
        ensure_request_id(request)
        request._log_started = time.monotonic()
        return None

    def process_response(self, request, response):
        rid = ensure_request_id(request)
        response[REQUEST_ID_HEADER] = rid

        path = getattr(request, "path", "") or ""
        if any(path.startswith(p) for p in self.QUIET_PATH_PREFIXES):
            return response

        started = getattr(request, "_log_started", None)
        elapsed_ms = (time.monotonic() - started) * 1000 if started is not None else 0.0

        user = getattr(request, "user", None)
        user_id = getattr(user, "id", None) if user is not None and user.is_authenticated else None

        status_code = response.status_code
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        logger.log(
            level,
            "[%s] %s %s user=%s status=%s %.2fms",
            rid,
            request.method,
            path,
            user_id or "anonymous",
            status_code,
            elapsed_ms,
        )
        return response
