import contextvars
import logging
import time
import uuid

from django.conf import settings
from django.http import HttpResponse

ALLOWED_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
ALLOWED_HEADERS = "authorization, content-type, accept, x-tenant-id"

_request_id = contextvars.ContextVar("request_id", default="-")


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to every record so the console format can print it."""

    def filter(self, record):
        record.request_id = _request_id.get()
        return True


class DevCORSPreflightMiddleware:
    """
    DEBUG-only: short-circuit OPTIONS with permissive CORS headers.
    Must sit before CommonMiddleware.
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if settings.DEBUG and request.method == "OPTIONS":
            resp = HttpResponse(status=204)
            resp["Access-Control-Allow-Origin"] = request.META.get("HTTP_ORIGIN", "*")
            resp["Vary"] = "Origin"
            resp["Access-Control-Allow-Methods"] = ALLOWED_METHODS
            resp["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
            resp["Access-Control-Max-Age"] = "600"
            return resp
        return self.get_response(request)


class RequestIDMiddleware:
    """
    Propagates X-Request-ID (or mints one) onto the request, the log records
    emitted while handling it, and the response.
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        rid = request.META.get("HTTP_X_REQUEST_ID") or uuid.uuid4().hex
        request.request_id = rid
        token = _request_id.set(rid)
        try:
            response = self.get_response(request)
        finally:
            _request_id.reset(token)
        response["X-Request-ID"] = rid
        return response


class TimingMiddleware:
    """Adds X-Response-Time-ms."""
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        t0 = time.perf_counter()
        resp = self.get_response(request)
        resp["X-Response-Time-ms"] = str(int((time.perf_counter() - t0) * 1000))
        return resp
