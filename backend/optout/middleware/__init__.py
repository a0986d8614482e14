from optout.middleware.request_log import RequestLoggingMiddleware
from optout.middleware.security import SecurityHeadersMiddleware

__all__ = ["RequestLoggingMiddleware", "SecurityHeadersMiddleware"]
