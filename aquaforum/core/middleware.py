# SecurityHeadersMiddleware, ErrorEnvelopeMiddleware
import logging
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from aquaforum.config import settings
from aquaforum.services.errors import AquaForumError, MediaError, TaggingError

log = logging.getLogger("aquaforum.http")

# Image hosts the gallery may render from, per media provider
MEDIA_IMG_HOSTS = {
    "cloudinary": "https://res.cloudinary.com",
    "shortpixel": "https://cdn.shortpixel.ai",
}


def content_security_policy(path: str) -> str:
    if path.startswith(("/docs", "/redoc")):
        # Swagger UI and ReDoc pull their assets from jsDelivr
        return (
            "default-src 'self'; "
            "img-src 'self' data: https:; "
            "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
            "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
            "connect-src 'self';"
        )
    img_src = " ".join(filter(None, ["'self' data: blob:", MEDIA_IMG_HOSTS.get(settings.MEDIA_SERVICE_PROVIDER)]))
    return (
        "default-src 'self'; "
        f"img-src {img_src}; "
        "object-src 'none'; "
        "frame-ancestors 'none'; "
        "base-uri 'self';"
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "same-origin"
        if (settings.APP_ENV or "").strip().lower() == "production":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains; preload"
        response.headers["Content-Security-Policy"] = content_security_policy(request.url.path)
        return response


def status_for(exc: Exception) -> int:
    if isinstance(exc, MediaError):
        return 502
    if isinstance(exc, TaggingError):
        return 503
    return 500


class ErrorEnvelopeMiddleware(BaseHTTPMiddleware):
    """Turns anything a route let escape into a JSON body carrying the request id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.time()
        request_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        try:
            response: Response = await call_next(request)
        except Exception as exc:
            code = status_for(exc)
            if isinstance(exc, AquaForumError):
                log.error("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc)
            else:
                log.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=code,
                content={"error": str(exc) or exc.__class__.__name__, "path": request.url.path, "request_id": request_id},
                headers={"x-request-id": request_id},
            )
        response.headers.setdefault("x-request-id", request_id)
        response.headers["server-timing"] = f"total;dur={(time.time() - start) * 1000:.2f}"
        return response
