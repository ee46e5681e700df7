import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from aquaforum.config import settings
from aquaforum.core.middleware import ErrorEnvelopeMiddleware, SecurityHeadersMiddleware
from aquaforum.core.rate_limit import limiter
from aquaforum.db import close_db, init_db
from aquaforum.routers import router
from aquaforum.services.metrics import metrics_endpoint, metrics_middleware
from aquaforum.services.registry import Services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
log = logging.getLogger("aquaforum")

if settings.SENTRY_DSN:
    sentry_sdk.init(dsn=settings.SENTRY_DSN, traces_sample_rate=0.1, environment=settings.APP_ENV)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting Aqua Forum API...")
    try:
        await init_db()
    except Exception as e:
        log.error("Database initialization failed: %s", e)
        raise
    services = Services.from_settings(settings)
    await services.start()
    app.state.services = services

    yield

    log.info("Shutting down Aqua Forum API...")
    await services.close()
    await close_db()
    log.info("Database connections closed")


app = FastAPI(
    title="Aqua Forum API",
    description="Photo upload and automatic aquarium tagging for the Aqua Forum community",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(router)

# Local provider files are served straight from the upload root
Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

# Middleware setup
app.add_middleware(GZipMiddleware, minimum_size=1024)
app.add_middleware(ErrorEnvelopeMiddleware)

_default_cors = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS or _default_cors,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count", "X-Total-Pages"],
)
app.add_middleware(SecurityHeadersMiddleware)

# Prometheus request metrics when METRICS_ENABLED=1
metrics_middleware(app)


# Correlation ID middleware
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
    request.state.rid = rid
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response


@app.get("/metrics")
async def prometheus_metrics():
    return await metrics_endpoint()


@app.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}
