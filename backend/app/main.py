import asyncio
import hmac
import logging
import traceback
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import IntegrityError
from starlette.middleware.base import BaseHTTPMiddleware
from app.api.routes import get_depth_service, router
from app.config import settings
from app.modules.depth_service import DepthService
from app.modules.protocol_config import load_safety_protocols

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def run_alert_maintenance(service: DepthService) -> dict[str, int]:
    """Expire stale alerts and apply time-based escalation once."""
    if service.hierarchy is None:
        return {"expired": 0, "escalated": 0}
    expired = service.hierarchy.expire_stale()
    escalated = service.hierarchy.apply_escalation_rules()
    if expired or escalated:
        logger.info("Alert maintenance: %d expired, %d escalated", len(expired), len(escalated))
    return {"expired": len(expired), "escalated": len(escalated)}


async def _alert_maintenance_loop(app: FastAPI, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        provider = app.dependency_overrides.get(get_depth_service, get_depth_service)
        try:
            await asyncio.to_thread(run_alert_maintenance, provider())
        except Exception:
            logger.exception("Alert maintenance pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load safety_protocols.yaml at startup so config problems surface early,
    then expire/escalate alerts in the background while the app runs."""
    protocols = load_safety_protocols()
    logger.info(
        "Safety protocols loaded: %d escalation rules, %d emergency contacts",
        len(protocols.get("escalation_rules", [])), len(protocols.get("emergency_contacts", [])),
    )
    task = None
    if settings.ALERT_MAINTENANCE_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_alert_maintenance_loop(app, settings.ALERT_MAINTENANCE_INTERVAL_SECONDS))
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(
    title="DepthSafe",
    description=(
        "Crowd-sourced marine depth data with tide/environmental correction and safety alerting. "
        "Advisory only: always cross-check with official charts."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# CORS origins from settings (comma-separated env var)
cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Simple API key check. If DEPTHSAFE_API_KEY is unset, all requests pass."""

    async def dispatch(self, request: Request, call_next):
        if settings.DEPTHSAFE_API_KEY is not None:
            if request.url.path not in ("/health", "/docs", "/openapi.json", "/redoc"):
                api_key = request.headers.get("X-API-Key")
                if not hmac.compare_digest(api_key or "", settings.DEPTHSAFE_API_KEY):
                    return JSONResponse(
                        status_code=401,
                        content={"detail": "Invalid or missing API key"},
                    )
        return await call_next(request)


app.add_middleware(APIKeyMiddleware)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    enabled=settings.RATE_LIMIT_ENABLED,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(router, prefix="/api/v1")


# ── Structured error handlers ─────────────────────────────────────────────────

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "Validation error", "detail": str(exc)})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    return JSONResponse(status_code=409, content={"error": "Conflict", "detail": str(exc.orig) if exc.orig else str(exc)})


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s:\n%s", request.method, request.url.path, traceback.format_exc())
    return JSONResponse(status_code=500, content={"error": "Internal server error", "detail": "An unexpected error occurred."})


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
