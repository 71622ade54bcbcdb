import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config, errors
from .api.admin import router as admin_router
from .api.batch import router as batch_router
from .api.cron import router as cron_router
from .api.extract import router as extract_router
from .api.health import router as health_router
from .api.jobs import router as jobs_router
from .api.keys import router as keys_router
from .api.prometheus import router as prometheus_router
from .api.schedules import router as schedules_router
from .api.usage import router as usage_router
from .api.webhook import router as webhook_router
from .db import init_db
from .errors import ApiError
from .logging_config import setup_logging
from .middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware, TracingMiddleware
from .services.dlq import get_dlq
from .services.prometheus_metrics import prometheus_metrics

# Configure logging at import time
setup_logging()

logger = logging.getLogger("app")

ROUTERS = (
    health_router,
    extract_router,
    batch_router,
    jobs_router,
    schedules_router,
    webhook_router,
    usage_router,
    keys_router,
    cron_router,
    admin_router,
    prometheus_router,
)

_CODE_BY_STATUS = {
    401: errors.UNAUTHORIZED,
    404: errors.NOT_FOUND,
    409: errors.NOT_READY,
    413: errors.PAYLOAD_TOO_LARGE,
    429: errors.RATE_LIMITED,
}


@asynccontextmanager
async def lifespan(application: FastAPI):
    logger.info("Robot Extract API starting up", extra={"component": "api", "version": config.API_VERSION})
    init_db()
    prometheus_metrics.set_webhook_dlq_depth(get_dlq().get_dlq_stats()["total_files"])
    logger.info("Robot Extract API ready", extra={"component": "api"})
    yield
    logger.info("Robot Extract API shutting down", extra={"component": "api"})


app = FastAPI(title="Robot Extract API", version=config.API_VERSION, lifespan=lifespan)

app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials="*" not in config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Cache-Hit", "X-RateLimit-Limit", "X-RateLimit-Remaining",
                    "X-RateLimit-Reset", "X-Idempotent-Replay"],
)
# Added last so it wraps everything and every response carries X-Request-ID
app.add_middleware(TracingMiddleware)


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return errors.build_error_response(exc.code, exc.message, _request_id(request), exc.status_code, exc.headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        code = errors.SERVER_ERROR
    else:
        code = _CODE_BY_STATUS.get(exc.status_code, errors.BAD_REQUEST)
    return errors.build_error_response(code, str(exc.detail), _request_id(request), exc.status_code,
                                       getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return errors.build_error_response(errors.BAD_REQUEST, f"{loc}: {message}" if loc else message,
                                       _request_id(request))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", extra={"path": request.url.path})
    return errors.build_error_response(errors.SERVER_ERROR, errors.message_for(errors.SERVER_ERROR),
                                       _request_id(request))


# Every route is served both unprefixed and under API_PREFIX
for router in ROUTERS:
    app.include_router(router)
    app.include_router(router, prefix=config.API_PREFIX, include_in_schema=False)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "robot_api.main:app",
        host="0.0.0.0",
        port=config.APP_PORT,
        reload=False,
        access_log=True,
    )
