"""
FastAPI application for the Dinner Circles backend.
"""
import contextvars
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .db import close as close_mongo
from .db import connect as connect_to_mongo
from .errors import MatchingError
from .logging_config import configure_logging
from .routers import matching
from .services.matching import recover_stale_triggers
from .settings import get_settings

# Context variables for request-scoped logging
_ctx_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
_ctx_client_ip: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("client_ip", default=None)

# Install a LogRecord factory to automatically attach request context to LogRecords.
_original_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    record = _original_factory(*args, **kwargs)
    rid = _ctx_request_id.get()
    cip = _ctx_client_ip.get()
    if rid is not None:
        record.request_id = rid
    if cip is not None:
        record.client_ip = cip
    return record


logging.setLogRecordFactory(_record_factory)

configure_logging()
settings = get_settings()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    # startup
    await connect_to_mongo()
    if settings.recover_stale_on_startup:
        # best-effort: a failed recovery must not keep the API down
        try:
            reopened = await recover_stale_triggers()
        except Exception:
            logging.getLogger('matching').exception('matching.recover.startup_failed')
        else:
            if reopened:
                logging.getLogger('matching').warning('matching.recover.startup reopened=%s', ','.join(reopened))
    try:
        yield
    finally:
        # shutdown
        await close_mongo()


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    version="1.0.0",
    root_path=os.getenv('BACKEND_ROOT_PATH', ''),
    docs_url=None if os.getenv('DISABLE_DOCS', '0') == '1' else '/docs',
    redoc_url=None if os.getenv('DISABLE_DOCS', '0') == '1' else '/redoc',
    openapi_url=None if os.getenv('DISABLE_DOCS', '0') == '1' else '/openapi.json',
    lifespan=_lifespan,
    redirect_slashes=False,
)


######## Structured Logging & Request ID Middleware ########
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            client_ip = xff.split(',')[0].strip()
        else:
            # starlette request.client may be None in some test contexts
            client = getattr(request, 'client', None)
            client_ip = client.host if client else None
        request.state.request_id = request_id
        request.state.client_ip = client_ip
        _ctx_request_id.set(request_id)
        _ctx_client_ip.set(client_ip)
        start = time.time()
        logger = logging.getLogger('request')
        logger.info('request.start method=%s path=%s', request.method, request.url.path)
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        response.headers['X-Request-ID'] = request_id
        logger.info('request.end status=%s dur_ms=%s', response.status_code, duration_ms)
        return response


app.add_middleware(RequestIDMiddleware)


######## Global Exception Handlers ########

@app.exception_handler(MatchingError)
async def matching_exception_handler(request: Request, exc: MatchingError):
    if exc.status_code >= 500:
        logging.getLogger('matching').error('matching.error code=%s detail=%s', exc.code, exc.detail)
    body = exc.to_dict()
    body['request_id'] = getattr(request.state, 'request_id', None)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={
        'error': 'validation_error',
        'detail': [{k: v for k, v in err.items() if k != 'ctx'} for err in exc.errors()],
        'request_id': getattr(request.state, 'request_id', None),
    })


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger('app').exception('unhandled exception rid=%s', getattr(request.state, 'request_id', None))
    return JSONResponse(status_code=500, content={
        'error': 'internal_server_error',
        'detail': 'An unexpected error occurred',
        'request_id': getattr(request.state, 'request_id', None),
    })


if settings.allowed_origins == '*':
    origins = ["*"]
else:
    origins = [o.strip() for o in settings.allowed_origins.split(',') if o.strip()]

# Browsers reject wildcard origins together with credentials.
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=settings.cors_allow_credentials and origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(matching.router, prefix="/matching", tags=["matching"])


# Fast healthcheck (no DB access).
@app.get('/health', tags=["health"], include_in_schema=False)
async def health():
    return {"status": "ok"}
