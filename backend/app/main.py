import logging
import os

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.app.api.routes.alerts_ack import router as alerts_ack_router
from backend.app.api.routes.billing import router as billing_router
from backend.app.api.routes.ops_alerts import router as ops_alerts_router
from backend.app.api.routes.ops_audits import router as ops_audits_router
from backend.app.api.routes.ops_cases import router as ops_cases_router
from backend.app.api.routes.ops_training import router as ops_training_router
from backend.app.api.routes.system_status import router as system_status_router
from backend.app.errors import OpsError, error_payload
from backend.app.request_id import REQUEST_ID_HEADER, ensure_request_id, get_request_id, set_request_id


logger = logging.getLogger(__name__)

LOCAL_DEV_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = list(LOCAL_DEV_ORIGINS)
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    if not any(origin in origins for origin in LOCAL_DEV_ORIGINS):
        logger.warning("CORS allowlist does not include local dev origins: %s", origins)
    return origins


def _request_id(request: Request):
    return getattr(request.state, "request_id", None) or get_request_id()


app = FastAPI(title="Ops Signal API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER, "Retry-After"],
)

app.include_router(system_status_router)
app.include_router(ops_alerts_router)
app.include_router(billing_router)
app.include_router(ops_cases_router)
app.include_router(ops_audits_router)
app.include_router(ops_training_router)
app.include_router(alerts_ack_router)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = ensure_request_id(request.headers.get(REQUEST_ID_HEADER))
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers[REQUEST_ID_HEADER] = rid
    return response


@app.exception_handler(OpsError)
async def ops_error_handler(request: Request, exc: OpsError):
    if exc.status_code >= 500:
        logger.error("ops error code=%s message=%s", exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(
            error_payload(code=exc.code, message=exc.message, request_id=_request_id(request), meta=exc.meta)
        ),
        headers=exc.headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        code = str(exc.detail.get("code", "HTTP_ERROR"))
        message = str(exc.detail.get("message", "HTTP error"))
    else:
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        message = str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(code=code, message=message, request_id=_request_id(request)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(
            error_payload(
                code="VALIDATION_ERROR",
                message="Invalid request",
                request_id=_request_id(request),
                meta={"details": exc.errors()},
            )
        ),
    )
