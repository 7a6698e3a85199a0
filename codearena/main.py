import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from codearena import auth
from codearena.config import get_settings
from codearena.db import engine, init_db
from codearena.errors import ApiError
from codearena.routers import health, problems, testcases, users as users_router
from codearena.schemas import envelope
from codearena.services import users

logger = logging.getLogger("codearena")

_HTTP_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}

app = FastAPI(title="CodeArena API")

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(users_router.router)
app.include_router(problems.router)
app.include_router(testcases.router)


def _error_response(request: Request, status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = envelope(request, details, message, success=False, error=code)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@app.on_event("startup")
async def on_startup():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    with Session(engine) as session:
        users.init_roles(session)
        users.init_admins(session, settings.admin_uids)
        if settings.seed_dev_users:
            users.init_dev_users(session)
            logger.info("seeded development users")


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [{"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")} for err in exc.errors()]
    return _error_response(request, 400, "VALIDATION_ERROR", "Request validation failed", details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR")
    return _error_response(request, exc.status_code, code, str(exc.detail))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return _error_response(request, 500, "INTERNAL_ERROR", "Internal server error")
