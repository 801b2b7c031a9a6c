import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.db import Base, engine
from .core.responses import ErrorCodes, error_response
from .errors import BookingError, InvalidWindow
from .routes.owner import router as owner_router
from .routes.public_booking import router as public_booking_router


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Flash Agenda Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(public_booking_router)
app.include_router(owner_router)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if isinstance(exc, InvalidWindow):
        logger.error("Invalid availability window reached slot generation: %s", exc.details)
    return JSONResponse(
        status_code=exc.http_status,
        content=error_response(exc.code, exc.message, exc.details),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response(
            ErrorCodes.VALIDATION_ERROR,
            "Please check the highlighted fields.",
            {"errors": errors},
        ),
    )


@app.exception_handler(HTTPException)
async def auth_error_handler(request: Request, exc: HTTPException):
    if exc.status_code != status.HTTP_401_UNAUTHORIZED:
        return await http_exception_handler(request, exc)
    code = (
        ErrorCodes.AUTHENTICATION_REQUIRED
        if exc.detail == "Authentication required"
        else ErrorCodes.INVALID_TOKEN
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(code, str(exc.detail)),
        headers=exc.headers,
    )


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Flash Agenda backend started")


@app.get("/health")
async def health():
    return {"status": "ok"}
