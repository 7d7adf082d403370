import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adreel.api import render
from adreel.config import get_settings
from adreel.constants.error_codes import get_error_spec
from adreel.exceptions import AdreelError
from adreel.schemas.envelope import ErrorInfo

settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AdreelError)
async def adreel_exception_handler(request: Request, exc: AdreelError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"Render request failed: {exc}")
    error = exc.to_error_info()
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": jsonable_encoder(error.model_dump(exclude_none=True))},
    )


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return JSONResponse(status_code=500, content={"error": error.model_dump(exclude_none=True)})


# Routers
app.include_router(render.router, prefix="/api", tags=["render"])
