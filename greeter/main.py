from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from greeter.api.router import api_router
from greeter.bootstrap import open_services
from greeter.config import get_config, get_settings
from greeter.core.errors import GreeterError
from greeter.core.logging import get_logger, setup_logging
from greeter.core.rate_limit import limiter, rate_limit_exceeded_handler
from greeter.core.scheduler import start_scheduler, stop_scheduler

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    # Startup
    setup_logging()
    config = get_config()
    async with open_services(config) as services:
        app.state.services = services
        await start_scheduler(services, config)
        yield
        # Shutdown
        await stop_scheduler()


app = FastAPI(
    title="Greeter",
    description="Birthday greetings delivered at 9:00 local time, exactly once",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.base_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _jsonable_errors(errors: list) -> list[dict]:
    """Strip non-serializable context (exception objects) from pydantic errors."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in errors
    ]


@app.exception_handler(GreeterError)
async def greeter_error_handler(request: Request, exc: GreeterError) -> JSONResponse:
    """Map domain errors to ``{code, message}`` bodies."""
    if exc.http_status >= 500:
        logger.bind(path=request.url.path, error=exc.message).error("request_failed")
    return JSONResponse(
        status_code=exc.http_status,
        content={"code": exc.code, "message": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies and parameters are a 400, like domain validation errors."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in errors
    )
    return JSONResponse(
        status_code=400,
        content={
            "code": "validation_error",
            "message": message or "Invalid request",
            "details": _jsonable_errors(errors),
        },
    )


# Include API routes
app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint for load balancers."""
    return {"status": "healthy"}
