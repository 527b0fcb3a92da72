import logging
import sys
from typing import Any

from loguru import logger

from greeter.config import get_settings

# Health checks and pollers hit these every few seconds; their access lines only show at DEBUG
_QUIET_PATHS = ("/health", "/api/queues")

# Libraries whose records are routed into loguru, with the level kept outside debug mode
_INTERCEPTED = {
    "uvicorn": logging.INFO,
    "uvicorn.error": logging.INFO,
    "uvicorn.access": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "apscheduler": logging.WARNING,
    "backoff": logging.INFO,
}


class InterceptHandler(logging.Handler):
    """Intercept stdlib logging and redirect to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip logging's own frames so loguru reports the library's call site
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _quiet_paths_filter(record: dict[str, Any]) -> bool:
    message = record.get("message", "")
    if any(path in message for path in _QUIET_PATHS):
        return bool(record["level"].no <= 10)  # DEBUG level
    return True


def _format_extra(record: dict[str, Any]) -> str:
    """Append bound fields (user_id, key, ...) after the event name."""
    extra = {k: v for k, v in record["extra"].items() if k != "name"}
    record["extra"]["fields"] = " ".join(f"{k}={v}" for k, v in extra.items())
    return (
        "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | "
        "{message} {extra[fields]}\n{exception}"
    )


def setup_logging() -> None:
    """Configure loguru for the API process and the CLI."""
    settings = get_settings()

    logger.remove()

    if settings.debug:
        logger.add(
            sys.stderr,
            level="DEBUG",
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level> {extra}"
            ),
            backtrace=True,
            diagnose=True,
        )
    else:
        # Plain lines with the bound fields, for docker logs
        logger.add(
            sys.stderr,
            level="INFO",
            format=_format_extra,
            filter=_quiet_paths_filter,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, level in _INTERCEPTED.items():
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [InterceptHandler()]
        stdlib_logger.setLevel(logging.DEBUG if settings.debug else level)


def get_logger(name: str) -> Any:
    """Get a logger bound to a module name."""
    return logger.bind(name=name)
