"""
Logging setup, called once from the application lifespan (or a worker boot).
"""
import logging
import sys

from insight_engine.core.config import settings

# Libraries that drown out job logs at INFO level
NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "openai._base_client",
    "uvicorn.access",
    "aiosqlite",
    "asyncio",
    "celery.app.trace",
)


def _parse_level(value: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else default


def setup_logging(level: str | None = None, noisy_level: str | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(_parse_level(level or settings.LOG_LEVEL))

    # uvicorn installs its own handlers; tests and workers may not.
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root.addHandler(handler)

    quiet = _parse_level(noisy_level or settings.NOISY_LOG_LEVEL, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)
