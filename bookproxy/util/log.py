import logging
import logging.handlers
import pathlib
import uuid
from typing import Any

import structlog

from bookproxy.internal.env_settings import ApplicationSettings

# per-statement and per-request chatter from the libraries underneath us
QUIET_LOGGERS = ("sqlalchemy.engine", "aiohttp.access", "uvicorn.access")

LOG_FILE_MAX_BYTES = 100 * 1024 * 1024
LOG_FILE_BACKUPS = 5


def _renderer(log_format: str) -> Any:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(settings: ApplicationSettings) -> None:
    """
    Configure structlog and the stdlib root logger from the ``app`` settings.

    bookproxy logs through structlog. aiohttp, SQLAlchemy and uvicorn log through
    the stdlib; their records are rendered by the same renderer so that a JSON
    deployment gets one JSON line per record whatever its origin.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    renderer = _renderer(settings.log_format)

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.stdlib.add_logger_name, *shared],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_path = pathlib.Path(settings.config_dir) / "logs"
        log_path.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=log_path / settings.log_file,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
            )
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def bind_request_context(**context: Any) -> str:
    """Attach a request id (and any extra context) to every log line of the current task."""
    request_id = uuid.uuid4().hex[:12]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)
    return request_id


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger() -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.stdlib.get_logger()


logger = get_logger()
