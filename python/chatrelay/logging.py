"""Structured logging configuration using structlog.

Every log entry is JSON and carries whichever of these context fields are set:
- request_id: Correlation ID for request tracing
- user_id: Authenticated user (when available)
- path / method: Raw request path (never the query string) and HTTP method
- chat_id: Chat being streamed or reconciled
- task_name / task_id: Background job context (see chatrelay.background)
- timestamp: ISO8601 formatted timestamp

Usage:
    from chatrelay.logging import get_logger, configure_logging

    configure_logging()

    logger = get_logger(__name__)
    logger.info("chat_created", chat_id=chat.id)

Background jobs copy the request_id of the request that spawned them:
    configure_task_logging(request_id=request_id, task_name="persist_attachments", task_id=job_id)
"""

import logging
import sys
from contextvars import ContextVar

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
path_var: ContextVar[str | None] = ContextVar("path", default=None)
method_var: ContextVar[str | None] = ContextVar("method", default=None)
chat_id_var: ContextVar[str | None] = ContextVar("chat_id", default=None)
task_name_var: ContextVar[str | None] = ContextVar("task_name", default=None)
task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)

_CONTEXT_VARS: tuple[tuple[str, ContextVar[str | None]], ...] = (
    ("request_id", request_id_var),
    ("user_id", user_id_var),
    ("path", path_var),
    ("method", method_var),
    ("chat_id", chat_id_var),
    ("task_name", task_name_var),
    ("task_id", task_id_var),
)


def add_request_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Inject all non-None context variables into the event dict.

    Explicit keyword arguments on the log call win over context values.
    """
    for key, var in _CONTEXT_VARS:
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def configure_logging(json_format: bool = True) -> None:
    """Configure structlog for the application.

    Args:
        json_format: If True, output JSON logs. If False, output console-friendly logs.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdlib records (uvicorn, sqlalchemy) go through the same pipeline
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for the given name."""
    return structlog.get_logger(name)


_VARS = dict(_CONTEXT_VARS)
# Fields owned by a request and by a background job respectively
_REQUEST_SCOPE = ("request_id", "user_id", "path", "method", "chat_id")
_TASK_SCOPE = ("request_id", "user_id", "task_name", "task_id", "chat_id")


def _bind(**fields: str | None) -> None:
    for key, value in fields.items():
        _VARS[key].set(value)


def set_request_context(
    request_id: str | None,
    user_id: str | None = None,
    path: str | None = None,
    method: str | None = None,
) -> None:
    """Bind request fields for the current async context; None leaves a field as is."""
    request_id_var.set(request_id)
    optional = {"user_id": user_id, "path": path, "method": method}
    _bind(**{key: value for key, value in optional.items() if value is not None})


def set_user_id(user_id: str | None) -> None:
    user_id_var.set(user_id)


def set_chat_id(chat_id: str | None) -> None:
    """Tag subsequent entries with the chat being processed."""
    chat_id_var.set(chat_id)


def clear_request_context() -> None:
    _bind(**dict.fromkeys(_REQUEST_SCOPE))


def get_request_id() -> str | None:
    return request_id_var.get()


def configure_task_logging(
    request_id: str | None = None,
    task_name: str | None = None,
    task_id: str | None = None,
    user_id: str | None = None,
) -> None:
    """Bind the context of one background job run.

    The job inherits the request_id and user_id of the request that
    submitted it; chat_id is reset so a pooled thread never carries over
    the chat of its previous job.
    """
    _bind(
        request_id=request_id,
        task_name=task_name,
        task_id=task_id,
        user_id=user_id,
        chat_id=None,
    )


def clear_task_context() -> None:
    _bind(**dict.fromkeys(_TASK_SCOPE))
