"""
trustlink.log — Structured JSON logging with a per-flow correlation id.

Every login, link or merge call sets ``flow_id_var`` so that all lines it
emits (verifier, resolver, merge steps, scoring) can be grouped.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import IO, Optional

from pythonjsonlogger.json import JsonFormatter

flow_id_var: ContextVar[str] = ContextVar("flow_id", default="")

LOGGER_NAME = "trustlink"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(flow_id)s"


class FlowIdFilter(logging.Filter):
    def filter(self, record):
        # An explicit extra={"flow_id": ...} wins over the context
        if not getattr(record, "flow_id", ""):
            record.flow_id = flow_id_var.get("")
        return True


class _FlowJsonHandler(logging.StreamHandler):
    """The one JSON handler trustlink owns on its logger."""


def _json_handler(stream: Optional[IO[str]]) -> _FlowJsonHandler:
    handler = _FlowJsonHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter(
        fmt=LOG_FORMAT,
        rename_fields={"asctime": "timestamp", "levelname": "level"},
        static_fields={"service": LOGGER_NAME},
    ))
    handler.addFilter(FlowIdFilter())
    return handler


def setup_structured_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> logging.Logger:
    """Attach the JSON handler to the ``trustlink`` logger and set its level.

    Calling it again only changes the level, or re-targets the existing
    handler when ``stream`` is given; it never stacks handlers.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = next((h for h in logger.handlers if isinstance(h, _FlowJsonHandler)), None)
    if handler is None:
        logger.addHandler(_json_handler(stream))
    elif stream is not None:
        handler.setStream(stream)
    return logger


def new_flow_id(flow_id: Optional[str] = None) -> str:
    """Set (or generate) the flow id for the current context and return it."""
    fid = flow_id or str(uuid.uuid4())[:8]
    flow_id_var.set(fid)
    return fid


__all__ = ["flow_id_var", "FlowIdFilter", "setup_structured_logging", "new_flow_id"]
