"""Log formatting for chatdesk.

    INFO: 2026-02-17 13:01:23 : services.tickets.claim.388 : Ticket tkt_1 claimed by agt_2

Package loggers drop the ``chatdesk.`` prefix; third-party loggers keep
their own names.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO, Union

PACKAGE = "chatdesk"

# Chatty at INFO; only their warnings are worth a line
QUIET_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "aiosqlite",
    "sse_starlette.sse",
)


def location_of(record: logging.LogRecord) -> str:
    """``module.function.lineno`` for a record, without repeating the file name."""
    module = record.name
    if module == PACKAGE:
        module = "main"
    elif module.startswith(PACKAGE + "."):
        module = module[len(PACKAGE) + 1:]

    filename = record.filename[:-3] if record.filename.endswith(".py") else record.filename
    if module == filename or module.endswith(f".{filename}"):
        return f"{module}.{record.funcName}.{record.lineno}"
    return f"{module}.{filename}.{record.funcName}.{record.lineno}"


class ChatdeskFormatter(logging.Formatter):
    """LEVEL: timestamp : location : message, with the traceback appended."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"{record.levelname}: {timestamp} : {location_of(record)} : {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: Union[int, str] = logging.INFO, stream: Optional[TextIO] = None) -> None:
    """Install the formatter on the root logger. Called from the lifespan.

    ``level`` accepts a name such as "DEBUG" (EngineSettings.log_level);
    unknown names fall back to INFO.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(ChatdeskFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
