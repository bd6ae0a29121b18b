"""
logging_config.py — Loguru setup for the dealflow API and its sweeps

Services keep plain getLogger("dealflow.<area>") loggers; a bridge handler
hands their records to Loguru, so routers, services and scheduler jobs all
end up on the same sinks with the same request id.

Business Rules:
- One backend: stdlib records are re-emitted through Loguru, never printed
- LOG_FORMAT=json gives one JSON object per line on stdout
- Any other LOG_FORMAT gives the coloured console line with the request id
- request_id is "-" until the middleware binds one
- LOG_FILE adds a JSON file sink: 50MB rotation, 14-day retention, gzip

Called by: dealflow/main.py (on startup)
Depends on: environment (LOG_LEVEL, LOG_FORMAT, LOG_FILE)
"""

import logging
import os
import sys

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {extra[request_id]} | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | {message}"
)

# Only their warnings and errors reach the sinks.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


def setup_logging() -> None:
    """Replace Loguru's default sink with ours and bridge stdlib logging.

    Safe to call again (tests do); each call starts from no sinks.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    as_json = os.getenv("LOG_FORMAT", "").lower() == "json"
    log_file = os.getenv("LOG_FILE", "")

    logger.remove()
    logger.configure(extra={"request_id": "-"})
    if as_json:
        logger.add(sys.stdout, level=level, format="{message}", serialize=True)
    else:
        logger.add(sys.stdout, level=level, format=CONSOLE_FORMAT, colorize=True)
    if log_file:
        logger.add(log_file, level=level, serialize=True,
                   rotation="50 MB", retention="14 days", compression="gz")

    logging.basicConfig(handlers=[_LoguruBridge()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info("Logging configured", level=level, json=as_json, file=log_file or None)


def _caller_depth() -> int:
    """Depth from emit() to the real call site, past logging's own frames."""
    frame, depth = logging.currentframe().f_back, 0
    while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
        frame = frame.f_back
        depth += 1
    return depth


class _LoguruBridge(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # custom stdlib level with no Loguru name
        logger.opt(depth=_caller_depth(), exception=record.exc_info).log(level, record.getMessage())
