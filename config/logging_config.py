import logging
import sys
from loguru import logger


class InterceptHandler(logging.Handler):
    """Routes standard-library log records (uvicorn, apscheduler, aiogram) into loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(log_file: str | None = "logs/dispatch.log", level: str = "INFO"):
    """
    Configures loguru for console output and a rotating file sink.
    """
    def patcher(record):
        # Records from the standard logging module carry no actor
        record["extra"].setdefault("actor_id", "system")

    log_format = "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {name}:{function}:{line} | actor={extra[actor_id]} | {message}"

    handlers = [
        {
            "sink": sys.stderr,
            "level": level,
            "format": log_format,
        },
    ]
    if log_file:
        handlers.append({
            "sink": log_file,
            "level": level,
            "rotation": "10 MB",
            "compression": "zip",
            "enqueue": True,
            "backtrace": True,
            "diagnose": True,
            "format": log_format,
        })

    logger.configure(handlers=handlers, patcher=patcher, extra={})

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Noisy third-party loggers
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

    return logger
