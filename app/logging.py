"""
Logging configuration.
Aligns uvicorn and application logger levels. Unexpected verification errors are logged with
logger.exception (app/services/verification.py); gateway timeouts only warn.
"""
import logging
import sys


def setup_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
) -> None:
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=format_string,
        stream=sys.stdout,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        log = logging.getLogger(name)
        if level is not None:
            log.setLevel(level)
    logging.getLogger("coursepay").setLevel(level)
    logging.getLogger("app").setLevel(level)
