from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"


def setup_logging(level: str, logfile: str | None = None):
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    # Clear existing handlers to avoid duplicates across restarts/reloads.
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if logfile:
        Path(logfile).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(fmt)
        root.addHandler(handler)

    # Route uvicorn logs into the same root handlers/file.
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.setLevel(log_level)
        logger.propagate = True

    # urllib3 stays at INFO or above.
    logging.getLogger("urllib3").setLevel(max(log_level, logging.INFO))

    root.info("logging_initialized level=%s file=%s", level.upper(), logfile or "-")
