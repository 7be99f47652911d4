"""
kgsat Structured Logging
=========================
One "kgsat" logger for the library. Silent until the CLI (or an embedding
application) calls setup(): stderr at KGSAT_LOG_LEVEL, and a rotating
KGSAT_HOME/kgsat.log (5MB x 3) at DEBUG that keeps per-step timings.
"""

import logging
import logging.handlers
import os
import time

from kgsat.config import KGSAT_HOME

log = logging.getLogger("kgsat")
log.addHandler(logging.NullHandler())  # library default: caller decides

_configured = False


def setup():
    """Configure logging. Safe to call multiple times."""
    global _configured
    if _configured:
        return
    _configured = True

    level_name = os.environ.get("KGSAT_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    log.setLevel(logging.DEBUG)

    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(fmt)
    log.addHandler(stderr_handler)

    try:
        KGSAT_HOME.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(KGSAT_HOME / "kgsat.log"), maxBytes=5 * 1024 * 1024, backupCount=3,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        log.addHandler(file_handler)
    except OSError as e:
        log.warning("File logging disabled: %s", e)


class _Timer:
    def __init__(self, operation: str):
        self.operation = operation
        self.start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed_ms = (time.perf_counter() - self.start) * 1000
        if exc_type is None:
            log.debug("%s took %.1fms", self.operation, self.elapsed_ms)
        else:
            log.debug("%s failed after %.1fms: %s", self.operation, self.elapsed_ms, exc)
        return False


def timed(operation: str) -> _Timer:
    """
    Time a maintenance step (index build, saturation iteration). The
    duration goes to the file log at DEBUG and stays readable afterwards as
    .elapsed_ms. A step that raises is logged as failed and the error
    propagates.
    """
    return _Timer(operation)
