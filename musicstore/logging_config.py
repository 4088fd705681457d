"""Root logger setup shared by the API process and the reconciler."""

import logging
import sys

from musicstore.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once: existing handlers are replaced, so a reload
    under uvicorn does not duplicate every line.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
