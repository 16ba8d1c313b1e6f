"""Console logging for the pacgen command line.

The pipeline modules log through ``logging.getLogger(__name__)`` below the
``pacgen`` logger; only the command line installs a handler.
"""

import logging
import sys

PACKAGE_LOGGER = "pacgen"


def setup_logging(level: str = "INFO", quiet: bool = False) -> None:
    """Send log records to stdout, with pacgen's loggers at level.

    Other libraries only get to report warnings. With quiet, records are
    printed without the level and logger name.
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)

    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger(PACKAGE_LOGGER).setLevel(lvl)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(lvl)
    fmt = "%(message)s" if quiet else "[%(levelname)s] %(name)s: %(message)s"
    ch.setFormatter(logging.Formatter(fmt))
    root.addHandler(ch)
