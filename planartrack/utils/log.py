"""
Logging setup for command line use.

Library modules only create `logging.getLogger(__name__)` loggers; the
application decides where records go by calling setup_logging once.
"""

import logging
import sys

from planartrack.tracking.tracker import StepContextFilter

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"

STEP_LOG_FORMAT = "[%(levelname)s] %(name)s [%(session_id)s %(marker)s@%(frame)s]: %(message)s"


def setup_logging(verbose: bool = False, quiet: bool = False, with_steps: bool = False) -> logging.Handler:
    """
    Attach a console handler to the package logger.

    Args:
        verbose: Log DEBUG records
        quiet: Only log warnings and errors
        with_steps: Prefix records with the session, marker and frame of
            the tracking step that emitted them

    Returns:
        The installed handler
    """
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    if with_steps:
        handler.addFilter(StepContextFilter())
        handler.setFormatter(logging.Formatter(STEP_LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    package_logger = logging.getLogger("planartrack")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    return handler
