"""Console logging setup for scripts and notebooks using pytrackdoctor.

Library modules only call ``logging.getLogger(__name__)``; attaching
handlers is left to the application. ``get_logger`` is the one-liner for
applications that just want readable console output.
"""

import logging


def get_logger(name: str = "pytrackdoctor", level: int = logging.INFO) -> logging.Logger:
    """Return a logger with a console handler and a preset format."""
    logger = logging.getLogger(name)
    if not any(getattr(h, "_pytrackdoctor_console", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            fmt='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        handler._pytrackdoctor_console = True
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
