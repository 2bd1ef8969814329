import logging
import os

DEBUG = os.environ.get("DEBUG", "false").lower() in ("1", "true", "yes")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("mailprobe")


def configure_logging(debug: bool = DEBUG) -> logging.Logger:
    """Attach a single stream handler to the ``mailprobe`` logger.

    Safe to call more than once; the handler list is replaced, not appended to.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False
    return logger


configure_logging()
