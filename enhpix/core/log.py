import logging
import sys

from enhpix.core.conf import Settings


def setup_logging(settings: Settings) -> None:
    """Route all loggers through one stdout handler"""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(settings.LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(settings.LOG_STD_LEVEL)

    # Uvicorn installs its own handlers; let them propagate to ours instead
    for name in ('uvicorn', 'uvicorn.error', 'uvicorn.access'):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    # SQL echo only when DATABASE_ECHO is set
    logging.getLogger('sqlalchemy.engine').setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )
