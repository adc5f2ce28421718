"""Logging setup: one root handler, level from settings."""
import logging

from ridepool.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)
    # SQL echo is handled by the engine when DEBUG is on
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def safe_error(exc: BaseException) -> str:
    """Describe an exception for the logs. Outside DEBUG only the class name is kept."""
    if settings.DEBUG:
        return repr(exc)
    return type(exc).__name__
