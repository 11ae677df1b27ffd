# consent_portal/app_logger.py
import logging

from consent_portal.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = settings.LOG_LEVEL.upper()


def setup_logging():
    # Configure root once
    logging.basicConfig(level=getattr(logging, _DEFAULT_LEVEL, logging.INFO), format=LOG_FORMAT)

    logger = logging.getLogger("consent_portal")
    logger.setLevel(getattr(logging, _DEFAULT_LEVEL, logging.INFO))
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger("consent_portal")
    return base.getChild(name) if name else base


logger = setup_logging()
