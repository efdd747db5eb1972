import logging, os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = os.getenv("STRATA_LOG_LEVEL", "INFO").upper()

def setup_logging():
    logger = logging.getLogger("strata_cmms")
    logger.setLevel(getattr(logging, _DEFAULT_LEVEL, logging.INFO))

    # Avoid duplicate console handlers on re-import
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        ch.setLevel(logger.level)
        logger.addHandler(ch)

    return logger

def get_logger(name=None):
    base = logging.getLogger("strata_cmms")
    return base.getChild(name) if name else base

logger = setup_logging()
