import logging, sys, os
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

def setup_logging(level: Optional[int] = None) -> logging.Logger:
    """Configure the `tradeledger` logger once; later calls return it unchanged."""
    logger = logging.getLogger("tradeledger")
    if logger.handlers:
        return logger
    if level is None:
        level = logging.INFO if os.getenv("ENV", "dev") != "dev" else logging.DEBUG
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    # SQL echo is noise at DEBUG; keep the engine at WARNING unless asked.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    return logger
