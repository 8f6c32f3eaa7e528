"""
Panel loggers:
  - api_logger: one line per HTTP request, rotating file ``requests.log``
  - ledger_logger: audit trail of every coin movement, rotating file ``ledger.log``
  - app_logger: service events and errors on stdout
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from app.config import settings

FILE_FORMAT = "[%(asctime)s] %(message)s"
CONSOLE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"


class MillisecondFormatter(logging.Formatter):
    """Timestamps as ``YYYY-mm-dd HH:MM:SS.mmm``."""

    def formatTime(self, record, datefmt=None):
        base = super().formatTime(record, "%Y-%m-%d %H:%M:%S")
        return f"{base}.{int(record.msecs):03d}"


def _get_logger(name: str) -> tuple[logging.Logger, bool]:
    """Return the named logger and whether it still needs handlers."""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper()))
    logger.propagate = False
    return logger, not logger.handlers


def setup_file_logger(name: str, filename: str) -> logging.Logger:
    """
    Set up a logger writing to a size-rotated file under LOG_DIR.

    Args:
        name: Logger name
        filename: File name inside LOG_DIR

    Returns:
        logging.Logger: Configured logger instance
    """
    logger, needs_handler = _get_logger(name)
    if not needs_handler:
        return logger

    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        filename=logs_dir / filename,
        maxBytes=settings.LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=settings.LOG_MAX_FILES,
        encoding="utf-8",
    )
    handler.setFormatter(MillisecondFormatter(fmt=FILE_FORMAT))
    logger.addHandler(handler)
    return logger


def setup_app_logger() -> logging.Logger:
    """Logger for service events; stdout so the process manager captures it."""
    logger, needs_handler = _get_logger("panel.app")
    if needs_handler:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    return logger


def log_coin_movement(user_id: int, amount: int, tx_type: str, balance: int | None, description: str) -> None:
    """Write one audit line for a committed ledger entry."""
    balance_text = "?" if balance is None else str(balance)
    ledger_logger.info(
        f"user={user_id} amount={amount:+d} type={tx_type} balance={balance_text} - {description}"
    )


# Global logger instances
api_logger = setup_file_logger("panel.requests", "requests.log")
ledger_logger = setup_file_logger("panel.ledger", "ledger.log")
app_logger = setup_app_logger()
