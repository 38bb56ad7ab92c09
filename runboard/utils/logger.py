import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from runboard.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Driver loggers that flood the reconciliation log at DEBUG
NOISY_LOGGERS = ('sqlalchemy.engine', 'aiosqlite')


def _log_file(log_dir: Path) -> Path:
    return log_dir / f'runboard_{datetime.now().strftime("%Y%m%d")}.log'


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Return a runboard logger writing to stdout and the daily log file.

    Handlers are attached once per logger name; later calls only return the
    existing logger. ``level`` overrides the DEBUG-derived console level.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    if level is None:
        level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_dir = Path(Config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    # File always captures DEBUG so recompute traces survive a quiet console
    file_handler = logging.FileHandler(_log_file(log_dir), encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
