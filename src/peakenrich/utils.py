"""Logging and filesystem helpers shared by the CLI and the writers."""

import logging
from pathlib import Path
from typing import Optional, Union

# Libraries that log compilation or fitting chatter at DEBUG
NOISY_LOGGERS = ('numba', 'statsmodels')

_HANDLER_TAG = '_peakenrich_handler'


def _tagged(handler: logging.Handler, fmt: str) -> logging.Handler:
    handler.setFormatter(logging.Formatter(fmt))
    setattr(handler, _HANDLER_TAG, True)
    return handler


def setup_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level=logging.INFO,
    log_name: str = 'pipeline.log'
) -> logging.Logger:
    """Route pipeline logging to the console and, optionally, a log file.

    Handlers installed by an earlier call are replaced, so running the
    pipeline repeatedly in one process does not duplicate every message.

    Args:
        log_dir: Directory for the log file; None logs to the console only
        level: Logging level for the root logger
        log_name: Log file name within ``log_dir``

    Returns:
        The package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root_logger.removeHandler(handler)
            handler.close()

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    root_logger.addHandler(_tagged(logging.StreamHandler(), '%(asctime)s - %(levelname)s - %(message)s'))

    if log_dir:
        log_file = ensure_dir(Path(log_dir)) / log_name
        root_logger.addHandler(_tagged(
            logging.FileHandler(log_file, mode='w'),
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        ))
        root_logger.info(f"Logging to {log_file}")

    return logging.getLogger('peakenrich')


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create ``path`` and its parents if missing and return it as a Path."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
