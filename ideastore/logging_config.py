"""
Logging configuration for ideastore.

Suppress verbose library output by default for better UX.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Libraries that log request-level detail at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "chromadb", "asyncpg", "sentence_transformers")


def configure_quiet_mode(quiet: bool = True) -> None:
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    level = logging.ERROR if quiet else logging.NOTSET
    if quiet:
        warnings.filterwarnings("ignore")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def enable_debug_mode() -> None:
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("ideastore", *NOISY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(config_dir) -> logging.Handler:
    """Configure a persistent operations log in the config directory.

    Writes to {config_dir}/ideastore-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed later.
    """
    log_path = Path(config_dir) / "ideastore-ops.log"
    store_logger = logging.getLogger("ideastore")
    for existing in store_logger.handlers:
        if isinstance(existing, RotatingFileHandler) and existing.baseFilename == str(log_path.resolve()):
            return existing

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    store_logger.addHandler(handler)
    # Let INFO through even in quiet mode
    if store_logger.level == logging.NOTSET or store_logger.level > logging.INFO:
        store_logger.setLevel(logging.INFO)

    return handler
