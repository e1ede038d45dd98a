"""Logging configuration for invoice ledger processing."""
import logging
import logging.config
from pathlib import Path
from typing import Dict, Any

# Third-party loggers that drown out the [STAGE] lines at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "google_genai", "aiosqlite")

LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def get_logging_config(
    logs_folder: Path,
    log_filename: str = "invoice_ledger.log",
    level: str = "INFO"
) -> Dict[str, Any]:
    """
    Build the dictConfig for one CLI run.

    Console shows `level` and up; the rotating ledger log keeps everything
    from the package; failures of any stage are also copied to
    `<log name>_errors.log` so a reconciliation sweep can be audited without
    scrolling through per-document INFO lines.
    """
    logs_folder.mkdir(parents=True, exist_ok=True)
    log_file_path = logs_folder / log_filename
    errors_file_path = logs_folder / f"{Path(log_filename).stem}_errors.log"

    loggers: Dict[str, Any] = {
        "invoice_ledger": {
            "level": "DEBUG",
            "handlers": ["console", "ledger_file", "errors_file"],
            "propagate": False
        },
    }
    for name in NOISY_LOGGERS:
        loggers[name] = {"level": "WARNING"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "format": "%(asctime)s - %(levelname)s - %(message)s",
                "datefmt": "%H:%M:%S"
            },
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "console",
                "stream": "ext://sys.stderr"
            },
            "ledger_file": {
                "class": "logging.handlers.RotatingFileHandler",
                "level": "DEBUG",
                "formatter": "detailed",
                "filename": str(log_file_path),
                "maxBytes": LOG_MAX_BYTES,
                "backupCount": LOG_BACKUP_COUNT,
                "encoding": "utf-8"
            },
            "errors_file": {
                "class": "logging.FileHandler",
                "level": "WARNING",
                "formatter": "detailed",
                "filename": str(errors_file_path),
                "mode": "a",
                "encoding": "utf-8"
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console"]
        },
        "loggers": loggers
    }


def setup_logging(
    logs_folder: Path,
    log_filename: str = "invoice_ledger.log",
    level: str = "INFO"
) -> None:
    """Install the logging configuration, replacing any handlers from a previous run."""
    config = get_logging_config(logs_folder, log_filename, level)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.config.dictConfig(config)
