# app/core/logging_config.py
import logging
import logging.config
import sys
from typing import Dict, Any
from app.core.config import settings

# SDK and driver loggers that only matter when something is already wrong
QUIET_LOGGERS = ("sqlalchemy", "aiosqlite", "stripe", "resend", "httpx")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


def build_logging_config(debug: bool, log_file: str) -> Dict[str, Any]:
    """dictConfig for the API process and its background migration tasks.

    ``app.*`` loggers go to the console and the log file, so a batch run can
    be reconstructed from the file after the fact. Everything else stays on
    the console.
    """
    app_level = "DEBUG" if debug else "INFO"
    loggers: Dict[str, Any] = {
        "": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "app": {"handlers": ["console", "file"], "level": app_level, "propagate": False},
        "uvicorn": {"handlers": ["console"], "level": "INFO", "propagate": False},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {"handlers": ["console"], "level": "WARNING", "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            "detailed": {"format": DETAILED_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": app_level,
                "formatter": "detailed" if debug else "default",
                "stream": sys.stdout,
            },
            "file": {
                "class": "logging.FileHandler",
                "level": "INFO",
                "formatter": "detailed",
                "filename": log_file,
                "mode": "a",
                "delay": True,
            },
        },
        "loggers": loggers,
    }


def setup_logging() -> None:
    """Setup centralized logging configuration"""
    # Handler failures (e.g. broken pipe) must not interrupt batch jobs
    logging.raiseExceptions = False
    logging.config.dictConfig(build_logging_config(settings.DEBUG, settings.LOG_FILE))

    if settings.ENVIRONMENT == "production":
        logging.getLogger("app").setLevel(logging.INFO)
        logging.getLogger("uvicorn").setLevel(logging.WARNING)

    logger = logging.getLogger("app.logging")
    logger.info(f"Logging configured for {settings.ENVIRONMENT} environment")
    logger.debug(f"Debug mode: {settings.DEBUG}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(f"app.{name}")


# Initialize logging when module is imported
setup_logging()
