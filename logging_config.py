import logging
import logging.config
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Module loggers of this project; setup_logging routes them all.
PROJECT_LOGGERS = (
    "allocation_manager",
    "frame_scheduler",
    "score_aggregator",
    "question_flow",
    "ranking_engine",
    "survey_config",
    "streamlit_app",
    "logging_config",
)


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> dict:
    """
    Configures logging for applications embedding the survey core.
    Console output always; a rotating file when ``log_file`` or
    RADIAL_SURVEY_LOG_FILE is set.
    """
    level = (level or os.getenv("RADIAL_SURVEY_LOG_LEVEL", "INFO")).upper()
    log_file = log_file or os.getenv("RADIAL_SURVEY_LOG_FILE") or None
    max_bytes = int(os.getenv("LOG_MAX_BYTES", str(5 * 1024 * 1024)))
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", "3"))

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "level": level,
        },
    }
    if log_file:
        handlers["file_app"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "default",
            "filename": log_file,
            "maxBytes": max_bytes,
            "backupCount": backup_count,
            "level": level,
            "encoding": "utf8",
        }
    handler_names = list(handlers)

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT},
        },
        "handlers": handlers,
        "loggers": {
            "": {  # Root logger
                "handlers": handler_names,
                "level": "WARNING",
                "propagate": True,
            },
            **{
                name: {"handlers": handler_names, "level": level, "propagate": False}
                for name in PROJECT_LOGGERS
            },
        },
    }

    logging.config.dictConfig(logging_config)
    logging.getLogger(__name__).info("Logging configured at level %s.", level)
    return logging_config
