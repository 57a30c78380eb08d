import logging
import logging.config
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILENAME = "autocategorizer.log"

# Chatty client libraries; their request lines drown out pipeline progress
QUIET_LIBRARIES = ("httpx", "openai")
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class ColourizedFormatter(logging.Formatter):
    """Prefixes the level name with an ANSI colour unless colours are disabled.

    Colours are off when ``use_colors`` is false or ``NO_COLOR`` is set in the
    environment.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[90m",
        logging.INFO: "\x1b[32m",
        logging.WARNING: "\x1b[33m",
        logging.ERROR: "\x1b[31m",
        logging.CRITICAL: "\x1b[31;1m",
    }
    RESET = "\x1b[0m"

    def __init__(self, fmt: str | None = None, datefmt: str | None = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and "NO_COLOR" not in os.environ

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        if colour is None:
            return super().format(record)

        levelname = record.levelname
        record.levelname = f"{colour}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            # Other handlers share the record
            record.levelname = levelname


def _library_logger(handlers: list[str], level: str) -> dict:
    return {"handlers": handlers, "level": level, "propagate": False}


def get_logging_config() -> dict:
    """dictConfig for the service.

    ``LOG_LEVEL`` sets the root level and ``PIPELINE_LOG_LEVEL`` optionally
    overrides it for the ``autocategorizer`` package. With ``LOG_DIR`` set,
    records are also written uncoloured to ``LOG_DIR/autocategorizer.log``.
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    pipeline_level = os.getenv("PIPELINE_LOG_LEVEL", "").upper()
    log_dir = os.getenv("LOG_DIR")

    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "coloured",
        },
    }
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": os.path.join(log_dir, LOG_FILENAME),
            "encoding": "utf-8",
            "formatter": "plain",
        }
    active = list(handlers)

    loggers: dict[str, dict] = {"": {"handlers": active, "level": level}}
    loggers.update({name: _library_logger(active, "INFO") for name in SERVER_LOGGERS})
    loggers.update({name: _library_logger(active, "WARNING") for name in QUIET_LIBRARIES})
    if pipeline_level:
        loggers["autocategorizer"] = {"level": pipeline_level}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "coloured": {"()": ColourizedFormatter, "format": LOG_FORMAT},
            "plain": {"format": LOG_FORMAT},
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging() -> None:
    logging.config.dictConfig(get_logging_config())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
