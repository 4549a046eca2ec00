import logging
import sys
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

# --- Constants ---
LOGGER_NAME = 'llmgate'
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5

# Extra attributes callers may pass via ``extra={...}`` that end up in JSON output.
EXTRA_FIELDS = ('provider', 'model', 'circuit', 'attempt', 'delay', 'cache_key', 'state')

class JsonFormatter(logging.Formatter):
    """
    Formats log records as a JSON string.
    """
    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_object[field] = value
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_object, default=str)

def setup_logging(
    log_level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Configures logging.
    - Console: Human-readable plain text.
    - File (optional): Machine-readable JSON, with rotation.
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    # --- Root Logger Configuration ---
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # --- Formatters ---
    plain_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(plain_formatter)

    # Clear existing handlers to avoid duplicates
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(console_handler)

    # --- Rotating File Handler (JSON) ---
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    return logging.getLogger(LOGGER_NAME)

# Library code logs through this logger; the host application calls
# setup_logging() once at startup to attach handlers.
logger = logging.getLogger(LOGGER_NAME)
