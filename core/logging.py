import logging
import sys
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

# --- Constants ---
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5
LOGGER_NAME = 'ai'
DIAGNOSTICS_LOGGER_NAME = 'ai.diagnostics'

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
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_object)

def setup_logging(log_level: Union[int, str] = logging.INFO, log_file: Optional[Union[str, Path]] = None):
    """
    Configures logging for the gateway.
    - Console: Human-readable plain text.
    - File (optional): Machine-readable JSON, with rotation.
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    gateway_logger = logging.getLogger(LOGGER_NAME)
    gateway_logger.setLevel(log_level)

    # --- Formatters ---
    plain_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Clear existing handlers to avoid duplicates
    if gateway_logger.hasHandlers():
        gateway_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(plain_formatter)
    gateway_logger.addHandler(console_handler)

    # --- Rotating File Handler (JSON) ---
    if log_file:
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
        gateway_logger.addHandler(file_handler)

    return gateway_logger

# Application logger. Handlers are attached by setup_logging() at startup.
logger = logging.getLogger(LOGGER_NAME)

# --- Diagnostics channel ---
# Failures that are swallowed on the request path (interaction log persistence)
# are routed here so they can be collected separately from the main log.
diagnostics = logging.getLogger(DIAGNOSTICS_LOGGER_NAME)
diagnostics.propagate = False
if not diagnostics.handlers:
    _diag_handler = logging.StreamHandler(sys.stderr)
    _diag_handler.setFormatter(JsonFormatter())
    diagnostics.addHandler(_diag_handler)
