# flask_app/utils/logging_config.py
"""
Logging setup for the Flask app.

Console and rotating-file handlers are driven by the monitoring config
(``LOG_LEVEL``, ``LOG_FORMAT``, ``LOG_DIR``...). ``LOG_FORMAT=json`` switches
both handlers to python-json-logger so ``extra=`` fields such as
``directory_run_id`` land as top-level keys.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"
JSON_FIELDS = ("asctime", "levelname", "name", "module", "funcName", "lineno", "message")

_NOISY_LOGGERS = ("urllib3", "requests", "kombu", "amqp")


def _build_formatter(log_format):
    if str(log_format).lower() == "json":
        return jsonlogger.JsonFormatter(
            " ".join(f"%({field})s" for field in JSON_FIELDS),
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    return logging.Formatter(TEXT_FORMAT)


def _reset_handlers(logger):
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_logging(app):
    """Configure ``app.logger``; safe to call again after config changes"""
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app.config.get("LOG_FORMAT", "text"))

    logger = app.logger
    _reset_handlers(logger)
    logger.setLevel(level)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "directory.log"),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(
        "%s logging configured",
        app.config.get("APP_NAME", "Directory Sync"),
        extra={"log_level": level_name, "log_format": app.config.get("LOG_FORMAT", "text")},
    )
    return logger
