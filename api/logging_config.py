"""
Structured logging for fleetgate.

Handlers go on the ``fleetgate`` logger and on each package logger
(access, core, api) so that ``logging.getLogger(__name__)`` anywhere in
the tree produces the same JSON lines.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

LOGGER_NAME = "fleetgate"
PACKAGE_LOGGERS = ("access", "core", "api")

# Keys callers pass via ``extra=`` that are copied into the JSON line
EXTRA_FIELDS = (
    'request_id', 'attempt_id', 'error_id', 'user', 'endpoint', 'method',
    'status_code', 'duration_ms', 'audit',
)

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            'timestamp': created.isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        entry.update({k: getattr(record, k) for k in EXTRA_FIELDS if hasattr(record, k)})
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _build_handlers(settings):
    console = logging.StreamHandler()
    if settings.log_format == 'json':
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
    handlers = [console]

    if settings.log_file:
        # File output is always JSON regardless of LOG_FORMAT
        rotating = RotatingFileHandler(
            settings.log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
        )
        rotating.setFormatter(JSONFormatter())
        handlers.append(rotating)
    return handlers


def configure_logging(app=None, settings=None):
    """Install handlers on the fleetgate and package loggers.

    Args:
        app: Flask app whose ``app.logger`` should share the handlers.
        settings: AppSettings; falls back to get_settings().

    Returns:
        The ``fleetgate`` logger.
    """
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    handlers = _build_handlers(settings)

    for name in (LOGGER_NAME,) + PACKAGE_LOGGERS:
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)
        package_logger.handlers = list(handlers)

    if app is not None:
        app.logger.handlers = list(handlers)
        app.logger.setLevel(level)

    return logging.getLogger(LOGGER_NAME)
