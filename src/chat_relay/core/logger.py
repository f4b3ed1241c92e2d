import json
import logging
import os
import sys
import threading
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone
from typing import Dict, Any, Optional, TYPE_CHECKING
from pathlib import Path

if TYPE_CHECKING:
    from ..infrastructure.config.settings import LoggingSettings

# One StructuredLogger per name; handlers live on the shared logging.Logger
_logger_cache: Dict[str, 'StructuredLogger'] = {}
_cache_lock = threading.RLock()


class CustomJsonEncoder(json.JSONEncoder):
    """JSON encoder for datetimes, enums, sets and classes found in log payloads."""
    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return sorted(str(item) for item in obj)
        if hasattr(obj, 'name') and hasattr(obj, 'value'):  # Enum-like
            return obj.name
        if isinstance(obj, type):
            return obj.__name__
        return super().default(obj)


class JsonFormatter(logging.Formatter):
    """Formats log records into a JSON string."""

    def _sanitize_dict(self, d: dict) -> dict:
        """Recursively sanitize dictionary keys and values."""
        sanitized = {}
        for k, v in d.items():
            str_key = str(k)
            if isinstance(v, dict):
                sanitized[str_key] = self._sanitize_dict(v)
            elif isinstance(v, (list, tuple)):
                sanitized[str_key] = [self._sanitize_dict(item) if isinstance(item, dict) else item for item in v]
            else:
                sanitized[str_key] = v
        return sanitized

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, dict):
            message_dict = self._sanitize_dict(record.msg)
        else:
            message_dict = {"message": record.getMessage()}

        log_object = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
            **message_dict,
        }
        if record.exc_info:
            log_object["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_object, cls=CustomJsonEncoder)


class StructuredLogger:
    """
    Event-oriented logger.

    Every call takes an event type ("component.event") and a flat data dict,
    which the JsonFormatter turns into one JSON line per event.
    """

    def __init__(self, name: str, config: Any, filename: Optional[str] = None):
        self.logger = logging.getLogger(name)
        level = getattr(config, 'level', 'INFO')
        level_name = getattr(level, 'value', level)
        self.logger.setLevel(getattr(logging, str(level_name).upper(), logging.INFO))
        self.logger.propagate = False

        console_enabled = getattr(config, 'console_enabled', True)
        file_enabled = getattr(config, 'file_enabled', False)
        structured_logging = getattr(config, 'structured_logging', True)
        max_file_size_mb = getattr(config, 'max_file_size_mb', 100)
        backup_count = getattr(config, 'backup_count', 5)

        log_dir = getattr(config, 'log_dir', 'logs')
        if filename:
            log_file = str(Path(log_dir) / filename)
        elif file_enabled:
            log_file = str(Path(log_dir) / f"{name}.jsonl")
        else:
            log_file = None

        self._setup_console_handler(console_enabled, structured_logging)
        self._setup_file_handler(file_enabled, log_file, max_file_size_mb, backup_count, structured_logging)

    def _build_formatter(self, structured: bool) -> logging.Formatter:
        if structured:
            return JsonFormatter()
        return logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    def _setup_console_handler(self, enabled: bool, structured: bool):
        """
        Attach a stdout handler unless one is already present.

        Idempotent so repeated construction for the same name never
        duplicates output.
        """
        if not enabled:
            return

        for existing_handler in self.logger.handlers:
            if isinstance(existing_handler, logging.StreamHandler):
                if getattr(existing_handler, 'stream', None) is sys.stdout:
                    return

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(self._build_formatter(structured))
        self.logger.addHandler(handler)

    def _setup_file_handler(self, enabled: bool, log_file: Optional[str], max_size_mb: int,
                            backup_count: int, structured: bool):
        """Attach a rotating file handler unless one for the same file exists."""
        if not enabled or not log_file:
            return

        log_file_normalized = os.path.abspath(log_file)
        for existing_handler in self.logger.handlers:
            if isinstance(existing_handler, RotatingFileHandler):
                if os.path.abspath(existing_handler.baseFilename) == log_file_normalized:
                    return

        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        try:
            handler = RotatingFileHandler(
                log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding='utf-8'
            )
        except OSError as e:
            # Surface on stderr, otherwise we would silently stop writing logs
            print(f"ERROR: Failed to create file handler for {log_file}: {e}", file=sys.stderr)
            return

        handler.setFormatter(self._build_formatter(structured))
        self.logger.addHandler(handler)

    def _log(self, level: int, event_type: str, data: Dict[str, Any], exc_info=False):
        payload = {"event_type": event_type, "data": data}
        self.logger.log(level, payload, exc_info=exc_info)

    def info(self, event_type: str, data: Dict[str, Any] = None):
        self._log(logging.INFO, event_type, data or {})

    def warning(self, event_type: str, data: Dict[str, Any] = None):
        self._log(logging.WARNING, event_type, data or {})

    def error(self, event_type: str, data: Dict[str, Any] = None, exc_info=False):
        """
        Log an error event.

        Args:
            event_type: Type of error event
            data: Optional error context data
            exc_info: Include exception info (default: False)
        """
        self._log(logging.ERROR, event_type, data or {}, exc_info=exc_info)

    def debug(self, event_type: str, data: Dict[str, Any] = None):
        self._log(logging.DEBUG, event_type, data or {})


class _FallbackLoggingConfig:
    level = "INFO"
    console_enabled = True
    file_enabled = False
    structured_logging = True
    log_dir = "logs"
    max_file_size_mb = 100
    backup_count = 5


def configure_logging(config: 'LoggingSettings') -> None:
    """
    Rebuild cached loggers from explicit settings.

    Called once by the composition root after settings are loaded, so loggers
    created at import time pick up the configured level and handlers.
    """
    with _cache_lock:
        for name, cached in list(_logger_cache.items()):
            for handler in list(cached.logger.handlers):
                cached.logger.removeHandler(handler)
                handler.close()
            _logger_cache[name] = StructuredLogger(name, config)


def get_logger(name: str) -> StructuredLogger:
    """
    Get a cached structured logger instance for the given name.

    Settings come from the working directory configuration; if that cannot
    be loaded a console-only JSON logger is returned instead.

    Args:
        name: Logger name (typically __name__ of calling module)

    Returns:
        Cached StructuredLogger instance (singleton per name)
    """
    if name in _logger_cache:
        return _logger_cache[name]

    with _cache_lock:
        if name in _logger_cache:
            return _logger_cache[name]

        from ..infrastructure.config.config_loader import get_settings_from_working_directory
        try:
            settings = get_settings_from_working_directory()
            logger = StructuredLogger(name, settings.logging)
        except Exception as e:
            print(f"WARNING: Failed to load config for logger '{name}': {e}", file=sys.stderr)
            logger = StructuredLogger(name, _FallbackLoggingConfig())

        _logger_cache[name] = logger
        return logger
