"""
Logging configuration for the cache gateway.

Provides structured logging with correlation IDs, centralized configuration,
and multiple output formats for different environments.
"""

import logging
import logging.config
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Union
from uuid import uuid4
import traceback
from contextvars import ContextVar
from pathlib import Path


# Context variables for correlation tracking
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

# Attributes every LogRecord carries; anything else was passed through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class CorrelationFilter(logging.Filter):
    """Add correlation IDs and context to log records."""

    def filter(self, record):
        record.correlation_id = correlation_id.get() or 'unknown'
        record.user_id = user_id.get() or 'anonymous'
        record.request_id = request_id.get() or 'no-request'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra=True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
            'user_id': getattr(record, 'user_id', 'anonymous'),
            'request_id': getattr(record, 'request_id', 'no-request'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in log_entry or key in _RECORD_ATTRS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)

        request_info = f"[{getattr(record, 'request_id', 'no-request')[:8]}]"
        operation = getattr(record, 'operation', None)
        operation_info = f" ({operation})" if operation and operation != 'unknown' else ''

        return f"{color}{formatted}{self.RESET}{operation_info} {request_info}"


class StructuredLogger:
    """Logger wrapper that attaches component, operation and keyword context to records."""

    def __init__(self, name: str, component: str = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _log(self, log_level: int, message: str, operation: str = None, exc_info=None, **kwargs):
        extra = {
            'component': self.component,
            'operation': operation or 'unknown',
            **kwargs
        }
        self.logger.log(log_level, message, exc_info=exc_info, extra=extra)

    def debug(self, message: str, operation: str = None, **kwargs):
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: str = None, **kwargs):
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: str = None, **kwargs):
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: str = None, **kwargs):
        self._log(logging.ERROR, message, operation, **kwargs)

    def exception(self, message: str, operation: str = None, **kwargs):
        """Log an error with the active exception's traceback."""
        self._log(logging.ERROR, message, operation or 'exception', exc_info=True, **kwargs)


class LoggingConfig:
    """Centralized logging configuration."""

    COMPONENT_LOGGERS = ('shared', 'src.shared', 'src.cache_gateway')

    THIRD_PARTY_LEVELS = {
        'uvicorn': logging.WARNING,
        'uvicorn.access': logging.WARNING,
        'fastapi': logging.WARNING,
        'httpx': logging.WARNING,
        'redis': logging.WARNING,
    }

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path (always written as JSON)
            console_output: Enable console output
            correlation_tracking: Enable correlation ID tracking
        """
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.config.dictConfig(
            cls.get_config_dict(
                level=level,
                format_type=format_type,
                log_file=log_file,
                console_output=console_output,
                correlation_tracking=correlation_tracking,
            )
        )

        logger = StructuredLogger(__name__, 'logging_config')
        logger.info(
            "Logging system initialized",
            operation="setup_logging",
            level=level,
            format_type=format_type,
            log_file=log_file,
        )

    @classmethod
    def get_config_dict(
        cls,
        level: Union[str, int] = 'INFO',
        format_type: str = 'json',
        log_file: Optional[str] = None,
        console_output: bool = True,
        correlation_tracking: bool = True
    ) -> Dict[str, Any]:
        """
        Get logging configuration as dictionary for dictConfig.

        Returns:
            Logging configuration dictionary
        """
        if isinstance(level, int):
            level = logging.getLevelName(level)

        filters = ['correlation'] if correlation_tracking else []

        config = {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {
                'correlation': {
                    '()': CorrelationFilter,
                }
            },
            'formatters': {
                'json': {
                    '()': JSONFormatter,
                    'include_extra': True
                },
                'colored': {
                    '()': ColoredFormatter,
                    'format': LOG_FORMAT
                },
                'standard': {
                    'format': LOG_FORMAT
                }
            },
            'handlers': {},
            'loggers': {
                **{name: {'level': level} for name in cls.COMPONENT_LOGGERS},
                **{name: {'level': logging.getLevelName(lvl)} for name, lvl in cls.THIRD_PARTY_LEVELS.items()},
            },
            'root': {
                'level': level,
                'handlers': []
            }
        }

        if console_output:
            config['handlers']['console'] = {
                'class': 'logging.StreamHandler',
                'level': level,
                'formatter': format_type,
                'filters': filters,
                'stream': 'ext://sys.stdout'
            }
            config['root']['handlers'].append('console')

        if log_file:
            config['handlers']['file'] = {
                'class': 'logging.FileHandler',
                'level': level,
                'formatter': 'json',
                'filters': filters,
                'filename': log_file
            }
            config['root']['handlers'].append('file')

        return config


class CorrelationContext:
    """Context manager for correlation tracking."""

    def __init__(self, correlation_id_value: str = None, user_id_value: str = None, request_id_value: str = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.user_id_value = user_id_value
        self.request_id_value = request_id_value
        self.correlation_token = None
        self.user_token = None
        self.request_token = None

    def __enter__(self):
        self.correlation_token = correlation_id.set(self.correlation_id_value)
        if self.user_id_value:
            self.user_token = user_id.set(self.user_id_value)
        if self.request_id_value:
            self.request_token = request_id.set(self.request_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.correlation_token:
            correlation_id.reset(self.correlation_token)
        if self.user_token:
            user_id.reset(self.user_token)
        if self.request_token:
            request_id.reset(self.request_token)


def get_logger(name: str, component: str = None) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name, component)


def set_user_id(user_id_value: str):
    """Set user ID for current context."""
    user_id.set(user_id_value)


def get_request_id() -> Optional[str]:
    """Get current request ID."""
    return request_id.get()


def initialize_logging(monitoring_settings=None):
    """Initialize logging from monitoring settings."""
    if monitoring_settings is None:
        from .config import get_settings
        monitoring_settings = get_settings().monitoring

    LoggingConfig.setup_logging(
        level=monitoring_settings.log_level.value,
        format_type=monitoring_settings.log_format,
        log_file=monitoring_settings.log_file,
        console_output=True,
        correlation_tracking=True
    )
