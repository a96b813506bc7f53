"""
Portal Service Logging Configuration
JSON logging for chat sessions, retrieval and portal builds
"""

import logging
import logging.handlers
import os
import sys
import json
from datetime import datetime
from typing import Dict, Any, Optional
from pathlib import Path
import structlog

LOGS_DIR = Path(os.getenv('PORTAL_LOGS_DIR', 'logs'))

# Record attributes copied into the JSON payload when present
CONTEXT_FIELDS = ('portal_id', 'session_id', 'user_id', 'stage', 'operation', 'error_type')


class PortalLogFormatter(logging.Formatter):
    """Formats log records as single-line JSON documents"""

    def __init__(self):
        super().__init__()
        self.hostname = os.getenv('HOSTNAME', 'localhost')

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'hostname': self.hostname,
            'process_id': os.getpid(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if hasattr(record, 'duration'):
            log_entry['duration_seconds'] = record.duration

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        if record.levelno <= logging.DEBUG:
            log_entry['file'] = record.filename
            log_entry['line'] = record.lineno
            log_entry['function'] = record.funcName

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class PortalLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges portal/session context into each record"""

    def __init__(self, logger, extra=None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})
        kwargs['extra'].update(self.extra)
        return msg, kwargs


def setup_logging(
    log_level: str = "INFO",
    enable_file_logging: bool = False,
    enable_console_logging: bool = True,
    enable_structured_logging: bool = True,
    log_rotation_size: int = 10 * 1024 * 1024,  # 10MB
    log_retention_count: int = 5
) -> None:
    """
    Configure root logging for the service

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_file_logging: Whether to write rotating log files under LOGS_DIR
        enable_console_logging: Whether to log to stdout
        enable_structured_logging: Whether to emit JSON lines
        log_rotation_size: Size in bytes for log rotation
        log_retention_count: Number of rotated log files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if enable_structured_logging:
        formatter = PortalLogFormatter()
    else:
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(name)s: %(message)s'
        )

    if enable_console_logging:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if enable_file_logging:
        LOGS_DIR.mkdir(exist_ok=True)

        service_handler = logging.handlers.RotatingFileHandler(
            LOGS_DIR / "portal_service.log",
            maxBytes=log_rotation_size,
            backupCount=log_retention_count
        )
        service_handler.setLevel(numeric_level)
        service_handler.setFormatter(formatter)
        root_logger.addHandler(service_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            LOGS_DIR / "portal_errors.log",
            maxBytes=log_rotation_size,
            backupCount=log_retention_count
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

    configure_service_loggers(numeric_level)

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level}, "
        f"file_logging={enable_file_logging}, "
        f"console_logging={enable_console_logging}, "
        f"structured_logging={enable_structured_logging}"
    )


def setup_logging_from_env() -> None:
    """Configure logging from PORTAL_LOG_* environment variables"""
    setup_logging(
        log_level=os.getenv('PORTAL_LOG_LEVEL', 'INFO'),
        enable_file_logging=os.getenv('PORTAL_ENABLE_FILE_LOGGING', 'false').lower() == 'true',
        enable_console_logging=os.getenv('PORTAL_ENABLE_CONSOLE_LOGGING', 'true').lower() == 'true',
        enable_structured_logging=os.getenv('PORTAL_ENABLE_STRUCTURED_LOGGING', 'true').lower() == 'true',
    )
    if os.getenv('PORTAL_ENABLE_STRUCTLOG', 'true').lower() == 'true':
        setup_structured_logging()


def configure_service_loggers(log_level: int) -> None:
    """Set levels for service components and noisy libraries"""
    service_loggers = [
        'chat.session_manager',
        'analytics.aggregator',
        'etl.portal_orchestrator',
        'etl.tasks',
        'etl.vector_embedder',
        'database.store',
        'database.repositories',
        'rag.retrieval_engine',
        'rag.response_generator',
    ]

    for logger_name in service_loggers:
        logging.getLogger(logger_name).setLevel(log_level)

    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.pool').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)


def get_portal_logger(
    name: str,
    portal_id: Optional[str] = None,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    stage: Optional[str] = None
) -> PortalLoggerAdapter:
    """
    Get a logger carrying portal context

    Args:
        name: Logger name
        portal_id: Portal identifier for context
        session_id: Chat session identifier for context
        user_id: User identifier for context
        stage: Processing stage for context

    Returns:
        Logger adapter with the given context
    """
    context = {}
    if portal_id:
        context['portal_id'] = portal_id
    if session_id:
        context['session_id'] = session_id
    if user_id:
        context['user_id'] = user_id
    if stage:
        context['stage'] = stage

    return PortalLoggerAdapter(logging.getLogger(name), context)


class LogContext:
    """Context manager that logs start, completion and failure of an operation with timing"""

    def __init__(
        self,
        logger: logging.Logger,
        operation: str,
        log_level: int = logging.INFO,
        **context: Any
    ):
        self.logger = logger
        self.operation = operation
        self.log_level = log_level
        self.context = {k: v for k, v in context.items() if v is not None}
        self.start_time = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.log(self.log_level, f"Starting {self.operation}", extra=dict(self.context))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = (datetime.now() - self.start_time).total_seconds()
        extra: Dict[str, Any] = dict(self.context)
        extra['duration'] = self.duration
        extra['operation'] = self.operation

        if exc_type is None:
            self.logger.log(
                self.log_level,
                f"Completed {self.operation} in {self.duration:.2f}s",
                extra=extra
            )
        else:
            extra['error_type'] = exc_type.__name__
            self.logger.error(
                f"Failed {self.operation} after {self.duration:.2f}s: {exc_val}",
                extra=extra,
                exc_info=(exc_type, exc_val, exc_tb)
            )


def setup_structured_logging() -> None:
    """Route structlog loggers through stdlib logging with JSON rendering"""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
