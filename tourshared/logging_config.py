"""
Logging configuration for the TensorTours client core.

This module provides structured logging with an authentication audit trail,
dispatch operation tracking, and configurable output formats.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from tourshared.exceptions import TourClientError


class LogLevel(Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    """Log format enumeration."""
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Types of events that should be audited."""
    SIGN_IN = "sign_in"
    SIGN_OUT = "sign_out"
    TOKEN_REFRESH = "token_refresh"
    SESSION_INVALIDATED = "session_invalidated"
    ACCOUNT_CHANGE = "account_change"


_RESERVED_RECORD_FIELDS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'error_info', 'audit_info', 'operation_context',
    'taskName',
}


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs with consistent fields.
    """

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'process': {'pid': os.getpid()},
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        error = getattr(record, 'error_info', None)
        if isinstance(error, TourClientError):
            log_entry['error'] = {
                'code': error.error_code.value,
                'severity': error.severity.value,
                'context': error.context,
                'recovery_actions': [action.value for action in error.recovery_actions],
                'user_message': error.user_message
            }

        if hasattr(record, 'audit_info'):
            log_entry['audit'] = record.audit_info

        if hasattr(record, 'operation_context'):
            log_entry['operation'] = record.operation_context

        if self.include_extra_fields:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_RECORD_FIELDS
            }
            if extra_fields:
                log_entry['extra'] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Detailed human-readable formatter.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        error = getattr(record, 'error_info', None)
        if isinstance(error, TourClientError):
            formatted += f"\n  Error Code: {error.error_code.value}"
            formatted += f"\n  Severity: {error.severity.value}"
            if error.context:
                formatted += f"\n  Context: {json.dumps(error.context, indent=2, default=str)}"
            if error.recovery_actions:
                actions = [action.value for action in error.recovery_actions]
                formatted += f"\n  Recovery Actions: {', '.join(actions)}"

        if hasattr(record, 'audit_info'):
            formatted += f"\n  Audit: {json.dumps(record.audit_info, indent=2, default=str)}"

        if hasattr(record, 'operation_context'):
            formatted += f"\n  Operation: {json.dumps(record.operation_context, indent=2, default=str)}"

        return formatted


class AuditLogger:
    """
    Logger for authentication audit events.

    Token values are never recorded; only usernames, outcomes and error codes.
    """

    def __init__(self, logger_name: str = "audit"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        username: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Log an audit event with structured information.

        Args:
            event_type: Type of audit event
            message: Human-readable message
            username: User the event concerns, if known
            result: Result of the operation (success, failure, etc.)
            additional_context: Additional context information
        """
        audit_info = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'username': username,
            'result': result,
            'context': additional_context or {}
        }
        audit_info = {k: v for k, v in audit_info.items() if v is not None}

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_sign_in(self, username: str, success: bool = True, failure_reason: Optional[str] = None):
        context = {'failure_reason': failure_reason} if failure_reason else None
        self.log_event(
            event_type=AuditEventType.SIGN_IN,
            message=f"Sign-in {'successful' if success else 'failed'} for user: {username}",
            username=username,
            result="success" if success else "failure",
            additional_context=context
        )

    def log_refresh(self, username: Optional[str], success: bool, path: Optional[str] = None,
                    failure_reason: Optional[str] = None):
        context = {k: v for k, v in {'path': path, 'failure_reason': failure_reason}.items() if v}
        self.log_event(
            event_type=AuditEventType.TOKEN_REFRESH,
            message=f"Token refresh {'succeeded' if success else 'failed'}",
            username=username,
            result="success" if success else "failure",
            additional_context=context
        )

    def log_sign_out(self, username: Optional[str], reason: str = "user"):
        event = AuditEventType.SIGN_OUT if reason == "user" else AuditEventType.SESSION_INVALIDATED
        self.log_event(
            event_type=event,
            message=f"Session cleared ({reason})",
            username=username,
            result="success",
            additional_context={'reason': reason}
        )

    def log_account_change(self, action: str, username: Optional[str], success: bool = True):
        self.log_event(
            event_type=AuditEventType.ACCOUNT_CHANGE,
            message=f"Account {action} {'succeeded' if success else 'failed'}",
            username=username,
            result="success" if success else "failure",
            additional_context={'action': action}
        )


class OperationLogger:
    """
    Logger for tracking dispatched operations with timings.
    """

    def __init__(self, logger_name: str = "operations"):
        self.logger = logging.getLogger(logger_name)

    def log_operation_start(self, operation_type: str, operation_id: str,
                            context: Optional[Dict[str, Any]] = None):
        operation_context = {
            'operation_id': operation_id,
            'operation_type': operation_type,
            'stage': 'started',
            'start_time': datetime.now().isoformat(),
            'context': context or {}
        }
        self.logger.debug(f"Operation {operation_type} started: {operation_id}",
                          extra={'operation_context': operation_context})

    def log_operation_complete(
        self,
        operation_id: str,
        success: bool,
        duration_seconds: Optional[float] = None,
        result_summary: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        operation_context = {
            'operation_id': operation_id,
            'stage': 'completed',
            'success': success,
            'duration_seconds': duration_seconds,
            'result_summary': result_summary,
            'end_time': datetime.now().isoformat(),
            'context': context or {}
        }

        status = "completed successfully" if success else "failed"
        message = f"Operation {operation_id} {status}"
        if duration_seconds is not None:
            message += f" (took {duration_seconds:.3f}s)"
        if result_summary:
            message += f": {result_summary}"

        level = logging.DEBUG if success else logging.WARNING
        self.logger.log(level, message, extra={'operation_context': operation_context})


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Set up logging for the client core.

    Args:
        log_level: Minimum log level to capture
        log_format: Format for log output
        log_file: Path to main log file (optional)
        max_file_size: Maximum size of log files before rotation
        backup_count: Number of backup files to keep
        enable_console: Whether to enable console logging
        enable_audit: Whether to enable audit logging
        audit_file: Path to audit log file (optional)

    Returns:
        Dictionary of configured loggers
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.value))

    if log_format == LogFormat.JSON:
        formatter = StructuredFormatter()
    elif log_format == LogFormat.DETAILED:
        formatter = DetailedFormatter()
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = []

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    loggers = {
        'root': root_logger,
        'auth': logging.getLogger('tourclient.auth'),
        'dispatch': logging.getLogger('tourclient.dispatcher'),
        'operations': logging.getLogger('operations'),
    }

    if enable_audit:
        audit_logger = logging.getLogger('audit')
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers[:]:
            audit_logger.removeHandler(handler)

        if audit_file:
            Path(audit_file).parent.mkdir(parents=True, exist_ok=True)
            audit_handler = logging.handlers.RotatingFileHandler(
                audit_file,
                maxBytes=max_file_size,
                backupCount=backup_count,
                encoding='utf-8'
            )
            audit_handler.setFormatter(StructuredFormatter())
            audit_logger.addHandler(audit_handler)
            audit_logger.propagate = False

        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(logger: logging.Logger, error: TourClientError, level: int = logging.ERROR):
    """
    Log a structured error with full context information.

    Args:
        logger: Logger instance to use
        error: The structured error to log
        level: Log level to use
    """
    logger.log(level, error.message, extra={'error_info': error})
