"""
Structured logging configuration with security event tracking.

Login attempts, IP blocks, account lockouts and unlocks, two-factor and OAuth
events are emitted on the ``security`` logger with their context as JSON
fields, next to the regular application and request logs.
"""

import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Optional
from pathlib import Path

from pythonjsonlogger import jsonlogger

CONTEXT_FIELDS = (
    'event_type', 'user_id', 'client_ip', 'request_id', 'endpoint', 'method',
    'user_agent', 'email', 'reason', 'provider', 'response_time', 'status_code',
)
SERVICE_LOGGERS = ('app', 'security', 'performance', 'database', 'authentication')


class ContextFilter(logging.Filter):
    """Make sure every record carries the security/request context attributes."""

    def filter(self, record):
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, None)
        if record.event_type is None:
            record.event_type = 'application'
        return True


class CustomJSONFormatter(jsonlogger.JsonFormatter):

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
        log_record['app_name'] = 'campus-user-service'
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')
        log_record['level'] = record.levelname

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_json: bool = True,
) -> None:
    """Route the service loggers to stdout (and log_file, if given)."""
    if enable_json:
        formatter = CustomJSONFormatter(fmt='%(timestamp)s %(level)s %(name)s %(message)s')
    else:
        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())

    level = getattr(logging, log_level.upper())
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for logger_name in SERVICE_LOGGERS:
        logger = logging.getLogger(logger_name)
        logger.setLevel(level)
        logger.propagate = False
        logger.handlers.clear()
        for handler in handlers:
            logger.addHandler(handler)


app_logger = logging.getLogger('app')
security_logger = logging.getLogger('security')
performance_logger = logging.getLogger('performance')
database_logger = logging.getLogger('database')
auth_logger = logging.getLogger('authentication')


class SecurityEventLogger:
    """Specialized logger for security events."""

    def __init__(self):
        self.logger = security_logger

    def login_attempt(
        self,
        user_id: Optional[int],
        email: str,
        success: bool,
        client_ip: str,
        user_agent: Optional[str],
        failure_reason: Optional[str] = None
    ):
        """Log login attempt with security context."""
        self.logger.info(
            "Login attempt",
            extra={
                'event_type': 'login_attempt',
                'user_id': user_id,
                'email': email,
                'success': success,
                'client_ip': client_ip,
                'user_agent': user_agent,
                'reason': failure_reason
            }
        )

    def ip_blocked(self, client_ip: str, failed_count: int, time_window: int):
        self.logger.warning(
            "IP blocked after repeated failed logins",
            extra={
                'event_type': 'ip_blocked',
                'client_ip': client_ip,
                'failed_count': failed_count,
                'time_window': time_window
            }
        )

    def account_lockout(
        self,
        user_id: int,
        email: str,
        failed_attempts: int,
        client_ip: str,
    ):
        """Log account lockout event."""
        self.logger.warning(
            "Account locked due to failed login attempts",
            extra={
                'event_type': 'account_lockout',
                'user_id': user_id,
                'email': email,
                'failed_attempts': failed_attempts,
                'client_ip': client_ip
            }
        )

    def account_unlocked(self, user_id: int, client_ip: Optional[str], via_two_fa: bool):
        self.logger.info(
            "Account unlocked",
            extra={
                'event_type': 'account_unlocked',
                'user_id': user_id,
                'client_ip': client_ip,
                'via_two_fa': via_two_fa
            }
        )

    def two_fa_event(self, user_id: int, action: str, success: bool, client_ip: Optional[str] = None):
        self.logger.info(
            f"Two-factor {action}",
            extra={
                'event_type': 'two_fa',
                'user_id': user_id,
                'action': action,
                'success': success,
                'client_ip': client_ip
            }
        )

    def email_code_event(self, user_id: int, purpose: str, action: str, client_ip: Optional[str] = None):
        """purpose is password_reset or login_otp; action is issued, verified, used or rejected."""
        self.logger.info(
            f"Email code {purpose} {action}",
            extra={
                'event_type': 'email_code',
                'user_id': user_id,
                'action': f"{purpose}:{action}",
                'client_ip': client_ip
            }
        )

    def oauth_event(self, provider: str, action: str, user_id: Optional[int], client_ip: Optional[str] = None):
        self.logger.info(
            f"OAuth {provider} {action}",
            extra={
                'event_type': 'oauth',
                'provider': provider,
                'action': action,
                'user_id': user_id,
                'client_ip': client_ip
            }
        )


class PerformanceLogger:
    """Specialized logger for performance monitoring."""

    def __init__(self):
        self.logger = performance_logger

    def log_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        response_time: float,
        client_ip: str,
        request_id: str,
    ):
        """Log request performance metrics."""
        self.logger.info(
            f"{method} {endpoint} - {status_code} - {response_time:.3f}s",
            extra={
                'event_type': 'api_request',
                'method': method,
                'endpoint': endpoint,
                'status_code': status_code,
                'response_time': response_time,
                'client_ip': client_ip,
                'request_id': request_id
            }
        )


security_event_logger = SecurityEventLogger()
performance_event_logger = PerformanceLogger()


def generate_request_id() -> str:
    """Generate unique request ID for tracing."""
    return str(uuid.uuid4())


def get_client_ip(request) -> str:
    """Extract client IP from request with proxy support."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return getattr(request.client, "host", None) or "unknown"


# Initialize logging on module import
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE")
enable_json = os.getenv("LOG_FORMAT", "json").lower() == "json"

setup_logging(
    log_level=log_level,
    log_file=log_file,
    enable_json=enable_json
)
