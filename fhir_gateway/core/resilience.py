"""
Resilience patterns: Retry Logic

Provides retry decorators for the short transactional writes that run off the
request thread (handshake finalize). Outbound rest-hook deliveries are not
retried; a failed handshake is terminal.

Usage:
    @retry_database_operation()
    def finalize():
        ...
"""

import logging

import structlog
from sqlalchemy.exc import DatabaseError, OperationalError
from tenacity import after_log, before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)


# Retry decorators with exponential backoff
def retry_database_operation(max_attempts: int = 3):
    """
    Retry decorator for database operations
    Retries up to 3 times with exponential backoff
    """
    return retry(
        retry=retry_if_exception_type((OperationalError, DatabaseError)),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )
