"""Error taxonomy and retry logic for the alert pipeline."""
import logging
import smtplib
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for alert pipeline errors."""


class ClientError(PipelineError):
    """A request the caller must fix; surfaced with an HTTP status, never retried."""

    def __init__(self, status_code: int, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.reason = reason or message


class DependencyError(PipelineError):
    """The document store or a delivery channel is unavailable."""


class InvariantViolation(PipelineError):
    """More than one unresolved alert exists for the same subject."""


class RetryHandler:
    """
    Handles retries for transient delivery failures.
    """

    def __init__(self, max_retries: int = 3, retry_delay: float = 1.0):
        """
        Initialize retry handler.

        Args:
            max_retries: Maximum number of delivery attempts
            retry_delay: Base delay between attempts in seconds
        """
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """
        Determine if an error should be retried.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (1-indexed)

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        retryable_errors = (
            DependencyError,
            ConnectionError,
            TimeoutError,
            smtplib.SMTPServerDisconnected,
            smtplib.SMTPConnectError,
            requests.ConnectionError,
            requests.Timeout,
        )

        if isinstance(error, retryable_errors):
            return True

        # Check error message for transient indicators
        error_str = str(error).lower()
        transient_indicators = [
            "timeout",
            "connection",
            "network",
            "temporary",
            "retry",
        ]

        return any(indicator in error_str for indicator in transient_indicators)

    def get_retry_delay(self, attempt: int) -> float:
        """
        Get delay before next retry (exponential backoff).

        Args:
            attempt: Current attempt number

        Returns:
            Delay in seconds
        """
        return self.retry_delay * (2 ** (attempt - 1))
