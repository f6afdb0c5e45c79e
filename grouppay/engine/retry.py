"""
Error taxonomy and retry policy for bank gateway calls.

Two different policies apply depending on whether a call moves money:

  - Read-only calls (readiness inquiry, detailed inquiry) are retried
    in-process with exponential backoff on transport and auth failures.
  - DoPayment is never retried in-process. A failure is classified against
    an allow-list of HTTP codes and, if retryable, handed back to the
    scheduler as a retry-after hint so the attempt counter survives restarts.

Configuration and validation errors are never retried.
"""

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional, TypeVar

logger = logging.getLogger("grouppay.retry")

T = TypeVar("T")

RETRYABLE_EXECUTE_STATUS_CODES = frozenset({408, 500, 502, 503, 504})
MAX_READ_RETRIES = 2
BASE_DELAY = 0.5
MAX_DELAY = 8.0


class GatewayError(Exception):
    """Base exception for bank gateway failures."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retriable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.retriable = retriable


class ConfigurationError(GatewayError):
    """Missing or invalid gateway metadata or signing key. Fatal for the call."""

    def __init__(self, message: str):
        super().__init__(message, status_code=400, retriable=False)


class AuthError(GatewayError):
    """Access token exchange failed."""

    def __init__(self, message: str, status_code: Optional[int] = 401):
        super().__init__(message, status_code=status_code, retriable=True)


class TransportError(GatewayError):
    """Network failure or non-2xx HTTP response. Carries the HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message, status_code=status_code, error_code=error_code, retriable=True)


class BankBusinessError(GatewayError):
    """Well-formed 2xx response in which the bank reports a business failure."""

    def __init__(self, message: str, error_code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, error_code=error_code, retriable=False)


class ValidationError(Exception):
    """Malformed input. Reported to the caller immediately and never retried."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


def is_retryable_execute_error(
    error: GatewayError,
    retryable_codes: Iterable[int] = RETRYABLE_EXECUTE_STATUS_CODES,
) -> bool:
    """
    Decide whether a failed DoPayment may be attempted again.

    Only transport-level failures whose HTTP status is on the allow-list
    qualify. Business rejections, auth and configuration errors do not.
    """
    if not isinstance(error, TransportError):
        return False
    return error.status_code is not None and error.status_code in set(retryable_codes)


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = MAX_READ_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs: Any,
) -> Any:
    """
    Execute a read-only async gateway call with exponential backoff.

    Never use this for DoPayment.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts.
        base_delay: First backoff delay in seconds.

    Returns:
        The result of the function call.

    Raises:
        GatewayError: On non-retriable failure or exhausted retries.
    """
    delay = base_delay

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except GatewayError as e:
            if not e.retriable or attempt >= max_retries:
                if e.retriable:
                    logger.error("Exhausted %d retries for gateway call: %s", max_retries, e)
                raise

            sleep_for = min(delay, MAX_DELAY)
            logger.warning(
                "Retriable error on attempt %d/%d: %s - sleeping %.1fs",
                attempt + 1,
                max_retries + 1,
                e,
                sleep_for,
            )
            if sleep_for > 0:
                await asyncio.sleep(sleep_for)
            delay = min(delay * 2, MAX_DELAY)

    raise GatewayError("Unknown error after retries")
