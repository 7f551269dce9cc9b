"""Error taxonomy for the scheduling core.

Every failure the core reports is one of the classes below. The request
boundary turns them into HTTP responses with ``to_http_exception``; only
``Conflict`` is worth retrying.
"""

import logging
import random
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import HTTPException, status
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from tutorbook.core import config

logger = logging.getLogger(__name__)

R = TypeVar("R")

_TRANSIENT_MARKERS = ("deadlock", "database is locked", "could not serialize", "lock timeout", "busy")


class SchedulingError(Exception):
    """Base class for all scheduling failures."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class InvalidInterval(SchedulingError):
    """Malformed, inverted or past-dated request."""

    status_code = status.HTTP_400_BAD_REQUEST


class ReservationConflict(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class SlotAlreadyBooked(ReservationConflict):
    """Another appointment already covers this tutor and interval."""


class StudentDoubleBooked(ReservationConflict):
    """The student already holds an overlapping appointment."""


class SlotNoLongerAvailable(ReservationConflict):
    """The interval no longer matches the tutor's published availability."""


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class Unauthorized(SchedulingError):
    # Rendered exactly like NotFound so callers cannot probe for other users' appointments.
    status_code = status.HTTP_404_NOT_FOUND

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": "Not found.",
                "code": NotFound.__name__,
                "details": {},
            },
        )


class InvalidTransition(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class Conflict(SchedulingError):
    """A concurrent writer changed the same row first. Safe to retry."""

    status_code = status.HTTP_409_CONFLICT
    retryable = True


class StoreUnavailable(SchedulingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def classify_store_error(exc: Exception) -> SchedulingError:
    if isinstance(exc, SchedulingError):
        return exc

    if isinstance(exc, StaleDataError):
        return Conflict("The appointment was modified concurrently. Please retry.")

    if isinstance(exc, OperationalError):
        message = str(exc).lower()
        if any(marker in message for marker in _TRANSIENT_MARKERS):
            return Conflict("The store reported a lock conflict. Please retry.")

    if isinstance(exc, SQLAlchemyError):
        return StoreUnavailable("Database unavailable. Verify DATABASE_URL and database credentials.")

    raise TypeError(f"Cannot classify {type(exc).__name__} as a store error") from exc


def retry_on_conflict(
    attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """
    Retry the wrapped call when it raises ``Conflict``.

    Args:
        attempts: Total number of tries, defaults to CONFLICT_RETRY_ATTEMPTS
        base_delay: First backoff in seconds, doubled on each retry with jitter

    Returns:
        Decorator; any error other than ``Conflict`` propagates immediately
    """
    max_attempts = attempts if attempts is not None else config.CONFLICT_RETRY_ATTEMPTS
    delay = base_delay if base_delay is not None else config.CONFLICT_RETRY_BASE_DELAY_SECONDS

    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> R:
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except Conflict as exc:
                    if attempt >= max_attempts - 1:
                        logger.warning(
                            "All %s attempts hit a conflict in %s: %s",
                            max_attempts,
                            func.__name__,
                            exc.message,
                        )
                        raise
                    wait_time = delay * (2**attempt) + random.uniform(0, delay)
                    logger.info(
                        "Attempt %s/%s of %s hit a conflict; retrying in %.3fs",
                        attempt + 1,
                        max_attempts,
                        func.__name__,
                        wait_time,
                    )
                    time.sleep(wait_time)
            raise RuntimeError("retry_on_conflict needs at least one attempt")

        return wrapper

    return decorator
