"""
errors.py — Typed error taxonomy for the onboarding engine
===========================================================
Every public operation either returns a definite value or raises one of
the errors below.

  ValidationError          bad input shape or illegal state transition;
                           caller-fixable, never retried.
  NotFoundError            referenced session / path / step / achievement
                           is absent.
  SessionNotCompleteError  the session exists but is not in the state the
                           operation requires (e.g. certificate requested
                           for an active session).
  StorageError             persistence adapter fault, surfaced as-is.
  PartialFailure           the primary write of a multi-step operation
                           succeeded but a side effect failed.  Returned
                           as a warning next to the primary result rather
                           than raised by record_step_completion.
"""

from __future__ import annotations

from typing import Any, Optional


class OnboardingError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message   = message
        self.operation = operation
        self.details   = details or {}

    def __str__(self) -> str:
        if self.operation:
            return f"{self.message} (in {self.operation})"
        return self.message


class ValidationError(OnboardingError):
    pass


class NotFoundError(OnboardingError):
    pass


class SessionNotCompleteError(NotFoundError):
    """Session exists but has not reached status=completed."""


class StorageError(OnboardingError):
    pass


class PartialFailure(OnboardingError):
    """A side effect failed after the primary write committed."""

    def __init__(
        self,
        message: str,
        side_effect: str,
        cause: Optional[BaseException] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message, operation=operation, details={"side_effect": side_effect})
        self.side_effect = side_effect
        self.cause       = cause
