"""Error taxonomy of the coordination core.

Every domain error carries the HTTP status the API layer answers with, so the
routes never have to translate exceptions one by one.
"""
from __future__ import annotations
from typing import Optional


class CoordinatorError(Exception):
    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransportError(CoordinatorError):
    """No usable response from the remote side after the retry budget."""
    http_status = 502

    def __init__(self, url: str, attempts: int, message: str, status_code: Optional[int] = None):
        super().__init__(f"{message} (url={url!r}, attempts={attempts}, status={status_code})")
        self.url = url
        self.attempts = attempts
        self.status_code = status_code


class RejectedByRemote(CoordinatorError):
    """The remote answered with a 4xx; never retried."""
    http_status = 502

    def __init__(self, url: str, status_code: int, body: object = None):
        super().__init__(f"Remote rejected request with HTTP {status_code} (url={url!r})")
        self.url = url
        self.status_code = status_code
        self.body = body


class AlreadyLockedError(CoordinatorError):
    http_status = 409


class LockNotFoundError(CoordinatorError):
    http_status = 404


class InvalidTransition(CoordinatorError):
    http_status = 409


class CorrelationFailure(CoordinatorError):
    http_status = 400


class JobNotFound(CorrelationFailure):
    http_status = 404


class WaveNotFound(CoordinatorError):
    http_status = 404


class ValidationFailure(CoordinatorError):
    http_status = 422
