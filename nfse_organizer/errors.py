from __future__ import annotations

import errno
from typing import Optional

import requests


class NFSeError(Exception):
    """Base class for errors raised by the organizer."""


class FetchError(NFSeError):
    """A page could not be obtained from the portal."""

    def __init__(self, message: str, page_number: Optional[int] = None):
        super().__init__(message)
        self.page_number = page_number


class TransientFetchError(FetchError):
    """Timeouts, rate limiting and connection drops. Safe to retry."""


class FatalFetchError(FetchError):
    """Authentication failures and unexpected responses. Never retried."""


class PlacementError(NFSeError):
    """Writing an artifact to its canonical path failed."""

    def __init__(self, message: str, path: str, systemic: bool = False):
        super().__init__(message)
        self.path = path
        self.systemic = systemic


class InvalidTransition(NFSeError):
    """A job was asked to leave a terminal state."""


class RegistryFull(NFSeError):
    """Too many unfinished jobs."""


SYSTEMIC_ERRNOS = {errno.ENOSPC, errno.EROFS, getattr(errno, "EDQUOT", errno.ENOSPC)}

_TRANSIENT_HINTS = ("timeout", "timed out", "connection", "network", "429", "rate limit")
_FATAL_HINTS = ("login", "authentication", "autentica", "certificado", "401", "403")


def is_systemic(exc: OSError) -> bool:
    """Return ``True`` for disk full / read-only file system errors."""
    return exc.errno in SYSTEMIC_ERRNOS


def classify_exception(exc: BaseException, page_number: Optional[int] = None) -> FetchError:
    """Map ``exc`` onto the fetch error taxonomy.

    Already classified errors are returned unchanged. ``requests`` timeouts
    and connection errors are transient; anything whose message points at
    authentication is fatal. Unknown errors are fatal so they surface instead
    of looping on retries.
    """
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return TransientFetchError(str(exc), page_number)
    message = str(exc).lower()
    if any(hint in message for hint in _FATAL_HINTS):
        return FatalFetchError(str(exc), page_number)
    if any(hint in message for hint in _TRANSIENT_HINTS):
        return TransientFetchError(str(exc), page_number)
    return FatalFetchError(str(exc), page_number)


def mask_cnpj(cnpj: Optional[str]) -> Optional[str]:
    """Hide the middle digits of ``cnpj`` for log output."""
    if not cnpj or len(cnpj) < 8:
        return cnpj
    return cnpj[:4] + "****" + cnpj[-4:]
