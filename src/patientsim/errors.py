"""Exception hierarchy shared by the session engine."""

from __future__ import annotations


class PatientSimError(Exception):
    """Base class for every error raised by patientsim."""


class ValidationError(PatientSimError):
    """Malformed transcript, turn or persona data."""


class StateError(PatientSimError):
    """Operation on an unknown, ended or conflicting session."""


class PersistenceError(PatientSimError):
    """The transcript store could not be read or written."""


class AdmissionDenied(PatientSimError):
    """The per-user rate limiter refused the request."""

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class UpstreamError(PatientSimError):
    """The completion endpoint call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class UpstreamRateLimited(UpstreamError):
    """The provider answered 429."""


class UpstreamAuthenticationError(UpstreamError):
    """The provider rejected our credentials."""


class UpstreamUnavailable(UpstreamError):
    """Server-side or transport failure; the caller may retry later."""
