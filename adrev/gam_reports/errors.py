"""Exception hierarchy for the Ad Manager report pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional


class GamReportError(RuntimeError):
    """Base error carrying structured metadata for logs and alert payloads."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.__class__.__name__,
            "message": str(self),
            "status": self.status,
            "code": self.code,
        }
        payload.update(self.details)
        return {k: v for k, v in payload.items() if v not in (None, "")}


class TransportError(GamReportError):
    """Network failure, non-2xx HTTP reply or token acquisition failure."""

    retryable = True

    @property
    def permission_denied(self) -> bool:
        return self.status == 403


class ProtocolError(GamReportError):
    """The SOAP reply was received but an expected field is missing."""

    retryable = True


class JobFailedError(GamReportError):
    """The report job ended FAILED or never completed within the poll budget."""

    retryable = True

    def __init__(self, message: str, *, state: str, job_id: Optional[str] = None, **kwargs: Any) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details.update({"state": state, "job_id": job_id})
        super().__init__(message, details=details, **kwargs)
        self.state = state
        self.job_id = job_id


class PersistenceError(GamReportError):
    """A write to the warehouse failed."""


class ConfigError(GamReportError):
    """Configuration is incomplete or invalid."""


class RunLeaseError(GamReportError):
    """Another run currently holds the lease."""

    def __init__(self, message: str, *, holder: Optional[str] = None, **kwargs: Any) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details["holder"] = holder
        super().__init__(message, details=details, **kwargs)
        self.holder = holder


def is_permission_denied(error: BaseException) -> bool:
    """True for a transport failure that carried HTTP 403."""
    return isinstance(error, TransportError) and error.permission_denied
