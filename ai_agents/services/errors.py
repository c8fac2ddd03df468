"""
Error taxonomy for the refinement layer.
"""
from __future__ import annotations

from typing import Mapping, Optional


class RefinementError(RuntimeError):
    """Base class for failures surfaced by the refinement orchestrator."""

    default_code = "refinement_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Mapping[str, object]] = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.details = dict(details or {})


class ValidationError(RefinementError):
    default_code = "invalid_request"


class TransportError(RefinementError):
    default_code = "transport_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Mapping[str, object]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.status_code = status_code


class RunTimeout(TransportError):
    default_code = "run_timeout"


class RunFailed(RefinementError):
    default_code = "run_failed"

    def __init__(self, status: str, message: Optional[str] = None, *, details: Optional[Mapping[str, object]] = None) -> None:
        super().__init__(message or f"AI turn did not complete successfully, status: {status}", details=details)
        self.status = status


class ParseError(RefinementError):
    default_code = "parse_error"

    def __init__(self, message: str, *, raw: str, details: Optional[Mapping[str, object]] = None) -> None:
        super().__init__(message, details=details)
        self.raw = raw


class ConfigError(RefinementError):
    default_code = "config_error"
