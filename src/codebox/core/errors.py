from __future__ import annotations


class CodeboxError(Exception):
    """Base class for job failures. ``reason`` is the short code reported to callers."""

    reason = "error"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        if reason:
            self.reason = reason


class InputError(CodeboxError):
    """The request was rejected before any resource was allocated."""

    reason = "invalid_input"


class BuildError(CodeboxError):
    reason = "build_failed"


class GuestRuntimeError(CodeboxError):
    reason = "run_failed"


class JobTimeoutError(CodeboxError):
    reason = "timeout"


class InfrastructureError(CodeboxError):
    """The service environment is broken (missing binary, container failure, fs error)."""

    reason = "infrastructure_error"
