"""
Structured error types for runspine.

Every failure the engine can observe is a ``RunspineError`` subclass that
carries a category, a retry hint, structured context and an optional cause.
The category decides how far a failure propagates:

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        RunspineError                             │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ConfigurationError   ProcessError        SerializationError     │
        │  (CONFIG)             (PROCESS)           (PARSE)                │
        │       │                   │                                      │
        │  MissingBinaryError   LaunchFailure       SourceError            │
        │                       ProcessFailure      (SOURCE)               │
        │                       ProcessTimeout                             │
        │                                                                  │
        │  LedgerError (DATABASE)                                          │
        │       │                                                          │
        │  DuplicateRecordError   LedgerInitError                          │
        └─────────────────────────────────────────────────────────────────┘

Propagation:
    - Job level (ProcessError and anything raised by a run action): caught
      by the scheduler, recorded as a FAILED result, retried next run.
    - Source level (ConfigurationError, SourceError): logged, the source is
      skipped, other sources still run.
    - SerializationError: one unparseable item is skipped during discovery.
    - DuplicateRecordError: an engine defect; surfaced, never swallowed.
    - LedgerInitError: fatal to the whole run.

Examples:
    >>> err = ProcessFailure("yt-dlp", 1, stdout=[], stderr=["boom"])
    >>> err.exit_code
    1
    >>> "boom" in str(err)
    True
    >>> err.category
    <ErrorCategory.PROCESS: 'PROCESS'>
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"             # Missing config, invalid settings
    PROCESS = "PROCESS"           # External process launch/exit failures
    PARSE = "PARSE"               # Unparseable subprocess output
    SOURCE = "SOURCE"             # A job source could not produce jobs
    DATABASE = "DATABASE"         # Ledger errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        job_id: Unique id of the job that failed
        source_name: Name of the configured source
        source_type: Registry tag of the source
        binary: External binary involved
        metadata: Anything else worth logging
    """

    job_id: str | None = None
    source_name: str | None = None
    source_type: str | None = None
    binary: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return non-empty fields as a flat dict."""
        result: dict[str, Any] = {}
        for key in ("job_id", "source_name", "source_type", "binary"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.metadata)
        return result


class RunspineError(Exception):
    """Base exception for all runspine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    callers rarely need to pass them explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> RunspineError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SourceError("Failed").with_context(source_name="music")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        ctx = self.context.to_dict()
        if ctx:
            result["context"] = ctx
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigurationError(RunspineError):
    """Malformed or missing configuration. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingBinaryError(ConfigurationError):
    """A required external binary was not found by the capability probe."""

    def __init__(self, binary: str, message: str | None = None):
        super().__init__(
            message or f"Required binary '{binary}' is not available in PATH",
            context=ErrorContext(binary=binary),
        )
        self.binary = binary


# =============================================================================
# PROCESS ERRORS
# =============================================================================


class ProcessError(RunspineError):
    """Base for failures of an external process.

    Retryable: the scheduler never writes a completion record for a job that
    failed this way, so the next run tries again.
    """

    default_category = ErrorCategory.PROCESS
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        binary: str,
        stdout: Sequence[str] = (),
        stderr: Sequence[str] = (),
        cause: Exception | None = None,
    ):
        super().__init__(message, context=ErrorContext(binary=binary), cause=cause)
        self.binary = binary
        self.stdout = list(stdout)
        self.stderr = list(stderr)


class LaunchFailure(ProcessError):
    """The process could not be started (binary missing, permission denied)."""

    def __init__(self, binary: str, cause: Exception):
        super().__init__(
            f"Could not start process {binary}: {cause}",
            binary=binary,
            cause=cause,
        )


class ProcessFailure(ProcessError):
    """The process exited with a non-zero exit code.

    The message ends with the captured stderr so reports show why the
    process failed without digging into attributes.
    """

    def __init__(
        self,
        binary: str,
        exit_code: int,
        *,
        stdout: Sequence[str] = (),
        stderr: Sequence[str] = (),
    ):
        message = f"Process {binary} failed with exit code {exit_code}"
        if stderr:
            message += ": " + "\n".join(stderr)
        super().__init__(message, binary=binary, stdout=stdout, stderr=stderr)
        self.exit_code = exit_code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["exit_code"] = self.exit_code
        result["stderr"] = self.stderr
        return result


class ProcessTimeout(ProcessError):
    """The process exceeded its deadline and its process tree was killed."""

    def __init__(
        self,
        binary: str,
        timeout_seconds: float,
        *,
        stdout: Sequence[str] = (),
        stderr: Sequence[str] = (),
    ):
        super().__init__(
            f"Process {binary} timed out after {timeout_seconds}s",
            binary=binary,
            stdout=stdout,
            stderr=stderr,
        )
        self.timeout_seconds = timeout_seconds


# =============================================================================
# SOURCE / PARSE ERRORS
# =============================================================================


class SourceError(RunspineError):
    """A job source could not produce its jobs."""

    default_category = ErrorCategory.SOURCE
    default_retryable = False


class SerializationError(RunspineError):
    """Subprocess output could not be parsed into the expected shape."""

    default_category = ErrorCategory.PARSE
    default_retryable = False


# =============================================================================
# LEDGER ERRORS
# =============================================================================


class LedgerError(RunspineError):
    """Completion ledger error."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class DuplicateRecordError(LedgerError):
    """A completion record for this id already exists.

    Raised instead of overwriting. Seeing one means two workers completed the
    same job, which the dedup step is supposed to make impossible.
    """

    def __init__(self, record_id: str, cause: Exception | None = None):
        super().__init__(
            f"Completion record already exists for '{record_id}'",
            context=ErrorContext(job_id=record_id),
            cause=cause,
        )
        self.record_id = record_id


class LedgerInitError(LedgerError):
    """The ledger could not be opened or migrated."""


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RunspineError",
    "ConfigurationError",
    "MissingBinaryError",
    "ProcessError",
    "LaunchFailure",
    "ProcessFailure",
    "ProcessTimeout",
    "SourceError",
    "SerializationError",
    "LedgerError",
    "DuplicateRecordError",
    "LedgerInitError",
]
