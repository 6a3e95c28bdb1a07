"""Core primitives shared by every runspine component."""

from runspine.core.errors import (
    ConfigurationError,
    DuplicateRecordError,
    ErrorCategory,
    ErrorContext,
    LaunchFailure,
    LedgerError,
    LedgerInitError,
    MissingBinaryError,
    ProcessError,
    ProcessFailure,
    ProcessTimeout,
    RunspineError,
    SerializationError,
    SourceError,
)
from runspine.core.result import Err, Ok, Result

__all__ = [
    "ConfigurationError",
    "DuplicateRecordError",
    "ErrorCategory",
    "ErrorContext",
    "LaunchFailure",
    "LedgerError",
    "LedgerInitError",
    "MissingBinaryError",
    "ProcessError",
    "ProcessFailure",
    "ProcessTimeout",
    "RunspineError",
    "SerializationError",
    "SourceError",
    "Err",
    "Ok",
    "Result",
]
