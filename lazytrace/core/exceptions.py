"""
lazytrace exception hierarchy.

All lazytrace exceptions inherit from LazyTraceException for easy catching.

Construction-time errors (ShapeError, UnsupportedTypeError, ConsistencyError)
are raised synchronously at the call site. ExecutionError is attached to an
ExecutionHandle and only raised when the caller observes the result.
"""
from typing import Optional


class LazyTraceException(Exception):
    """Base exception for all lazytrace errors."""

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self):
        base = f"{self.__class__.__name__}: {self.message}"
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base} (context: {ctx_str})"
        return base


class ShapeError(LazyTraceException):
    """Incompatible operand shapes, element types or op parameters."""
    pass


class UnsupportedTypeError(LazyTraceException):
    """Element type not recognized by the type-mapping tables."""
    pass


class ExecutionError(LazyTraceException):
    """Backend failure during lowering or device execution."""
    pass


class ConsistencyError(LazyTraceException):
    """Mismatched counts, devices or buffer sizes passed to an API."""
    pass


class TraceStateError(LazyTraceException):
    """Illegal trace lifecycle transition."""
    pass


class ConfigurationError(LazyTraceException):
    """Invalid configuration."""
    pass
