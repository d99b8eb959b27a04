from __future__ import annotations


class DslError(Exception):
    """Base error for condition compilation and evaluation."""


class DslValidationError(DslError):
    """Raised when a condition fails to compile."""


class DslRuntimeError(DslError):
    """Raised when evaluating a compiled condition fails."""


class DslTimeoutError(DslRuntimeError):
    """Raised when a condition exhausts its evaluation budget."""


class ConfigurationMismatch(Exception):
    """Structural configuration error (missing category, mismatched tables)."""
