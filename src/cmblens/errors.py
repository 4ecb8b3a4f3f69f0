"""
Exceptions raised by cmblens.

Argument and shape problems are reported with the builtin ValueError /
TypeError; the classes here cover the conditions callers may want to catch
specifically.
"""

from __future__ import annotations


class CMBLensError(Exception):
    """Base class for cmblens-specific errors."""


class UnsupportedOperation(CMBLensError, NotImplementedError):
    """Raised when an operator is asked for a quantity it cannot compute."""


class BackendUnavailable(CMBLensError, RuntimeError):
    """Raised when the requested storage backend lacks a required capability."""
