"""
Error kinds raised by the analysis stages.

Structural violations (duplicate keys, unrepairable geometry) are fatal.
Sparsity conditions (missing values, isolated units) only raise when the
caller-chosen policy forbids them. Every error carries the offending
identifiers so that the failure can be traced back to the data.
"""

from typing import Any, Iterable


class AnalysisError(Exception):
    """Base class for pipeline stage failures."""

    def __init__(self, message: str, keys: Iterable[Any] = ()):
        self.keys = list(keys)
        if self.keys:
            preview = ", ".join(str(k) for k in self.keys[:20])
            if len(self.keys) > 20:
                preview += f", ... ({len(self.keys)} total)"
            message = f"{message}: {preview}"
        super().__init__(message)


class KeyCollisionError(AnalysisError):
    """A table has duplicate values for the join key within a partition."""


class UnfillableGroupError(AnalysisError):
    """Missing values remain and no fallback in the chain can resolve them."""


class InvalidGeometryError(AnalysisError):
    """A polygon is null, empty, or could not be repaired into a polygon."""


class InsufficientDataError(AnalysisError):
    """Too few connected units or observations remain for a statistic."""


class IsolatedUnitError(AnalysisError):
    """Units without neighbors exist and the zero policy forbids them."""
