# picrust2_tools/errors.py
"""
Exception types raised by PICRUSt2 Tools.

InvalidInput and AmbiguousReference are raised before any computation starts.
MethodFailure wraps errors coming out of a statistical backend.
AnnotationLookupFailure is raised by the KEGG client and is turned into
warnings by the annotation join, so it never aborts a batch.
"""


class Picrust2ToolsError(Exception):
    """Base class for all package errors."""


class InvalidInput(Picrust2ToolsError, ValueError):
    """Malformed or empty tables, mismatched sample IDs, unknown options."""


class AmbiguousReference(InvalidInput):
    """A multi-level group was given to a contrast method without a reference level."""


class MethodFailure(Picrust2ToolsError, RuntimeError):
    """A differential abundance backend failed (non-convergence, singular design)."""

    def __init__(self, method, message):
        self.method = method
        super().__init__(f"{method}: {message}")


class AnnotationLookupFailure(Picrust2ToolsError):
    """Remote pathway lookup failed (network error or malformed response)."""
