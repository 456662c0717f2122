"""
Typed errors raised by the analysis stages.

Every error carries a human-readable message plus a ``details`` dict with the
offending values, so callers can report what went wrong without parsing text.
"""

from typing import Any, Dict, Optional


class AnalysisError(Exception):
    """Base class for all analysis errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidMatrixError(AnalysisError):
    """Count matrix is malformed, negative, or has too little data after filtering."""


class DesignDegenerateError(AnalysisError):
    """The two-group design cannot support a model fit."""


class EnrichmentInputError(AnalysisError):
    """Base class for invalid enrichment inputs."""


class EmptyForegroundError(EnrichmentInputError):
    """Foreground gene set is empty after intersecting with the universe."""


class DuplicateGeneError(EnrichmentInputError):
    """A ranked gene list contains the same gene id more than once."""


class InvalidRankingError(EnrichmentInputError):
    """A ranked gene list is unsorted or contains non-finite scores."""


class UnknownPathwayError(EnrichmentInputError):
    """Pathway id is not present in the membership catalog."""
