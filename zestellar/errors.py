from __future__ import annotations


class StellarSolverError(RuntimeError):
    """Base class for every failure reported by the extraction/solve pipeline."""

    exit_code = 2


class ExtractionError(StellarSolverError):
    """The pixel buffer cannot be processed (zero-size, wrong shape, no finite samples)."""

    exit_code = 2


class IndexUnavailable(StellarSolverError):
    """No loaded index file can cover the requested scale and position priors."""

    exit_code = 3


class NoSolution(StellarSolverError):
    """The search budget was exhausted without an accepted match."""

    exit_code = 4


class Aborted(StellarSolverError):
    exit_code = 5


class IndexFormatError(ValueError):
    """Raised when an index file on disk is unreadable or malformed."""
