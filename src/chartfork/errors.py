"""Error taxonomy for chart preparation and patching.

Every lifecycle step wraps the underlying failure in one of these,
with a message naming the offending path and operation.
"""

from __future__ import annotations


class ChartforkError(Exception):
    """Base class for all chartfork errors."""

    pass


class ConfigurationError(ChartforkError):
    """Raised when package options are missing, conflicting or malformed."""

    pass


class NotPreparedError(ChartforkError):
    """Raised when an operation needs a working directory that does not exist."""

    pass


class MissingCRDsError(ChartforkError):
    """Raised when a CRD chart is prepared but the main chart has no CRDs."""

    pass


class SourceFetchError(ChartforkError):
    """Raised when cloning, downloading or extracting upstream content fails."""

    pass


class ChangesetError(ChartforkError):
    """Raised when generating or applying a changeset fails."""

    pass


class TransformError(ChartforkError):
    """Raised when copying, deleting or validating CRDs, or exporting a chart, fails."""

    pass


def wrap_error(e: ChartforkError, message: str) -> ChartforkError:
    """Prefix an error with the step that failed, keeping its kind."""
    return type(e)(f"{message}: {e}")
