"""Error taxonomy for the acquisition and forecasting pipeline."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for recoverable pipeline failures."""


class TransientFetchFailure(PipelineError):
    """An upstream request timed out, failed, or returned a malformed payload."""

    def __init__(self, dataset_id: str, reason: str, offset: Optional[int] = None) -> None:
        super().__init__(f"Fetching {dataset_id!r} failed: {reason}")
        self.dataset_id = dataset_id
        self.reason = reason
        self.offset = offset


class SchemaMismatch(PipelineError):
    """None of the candidate field names produced rows for a dataset."""

    def __init__(self, dataset_id: str, role: str, tried: tuple[str, ...]) -> None:
        super().__init__(
            f"No {role} field of {dataset_id!r} returned rows (tried {', '.join(tried) or 'nothing'})"
        )
        self.dataset_id = dataset_id
        self.role = role
        self.tried = tried


class InvalidSpatialIdentifier(ValueError):
    """A cell id or resolution supplied by the caller is not valid H3 input."""
