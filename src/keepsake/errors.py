"""Error taxonomy shared by the access model, lifecycle, router and collaborators."""

from __future__ import annotations

from collections.abc import Iterable


class KeepsakeError(Exception):
    """Base class for every error raised by keepsake."""


class AuthorizationError(KeepsakeError):
    """Presented credentials do not entitle the caller to the requested scope."""

    def __init__(self, scope: str, missing: Iterable[str] = ()) -> None:
        self.scope = scope
        self.missing = tuple(sorted(missing))
        detail = f" (missing: {', '.join(self.missing)})" if self.missing else ""
        super().__init__(f"Not authorized for scope '{scope}'{detail}")


class ProcessingError(KeepsakeError):
    """Candidate extraction failed; the journal entry itself stays persisted."""

    def __init__(self, entry_id: str, stage: str, reason: str = "") -> None:
        self.entry_id = entry_id
        self.stage = stage
        self.reason = reason
        msg = f"Candidate creation failed for entry {entry_id} at stage '{stage}'"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class RetrievalError(KeepsakeError):
    """Every tier search for a query failed."""

    def __init__(self, tiers: Iterable[str]) -> None:
        self.tiers = tuple(tiers)
        super().__init__(f"All tier searches failed: {', '.join(self.tiers)}")


class ConflictError(KeepsakeError):
    """A review transition was applied to a candidate not in awaiting_review.

    ``current_status`` is ``None`` when the candidate no longer exists
    (rejected candidates are deleted) or is mid-claim by another caller.
    """

    def __init__(self, candidate_id: str, current_status: str | None) -> None:
        self.candidate_id = candidate_id
        self.current_status = current_status
        shown = current_status or "absent"
        super().__init__(f"Candidate {candidate_id} is not awaiting review (status: {shown})")


class IntegrityFault(KeepsakeError):
    """A tier search returned a record that does not belong to the tier queried.

    Constructed and logged by the retrieval router; the record is dropped.
    """

    def __init__(self, record_id: str, expected: Iterable[str], actual: str) -> None:
        self.record_id = record_id
        self.expected = tuple(expected)
        self.actual = actual
        super().__init__(
            f"Record {record_id} carries tier '{actual}', expected one of {list(self.expected)}"
        )


class NotFoundError(KeepsakeError):
    """A referenced record does not exist."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class StoreError(KeepsakeError):
    """The tier store refused or failed a write."""


class EmbeddingProviderError(KeepsakeError):
    """Raised when the embedding provider is unavailable."""


class ExtractionError(KeepsakeError):
    """An extraction collaborator returned an unusable reply."""
