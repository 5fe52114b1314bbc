from typing import Optional


class LeadScoringError(Exception):
    """Base class for lead scoring failures."""


class NetworkTimeout(LeadScoringError):
    """An upstream request did not complete within the configured timeout."""


class ThrottledUpstream(LeadScoringError):
    """The upstream directory answered with a throttling status."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class IdentityMismatch(LeadScoringError):
    """A listing was found but it does not belong to the queried business."""


class NotFound(LeadScoringError):
    """No candidate listing was found."""


class ScoringCollaboratorFailure(LeadScoringError):
    """The scoring model failed or returned an unusable payload."""


class PersistenceConflict(LeadScoringError):
    """An optimistic update lost its race against another writer."""


class JobCancelled(LeadScoringError):
    """Processing stopped because cancellation was requested."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Cancelled by user"
        super().__init__(f"Cancelled: {self.reason}")
