"""
errors.py

Exception types shared by the portal and advisor packages.
"""

from typing import List, Optional


class PortalError(Exception):
    """Base class for every error the portal surfaces to a user."""


class ValidationError(PortalError, ValueError):
    """Input rejected before any remote call was made."""


class RemoteStoreError(PortalError, RuntimeError):
    """The data store or object storage failed to complete a request."""


class ExtractionError(PortalError, RuntimeError):
    """The language-model service failed or returned something unusable."""


class ReviewStateError(PortalError):
    """An operation was attempted in a review state that does not allow it."""


class CommitError(PortalError, RuntimeError):
    """
    A commit stopped part-way through.

    Subtasks written before the failure stay written; `created` lists the
    proposal ids that made it and `failed_id` names the one that did not.
    """

    def __init__(self, message: str, created: Optional[List[str]] = None, failed_id: Optional[str] = None):
        super().__init__(message)
        self.created = list(created or [])
        self.failed_id = failed_id


class NotFoundError(PortalError, LookupError):
    """The requested row does not exist."""
