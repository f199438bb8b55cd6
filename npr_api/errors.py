"""
Exceptions raised by the NPR API library

Every failure is either logged and skipped (queue and cron paths) or surfaced
to the caller (interactive commands). Nothing is retried internally.
"""

from typing import Optional


class NprError(Exception):
    """Base class for all NPR API library errors"""

    def __init__(self, message: str, story_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.story_id = story_id

    def __str__(self):
        return self.message


class ConfigurationError(NprError):
    """A required setting or field mapping is missing or set to "unused"."""


class NotFoundError(NprError):
    """The API answered with a non-2xx status or an empty result set."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        story_id: Optional[str] = None,
    ):
        super().__init__(message, story_id=story_id)
        self.status_code = status_code


class DuplicateEntityError(NprError):
    """More than one local record matches an external NPR id.

    Never resolved automatically; the duplicates have to be removed by hand.
    """

    def __init__(
        self,
        message: str,
        entity_type: str = "node",
        external_id: Optional[str] = None,
        matches: int = 0,
    ):
        super().__init__(message, story_id=external_id)
        self.entity_type = entity_type
        self.external_id = external_id
        self.matches = matches


class TransientNetworkError(NprError):
    """The HTTP request itself failed (connection, DNS, timeout)."""
