"""Error taxonomy for the AumOS outcome learning core.

Store failures (SQLAlchemy exceptions) are never wrapped; they propagate to
the caller unmodified. Only domain conditions are raised from here.
"""

from __future__ import annotations


class OutcomeLearningError(Exception):
    """Base class for domain errors raised by this package."""


class NotFoundError(OutcomeLearningError):
    """A referenced entity, stimulus, outcome, or exploration record is absent.

    Attributes:
        resource: Kind of record that was looked up.
        resource_id: Identifier used for the lookup.
    """

    def __init__(self, resource: str, resource_id: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} '{resource_id}' not found")


class ConflictError(OutcomeLearningError):
    """A write-once record was asked to be written a second time."""


__all__ = ["ConflictError", "NotFoundError", "OutcomeLearningError"]
