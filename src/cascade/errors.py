"""Exceptions raised by the trigger engine.

A disabled job is not an error: creating its build yields ``None``.
"""

from __future__ import annotations


class CascadeError(Exception):
    """Base exception for trigger engine failures."""


class NotFoundError(CascadeError):
    """A referenced pipeline, job, event or build does not exist."""

    def __init__(self, resource: str, key: object):
        super().__init__(f"{resource} {key!r} not found")
        self.resource = resource
        self.key = key


class MalformedGraphError(CascadeError):
    """A job name is not part of the workflow graph it was resolved against."""


class DuplicateBuildError(CascadeError):
    """A build already exists for this job in this event."""

    def __init__(self, event_id: int, job_id: int):
        super().__init__(f"Build for job {job_id} already exists in event {event_id}")
        self.event_id = event_id
        self.job_id = job_id


class ScmError(CascadeError):
    """The source-control provider could not resolve a commit or credential."""
