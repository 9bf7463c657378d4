"""Job name conventions.

Jobs in other pipelines are referenced as ``sd@<pipelineId>:<jobName>``, optionally
prefixed with ``~`` when the edge is a trigger-on-change edge. Pull request jobs
are named ``PR-<number>:<jobName>``.

Key exports:
    JobRef — Parsed job reference (pipeline id, bare name, external flag)
    is_external_trigger, is_pr_job, trim_job_name, pr_job_name
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

EXTERNAL_TRIGGER_PATTERN = re.compile(r"^~?sd@(\d+):([\w-]+)$")
PR_JOB_PATTERN = re.compile(r"^PR-(\d+)(?::([\w-]+))?$")


def is_external_trigger(name: str) -> bool:
    """True for ``sd@123:job`` and ``~sd@123:job``."""
    return EXTERNAL_TRIGGER_PATTERN.match(name) is not None


def is_pr_job(name: str) -> bool:
    """True for names like ``PR-12:main``."""
    return PR_JOB_PATTERN.match(name) is not None


def trim_job_name(name: str) -> str:
    """Strip a ``PR-<n>:`` prefix so the name matches a workflow graph node."""
    match = PR_JOB_PATTERN.match(name)
    if match and match.group(2):
        return match.group(2)
    return name


def pr_job_name(pr_number: int | str, job_name: str) -> str:
    return f"PR-{pr_number}:{job_name}"


class JobRef(BaseModel):
    """A job addressed relative to the pipeline it was referenced from.

    ``is_external`` records whether the reference was written in the qualified
    form, not whether the pipeline differs; ``sd@<own id>:job`` is external.
    """

    model_config = ConfigDict(frozen=True)

    pipeline_id: int
    job_name: str
    is_external: bool = False

    @classmethod
    def parse(cls, name: str, pipeline_id: int) -> JobRef:
        """Resolve ``name`` against ``pipeline_id`` (used when the name is bare)."""
        match = EXTERNAL_TRIGGER_PATTERN.match(name)
        if match:
            return cls(pipeline_id=int(match.group(1)), job_name=match.group(2), is_external=True)
        return cls(pipeline_id=pipeline_id, job_name=name.lstrip("~"))

    @classmethod
    def external(cls, pipeline_id: int, job_name: str) -> JobRef:
        return cls(pipeline_id=pipeline_id, job_name=job_name, is_external=True)

    @property
    def qualified(self) -> str:
        """Always the ``sd@<pipelineId>:<jobName>`` form."""
        return f"sd@{self.pipeline_id}:{self.job_name}"

    def format(self) -> str:
        """Render the reference in the form it was written."""
        return self.qualified if self.is_external else self.job_name

    def same_job(self, other: JobRef) -> bool:
        return self.pipeline_id == other.pipeline_id and self.job_name == other.job_name
