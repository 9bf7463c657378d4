"""Core data models for the trigger engine.

Key exports:
    Enums: JobState, BuildStatus
    Graph snapshot: WorkflowGraph, WorkflowNode, WorkflowEdge
    Entities: Pipeline, Job, Event, Build
    Status sets: FINISHED_STATUSES, FAILURE_STATUSES
    ParentBuilds — provenance map type (pipeline id → {event_id, jobs})
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

# {"<pipelineId>": {"event_id": int | None, "jobs": {"<jobName>": buildId | None}}}
ParentBuilds = dict[str, dict[str, Any]]


# ── Enums ────────────────────────────────────────────────────────────────────


class JobState(str, enum.Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"


class BuildStatus(str, enum.Enum):
    """Build lifecycle states."""

    CREATED = "CREATED"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"
    UNSTABLE = "UNSTABLE"
    COLLAPSED = "COLLAPSED"


# Statuses after which a join member no longer holds up its join.
FINISHED_STATUSES = frozenset(
    {
        BuildStatus.SUCCESS,
        BuildStatus.FAILURE,
        BuildStatus.ABORTED,
        BuildStatus.UNSTABLE,
        BuildStatus.COLLAPSED,
    }
)

# Statuses that make a join fail. UNSTABLE finishes without blocking.
FAILURE_STATUSES = frozenset({BuildStatus.FAILURE, BuildStatus.ABORTED, BuildStatus.COLLAPSED})


# ── Workflow Graph ───────────────────────────────────────────────────────────


class WorkflowNode(BaseModel):
    """A job in the graph. External nodes (``sd@123:job``) carry no id."""

    name: str
    id: int | None = None


class WorkflowEdge(BaseModel):
    src: str
    dest: str
    join: bool = False


class WorkflowGraph(BaseModel):
    """Snapshot of a pipeline's job DAG, frozen onto each event at creation."""

    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)

    def get_node(self, name: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.name == name:
                return node
        return None


# ── Entities ─────────────────────────────────────────────────────────────────


class Pipeline(BaseModel):
    id: int
    name: str = ""
    scm_uri: str = ""
    scm_context: str = "github:github.com"
    admins: list[str] = Field(default_factory=list)
    chain_pr: bool = False
    workflow_graph: WorkflowGraph = Field(default_factory=WorkflowGraph)

    @property
    def admin(self) -> str | None:
        """The admin whose credentials are used for SCM calls."""
        return self.admins[0] if self.admins else None


class Job(BaseModel):
    id: int | None = None  # DB auto-increment
    pipeline_id: int
    name: str
    state: JobState = JobState.ENABLED

    @property
    def is_enabled(self) -> bool:
        return self.state == JobState.ENABLED


class Event(BaseModel):
    """One execution of a pipeline's workflow."""

    id: int | None = None  # DB auto-increment
    pipeline_id: int
    type: str = "pipeline"
    sha: str = ""
    workflow_graph: WorkflowGraph = Field(default_factory=WorkflowGraph)

    start_from: str | None = None
    cause_message: str = ""
    username: str | None = None
    scm_context: str | None = None

    # Cross-pipeline and re-run lineage
    parent_event_id: int | None = None
    parent_build_id: int | None = None
    parent_builds: ParentBuilds = Field(default_factory=dict)

    pr_ref: str = ""
    base_branch: str | None = None
    config_pipeline_sha: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Build(BaseModel):
    id: int | None = None  # DB auto-increment
    job_id: int
    event_id: int
    sha: str = ""
    status: BuildStatus = BuildStatus.CREATED

    # A join target has one parent per member that has fed it so far
    parent_build_id: int | list[int] | None = None
    parent_builds: ParentBuilds = Field(default_factory=dict)

    username: str | None = None
    scm_context: str | None = None
    config_pipeline_sha: str | None = None
    pr_ref: str = ""
    base_branch: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime | None = None

    @property
    def parent_build_ids(self) -> list[int]:
        if self.parent_build_id is None:
            return []
        if isinstance(self.parent_build_id, list):
            return list(self.parent_build_id)
        return [self.parent_build_id]

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def has_failed(self) -> bool:
        return self.status in FAILURE_STATUSES
