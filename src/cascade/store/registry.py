"""Trigger registry — SQLite persistence for pipelines, jobs, events and builds.

Key exports:
    TriggerRegistry — CRUD for the four entity tables. Single-row operations
        commit immediately, so each get/create/update/remove is atomic.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from cascade.errors import DuplicateBuildError, NotFoundError
from cascade.models import (
    Build,
    BuildStatus,
    Event,
    Job,
    JobState,
    Pipeline,
    WorkflowGraph,
)

logger = logging.getLogger(__name__)


class TriggerRegistry:
    """SQLite-backed entity store.

    Takes an already-open aiosqlite connection. Call `initialize()` to create
    tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Trigger registry tables initialized")

    # ── Pipelines ────────────────────────────────────────────────────────────

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Insert a pipeline, or replace the mutable fields of an existing one."""
        await self._db.execute(
            """
            INSERT INTO pipelines (id, name, scm_uri, scm_context, admins, chain_pr, workflow_graph)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name, scm_uri = excluded.scm_uri,
                scm_context = excluded.scm_context, admins = excluded.admins,
                chain_pr = excluded.chain_pr, workflow_graph = excluded.workflow_graph
            """,
            (
                pipeline.id,
                pipeline.name,
                pipeline.scm_uri,
                pipeline.scm_context,
                json.dumps(pipeline.admins),
                int(pipeline.chain_pr),
                pipeline.workflow_graph.model_dump_json(),
            ),
        )
        await self._db.commit()
        return pipeline

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        cursor = await self._db.execute("SELECT * FROM pipelines WHERE id = ?", (pipeline_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_pipeline(row)

    async def require_pipeline(self, pipeline_id: int) -> Pipeline:
        pipeline = await self.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("Pipeline", pipeline_id)
        return pipeline

    # ── Jobs ─────────────────────────────────────────────────────────────────

    async def save_job(self, job: Job) -> Job:
        """Insert a job or update the state of the job with the same name."""
        await self._db.execute(
            """
            INSERT INTO jobs (pipeline_id, name, state) VALUES (?, ?, ?)
            ON CONFLICT(pipeline_id, name) DO UPDATE SET state = excluded.state
            """,
            (job.pipeline_id, job.name, job.state.value),
        )
        await self._db.commit()
        saved = await self.get_job_by_name(job.pipeline_id, job.name)
        assert saved is not None
        return saved

    async def get_job(self, job_id: int) -> Job | None:
        cursor = await self._db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_job(row)

    async def get_job_by_name(self, pipeline_id: int, name: str) -> Job | None:
        cursor = await self._db.execute(
            "SELECT * FROM jobs WHERE pipeline_id = ? AND name = ?", (pipeline_id, name)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_job(row)

    async def require_job(self, job_id: int) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def require_job_by_name(self, pipeline_id: int, name: str) -> Job:
        job = await self.get_job_by_name(pipeline_id, name)
        if job is None:
            raise NotFoundError("Job", f"{pipeline_id}:{name}")
        return job

    async def list_jobs(self, pipeline_id: int) -> list[Job]:
        cursor = await self._db.execute(
            "SELECT * FROM jobs WHERE pipeline_id = ? ORDER BY id", (pipeline_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]

    # ── Events ───────────────────────────────────────────────────────────────

    async def create_event(self, event: Event) -> Event:
        """Insert a new event. Returns it with its assigned id.

        An event created without a graph snapshots its pipeline's current graph.
        """
        graph = event.workflow_graph
        if not graph.nodes:
            pipeline = await self.require_pipeline(event.pipeline_id)
            graph = pipeline.workflow_graph

        cursor = await self._db.execute(
            """
            INSERT INTO events (
                pipeline_id, type, sha, workflow_graph, start_from, cause_message,
                username, scm_context, parent_event_id, parent_build_id, parent_builds,
                pr_ref, base_branch, config_pipeline_sha, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.pipeline_id,
                event.type,
                event.sha,
                graph.model_dump_json(),
                event.start_from,
                event.cause_message,
                event.username,
                event.scm_context,
                event.parent_event_id,
                event.parent_build_id,
                json.dumps(event.parent_builds),
                event.pr_ref,
                event.base_branch,
                event.config_pipeline_sha,
                _dt_to_str(event.created_at),
            ),
        )
        await self._db.commit()
        return event.model_copy(update={"id": cursor.lastrowid, "workflow_graph": graph})

    async def get_event(self, event_id: int) -> Event | None:
        cursor = await self._db.execute("SELECT * FROM events WHERE id = ?", (event_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_event(row)

    async def require_event(self, event_id: int) -> Event:
        event = await self.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", event_id)
        return event

    # ── Builds ───────────────────────────────────────────────────────────────

    async def create_build(self, build: Build) -> Build:
        """Insert a new build. Returns it with its assigned id.

        Raises DuplicateBuildError if the event already has a build for the job.
        """
        try:
            cursor = await self._db.execute(
                """
                INSERT INTO builds (
                    job_id, event_id, sha, status, parent_build_id, parent_builds,
                    username, scm_context, config_pipeline_sha, pr_ref, base_branch,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    build.job_id,
                    build.event_id,
                    build.sha,
                    build.status.value,
                    json.dumps(build.parent_build_id),
                    json.dumps(build.parent_builds),
                    build.username,
                    build.scm_context,
                    build.config_pipeline_sha,
                    build.pr_ref,
                    build.base_branch,
                    _dt_to_str(build.created_at),
                    _dt_to_str(build.updated_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            raise DuplicateBuildError(build.event_id, build.job_id) from e
        await self._db.commit()
        return build.model_copy(update={"id": cursor.lastrowid})

    async def get_build(self, build_id: int) -> Build | None:
        cursor = await self._db.execute("SELECT * FROM builds WHERE id = ?", (build_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_build(row)

    async def require_build(self, build_id: int) -> Build:
        build = await self.get_build(build_id)
        if build is None:
            raise NotFoundError("Build", build_id)
        return build

    async def get_event_builds(self, event_id: int) -> list[Build]:
        cursor = await self._db.execute(
            "SELECT * FROM builds WHERE event_id = ? ORDER BY id", (event_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_build(r) for r in rows]

    async def get_build_for_job(self, event_id: int, job_id: int) -> Build | None:
        cursor = await self._db.execute(
            "SELECT * FROM builds WHERE event_id = ? AND job_id = ?", (event_id, job_id)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_build(row)

    async def get_latest_build(
        self, job_id: int, *, status: BuildStatus | None = None
    ) -> Build | None:
        """Most recently created build of a job, optionally filtered by status."""
        if status:
            cursor = await self._db.execute(
                "SELECT * FROM builds WHERE job_id = ? AND status = ? ORDER BY id DESC LIMIT 1",
                (job_id, status.value),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM builds WHERE job_id = ? ORDER BY id DESC LIMIT 1", (job_id,)
            )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_build(row)

    async def get_child_event_build(self, job_id: int, parent_event_id: int) -> Build | None:
        """Latest build of a job in an event opened on behalf of ``parent_event_id``."""
        cursor = await self._db.execute(
            """
            SELECT b.* FROM builds b JOIN events e ON b.event_id = e.id
            WHERE b.job_id = ? AND e.parent_event_id = ?
            ORDER BY b.id DESC LIMIT 1
            """,
            (job_id, parent_event_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_build(row)

    async def update_build(self, build: Build) -> Build:
        """Persist a build's mutable fields."""
        if build.id is None:
            msg = "Cannot update a build that was never created"
            raise ValueError(msg)
        updated = build.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        cursor = await self._db.execute(
            """
            UPDATE builds SET
                status = ?, parent_build_id = ?, parent_builds = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                updated.status.value,
                json.dumps(updated.parent_build_id),
                json.dumps(updated.parent_builds),
                _dt_to_str(updated.updated_at),
                updated.id,
            ),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Build", build.id)
        return updated

    async def remove_build(self, build_id: int) -> None:
        await self._db.execute("DELETE FROM builds WHERE id = ?", (build_id,))
        await self._db.commit()


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipelines (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    scm_uri TEXT NOT NULL DEFAULT '',
    scm_context TEXT NOT NULL DEFAULT '',
    admins TEXT NOT NULL DEFAULT '[]',
    chain_pr INTEGER NOT NULL DEFAULT 0,
    workflow_graph TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_id INTEGER NOT NULL REFERENCES pipelines(id),
    name TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'ENABLED',
    UNIQUE(pipeline_id, name)
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_id INTEGER NOT NULL REFERENCES pipelines(id),
    type TEXT NOT NULL DEFAULT 'pipeline',
    sha TEXT NOT NULL DEFAULT '',
    workflow_graph TEXT NOT NULL DEFAULT '{}',
    start_from TEXT,
    cause_message TEXT NOT NULL DEFAULT '',
    username TEXT,
    scm_context TEXT,
    parent_event_id INTEGER,
    parent_build_id INTEGER,
    parent_builds TEXT NOT NULL DEFAULT '{}',
    pr_ref TEXT NOT NULL DEFAULT '',
    base_branch TEXT,
    config_pipeline_sha TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_pipeline ON events(pipeline_id);

CREATE TABLE IF NOT EXISTS builds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id),
    event_id INTEGER NOT NULL REFERENCES events(id),
    sha TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'CREATED',
    parent_build_id TEXT NOT NULL DEFAULT 'null',
    parent_builds TEXT NOT NULL DEFAULT '{}',
    username TEXT,
    scm_context TEXT,
    config_pipeline_sha TEXT,
    pr_ref TEXT NOT NULL DEFAULT '',
    base_branch TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(event_id, job_id)
);

CREATE INDEX IF NOT EXISTS idx_builds_job_status ON builds(job_id, status);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _load_json(value: Any, default: Any) -> Any:
    if isinstance(value, str):
        loaded = json.loads(value)
        return default if loaded is None else loaded
    return default if value is None else value


def _row_to_pipeline(row: aiosqlite.Row) -> Pipeline:
    return Pipeline(
        id=row["id"],
        name=row["name"],
        scm_uri=row["scm_uri"],
        scm_context=row["scm_context"],
        admins=_load_json(row["admins"], []),
        chain_pr=bool(row["chain_pr"]),
        workflow_graph=WorkflowGraph.model_validate(_load_json(row["workflow_graph"], {})),
    )


def _row_to_job(row: aiosqlite.Row) -> Job:
    return Job(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        name=row["name"],
        state=JobState(row["state"]),
    )


def _row_to_event(row: aiosqlite.Row) -> Event:
    """Convert a database row to an Event model."""
    return Event(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        type=row["type"],
        sha=row["sha"],
        workflow_graph=WorkflowGraph.model_validate(_load_json(row["workflow_graph"], {})),
        start_from=row["start_from"],
        cause_message=row["cause_message"] or "",
        username=row["username"],
        scm_context=row["scm_context"],
        parent_event_id=row["parent_event_id"],
        parent_build_id=row["parent_build_id"],
        parent_builds=_load_json(row["parent_builds"], {}),
        pr_ref=row["pr_ref"] or "",
        base_branch=row["base_branch"],
        config_pipeline_sha=row["config_pipeline_sha"],
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
    )


def _row_to_build(row: aiosqlite.Row) -> Build:
    """Convert a database row to a Build model."""
    return Build(
        id=row["id"],
        job_id=row["job_id"],
        event_id=row["event_id"],
        sha=row["sha"],
        status=BuildStatus(row["status"]),
        parent_build_id=_load_json(row["parent_build_id"], None),
        parent_builds=_load_json(row["parent_builds"], {}),
        username=row["username"],
        scm_context=row["scm_context"],
        config_pipeline_sha=row["config_pipeline_sha"],
        pr_ref=row["pr_ref"] or "",
        base_branch=row["base_branch"],
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        updated_at=_str_to_dt(row["updated_at"]),
    )
