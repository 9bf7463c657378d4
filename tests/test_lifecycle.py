"""Tests for BuildLifecycle — event/build creation, provenance merge, start and removal."""

from __future__ import annotations

from unittest.mock import AsyncMock

import aiosqlite
import pytest
import pytest_asyncio

from cascade.config import JobSeed, PipelineSeed
from cascade.engine.lifecycle import BuildLifecycle
from cascade.errors import NotFoundError
from cascade.models import Build, BuildStatus, Event, JobState, WorkflowGraph
from cascade.scm import ScmConfig
from cascade.store.registry import TriggerRegistry
from cascade.store.sync import sync_pipelines


# ── Fixtures ───────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test.db")) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def registry(db):
    reg = TriggerRegistry(db)
    await reg.initialize()
    await sync_pipelines(
        reg,
        [
            PipelineSeed(
                id=1,
                name="acme/app",
                scm_uri="github.com:555:main",
                admins=["alice"],
                jobs=[JobSeed(name="main"), JobSeed(name="lint", state=JobState.DISABLED)],
                workflow_graph=WorkflowGraph.model_validate(
                    {
                        "nodes": [{"name": "~commit"}, {"name": "main"}, {"name": "lint"}],
                        "edges": [
                            {"src": "~commit", "dest": "main"},
                            {"src": "main", "dest": "lint"},
                        ],
                    }
                ),
            ),
            PipelineSeed(
                id=123,
                name="acme/deploy",
                scm_uri="github.com:999:release",
                admins=["bob", "carol"],
                jobs=[JobSeed(name="A")],
                workflow_graph=WorkflowGraph.model_validate(
                    {"nodes": [{"name": "A"}], "edges": []}
                ),
            ),
            PipelineSeed(id=7, name="orphan", jobs=[JobSeed(name="x")]),
        ],
    )
    return reg


@pytest.fixture
def scm():
    mock = AsyncMock()
    mock.unseal_token.return_value = "sealed-token"
    mock.get_commit_sha.return_value = "deadbeef"
    return mock


@pytest.fixture
def started():
    calls = []

    async def start(build):
        calls.append(build)
        return build.model_copy(update={"status": BuildStatus.RUNNING})

    start.calls = calls
    return start


@pytest.fixture
def lifecycle(registry, scm, started):
    lc = BuildLifecycle(registry, scm)
    lc.set_start_callback(started)
    return lc


async def make_event(registry, pipeline_id=1, sha="abc123"):
    return await registry.create_event(Event(pipeline_id=pipeline_id, sha=sha, start_from="~commit"))


# ── Events ─────────────────────────────────────────────────────────────────────


class TestCreateEvent:
    async def test_uses_admin_credentials_and_head_commit(self, lifecycle, scm):
        pb = {"1": {"event_id": 4, "jobs": {"main": 40}}}
        event = await lifecycle.create_event(
            123, "A", "Triggered by sd@1:main", 40, parent_builds=pb, parent_event_id=4
        )

        scm.unseal_token.assert_awaited_once_with("bob", "github:github.com")
        scm.get_commit_sha.assert_awaited_once_with(
            ScmConfig(
                scm_context="github:github.com",
                scm_uri="github.com:999:release",
                token="sealed-token",
            )
        )
        assert event.id is not None
        assert event.pipeline_id == 123
        assert event.type == "pipeline"
        assert event.sha == "deadbeef"
        assert event.start_from == "A"
        assert event.username == "bob"
        assert event.cause_message == "Triggered by sd@1:main"
        assert event.parent_build_id == 40
        assert event.parent_event_id == 4
        assert event.parent_builds == pb
        assert [n.name for n in event.workflow_graph.nodes] == ["A"]

    async def test_pipeline_without_admin(self, lifecycle, scm):
        with pytest.raises(NotFoundError):
            await lifecycle.create_event(7, "x", "cause", None)
        scm.get_commit_sha.assert_not_awaited()

    async def test_unknown_pipeline(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.create_event(999, "x", "cause", None)

    async def test_scm_failure_propagates(self, lifecycle, scm):
        scm.get_commit_sha.side_effect = RuntimeError("scm down")
        with pytest.raises(RuntimeError):
            await lifecycle.create_event(123, "A", "cause", 1)


# ── Build Creation ─────────────────────────────────────────────────────────────


class TestCreateBuilds:
    async def test_internal_build_inherits_parent_build_and_starts(
        self, lifecycle, registry, started
    ):
        event = await make_event(registry)
        main = await registry.require_job_by_name(1, "main")
        parent = await registry.create_build(
            Build(job_id=99, event_id=event.id, sha="abc123", status=BuildStatus.SUCCESS)
        )

        build = await lifecycle.create_internal_build(
            1, "main", parent, username="alice", scm_context="github:github.com"
        )

        assert build.status == BuildStatus.RUNNING
        assert len(started.calls) == 1
        stored = await registry.get_build_for_job(event.id, main.id)
        assert stored.status == BuildStatus.QUEUED
        assert stored.sha == "abc123"
        assert stored.parent_build_id == parent.id
        assert stored.username == "alice"

    async def test_unstarted_build_is_created_only(self, lifecycle, registry, started):
        event = await make_event(registry)
        parent = await registry.create_build(Build(job_id=99, event_id=event.id))

        build = await lifecycle.create_internal_build(
            1, "main", parent, username="alice", scm_context=None, start=False
        )
        assert build.status == BuildStatus.CREATED
        assert started.calls == []

    async def test_disabled_job_creates_nothing(self, lifecycle, registry, started):
        event = await make_event(registry)
        parent = await registry.create_build(Build(job_id=99, event_id=event.id))

        result = await lifecycle.create_internal_build(
            1, "lint", parent, username="alice", scm_context=None
        )
        assert result is None
        assert len(await registry.get_event_builds(event.id)) == 1
        assert started.calls == []

    async def test_unknown_job(self, lifecycle, registry):
        event = await make_event(registry)
        parent = await registry.create_build(Build(job_id=99, event_id=event.id))
        with pytest.raises(NotFoundError):
            await lifecycle.create_internal_build(
                1, "nope", parent, username=None, scm_context=None
            )

    async def test_duplicate_create_merges_into_existing(self, lifecycle, registry):
        event = await make_event(registry)
        first_parent = await registry.create_build(Build(job_id=90, event_id=event.id))
        second_parent = await registry.create_build(Build(job_id=91, event_id=event.id))

        first = await lifecycle.create_internal_build(
            1,
            "main",
            first_parent,
            username=None,
            scm_context=None,
            parent_builds={"1": {"event_id": event.id, "jobs": {"A": first_parent.id, "B": None}}},
            start=False,
        )
        second = await lifecycle.create_internal_build(
            1,
            "main",
            second_parent,
            username=None,
            scm_context=None,
            parent_builds={"1": {"event_id": event.id, "jobs": {"B": second_parent.id}}},
            start=False,
        )

        assert second.id == first.id
        assert second.parent_build_ids == [second_parent.id, first_parent.id]
        assert second.parent_builds["1"]["jobs"] == {"A": first_parent.id, "B": second_parent.id}

    async def test_duplicate_started_create_leaves_existing_alone(
        self, lifecycle, registry, started
    ):
        event = await make_event(registry)
        first_parent = await registry.create_build(Build(job_id=90, event_id=event.id))
        second_parent = await registry.create_build(Build(job_id=91, event_id=event.id))

        first = await lifecycle.create_internal_build(
            1,
            "main",
            first_parent,
            username=None,
            scm_context=None,
            parent_builds={"1": {"event_id": event.id, "jobs": {"A": first_parent.id}}},
        )
        second = await lifecycle.create_internal_build(
            1,
            "main",
            second_parent,
            username=None,
            scm_context=None,
            parent_builds={"1": {"event_id": event.id, "jobs": {"B": second_parent.id}}},
        )

        assert second is None
        stored = await registry.require_build(first.id)
        assert stored.parent_build_ids == [first_parent.id]
        assert stored.parent_builds == {"1": {"event_id": event.id, "jobs": {"A": first_parent.id}}}
        assert [b.id for b in started.calls] == [first.id]

    async def test_external_build_opens_event_in_target_pipeline(
        self, lifecycle, registry, started
    ):
        pb = {"1": {"event_id": 3, "jobs": {"main": 30}}}
        build = await lifecycle.create_external_build(
            123,
            "A",
            parent_build_id=30,
            parent_builds=pb,
            cause_message="Triggered by sd@1:main",
            parent_event_id=3,
        )

        event = await registry.require_event(build.event_id)
        assert event.pipeline_id == 123
        assert event.start_from == "A"
        assert event.parent_event_id == 3
        job = await registry.require_job_by_name(123, "A")
        stored = await registry.require_build(build.id)
        assert stored.job_id == job.id
        assert stored.sha == "deadbeef"
        assert stored.parent_build_id == 30
        assert stored.parent_builds == pb
        assert len(started.calls) == 1

    async def test_start_build_requires_start_job(self, lifecycle, registry):
        event = await registry.create_event(Event(pipeline_id=1))
        with pytest.raises(ValueError):
            await lifecycle.create_start_build(event)


# ── Mutation ───────────────────────────────────────────────────────────────────


class TestMutation:
    async def test_update_with_provenance(self, lifecycle, registry):
        existing = await registry.create_build(
            Build(
                job_id=1,
                event_id=1,
                parent_build_id=5,
                parent_builds={"1": {"event_id": 1, "jobs": {"A": 5, "B": None}}},
            )
        )
        updated = await lifecycle.update_with_provenance(
            existing, {"1": {"event_id": None, "jobs": {"B": 6}}}, 6
        )
        assert updated.parent_build_ids == [6, 5]
        assert updated.parent_builds == {"1": {"event_id": 1, "jobs": {"A": 5, "B": 6}}}
        assert (await registry.get_build(existing.id)).parent_build_ids == [6, 5]

    async def test_update_does_not_repeat_parents(self, lifecycle, registry):
        existing = await registry.create_build(Build(job_id=1, event_id=1, parent_build_id=[6, 5]))
        updated = await lifecycle.update_with_provenance(existing, {}, 6)
        assert updated.parent_build_ids == [6, 5]

    async def test_promote_and_start(self, lifecycle, registry, started):
        build = await registry.create_build(Build(job_id=1, event_id=1))
        result = await lifecycle.promote_and_start(build)

        assert result.status == BuildStatus.RUNNING
        assert (await registry.get_build(build.id)).status == BuildStatus.QUEUED
        assert [b.id for b in started.calls] == [build.id]

    async def test_start_without_callback_leaves_build_queued(self, registry, scm):
        lc = BuildLifecycle(registry, scm)
        build = await registry.create_build(Build(job_id=1, event_id=1))
        result = await lc.promote_and_start(build)
        assert result.status == BuildStatus.QUEUED

    async def test_remove_speculative_build(self, lifecycle, registry):
        build = await registry.create_build(Build(job_id=1, event_id=1))
        await lifecycle.remove_speculative_build(build)
        assert await registry.get_build(build.id) is None

    async def test_remove_nothing(self, lifecycle):
        await lifecycle.remove_speculative_build(None)
