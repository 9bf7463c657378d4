"""Trigger orchestrator — decides what happens downstream of a finished build.

For every successor of the finished job, one of four paths runs:

    no join, internal      create and start the successor build
    no join, external      open an event in the other pipeline, or, when the
                           finished build already carries provenance for that
                           pipeline, settle the cross-pipeline join it feeds
    join (internal/external)
                           create or merge into the join target, then start it
                           once every member finished, or remove it if any failed

Successors are processed concurrently. Sibling completions may race; the
registry's (event, job) uniqueness plus the per-job lock below keep a join
target from being created or started twice in one process, and every
evaluation re-reads member statuses so the last completion settles the join.

Key exports:
    TriggerOrchestrator — trigger_event(), trigger_next_jobs()
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass

from cascade.engine.lifecycle import BuildLifecycle
from cascade.errors import MalformedGraphError, NotFoundError
from cascade.models import Build, BuildStatus, Event, Job, ParentBuilds, Pipeline
from cascade.naming import JobRef
from cascade.store.registry import TriggerRegistry
from cascade.workflow.graph import job_id_for, join_map, node_for, parent_source_of
from cascade.workflow.joins import get_join_status
from cascade.workflow.provenance import (
    JoinProvenance,
    build_provenance_skeleton,
    merge_provenance,
    recorded_build_id,
    recorded_event_id,
)
from cascade.workflow.rerun import remove_downstream_builds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerContext:
    """Everything known about the build that just finished."""

    pipeline: Pipeline
    job: Job
    build: Build
    event: Event
    username: str | None
    scm_context: str | None
    external_join: bool

    @property
    def pipeline_id(self) -> int:
        return self.pipeline.id

    @property
    def current_ref(self) -> JobRef:
        return JobRef(pipeline_id=self.pipeline.id, job_name=self.job.name)

    @property
    def cause_message(self) -> str:
        return f"Triggered by {self.current_ref.qualified}"


class TriggerOrchestrator:
    """Drives downstream builds when a build finishes.

    Usage:
        lifecycle = BuildLifecycle(registry, scm)
        lifecycle.set_start_callback(executor.start)
        orchestrator = TriggerOrchestrator(registry, lifecycle)
        await orchestrator.trigger_next_jobs(pipeline, job, build, username, scm_context)
    """

    def __init__(self, registry: TriggerRegistry, lifecycle: BuildLifecycle):
        self._registry = registry
        self._lifecycle = lifecycle

        # One lock per downstream job, serializing create/merge/settle of its build.
        # Entries disappear once no coroutine holds or waits on the lock.
        self._job_locks: weakref.WeakValueDictionary[tuple[int, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, ref: JobRef) -> asyncio.Lock:
        key = (ref.pipeline_id, ref.job_name)
        lock = self._job_locks.get(key)
        if lock is None:
            lock = self._job_locks[key] = asyncio.Lock()
        return lock

    # ── Exposed operations ───────────────────────────────────────────────────

    async def trigger_event(
        self,
        pipeline_id: int,
        start_from: str,
        cause_message: str,
        parent_build_id: int | None,
        *,
        parent_builds: ParentBuilds | None = None,
        parent_event_id: int | None = None,
    ) -> Event:
        """Open an event in ``pipeline_id`` and start its first build."""
        event = await self._lifecycle.create_event(
            pipeline_id,
            start_from,
            cause_message,
            parent_build_id,
            parent_builds=parent_builds,
            parent_event_id=parent_event_id,
        )
        await self._lifecycle.create_start_build(
            event, parent_build_id=parent_build_id, parent_builds=parent_builds
        )
        return event

    async def trigger_next_jobs(
        self,
        pipeline: Pipeline,
        job: Job,
        build: Build,
        username: str | None,
        scm_context: str | None,
        external_join: bool = True,
    ) -> list[Build | None]:
        """Create, update, start or remove the builds downstream of ``build``.

        Returns one entry per successor job, in graph order. A successor that
        fails does not stop its siblings; once all have run, the first failure
        is re-raised.
        """
        event = await self._registry.require_event(build.event_id)
        ctx = TriggerContext(
            pipeline=pipeline,
            job=job,
            build=build,
            event=event,
            username=username,
            scm_context=scm_context,
            external_join=external_join,
        )
        joins = join_map(event.workflow_graph, job.name, chain_pr=pipeline.chain_pr)
        if not joins:
            logger.debug("Job '%s' has no successors", job.name)
            return []

        names = list(joins)
        results = await asyncio.gather(
            *(self._trigger_next(ctx, name, joins[name]) for name in names),
            return_exceptions=True,
        )

        first_error: BaseException | None = None
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Triggering '%s' after build %s failed",
                    name,
                    build.id,
                    exc_info=result,
                )
                first_error = first_error or result
        if first_error is not None:
            raise first_error
        return list(results)  # type: ignore[arg-type]

    # ── Per-successor dispatch ───────────────────────────────────────────────

    async def _trigger_next(
        self, ctx: TriggerContext, next_job_name: str, join_names: list[str]
    ) -> Build | None:
        # Raises MalformedGraphError when the snapshot has no node for the successor
        node_for(ctx.event.workflow_graph, next_job_name)
        next_ref = JobRef.parse(next_job_name, ctx.pipeline_id)

        if not ctx.external_join:
            join_names = [
                n for n in join_names if JobRef.parse(n, ctx.pipeline_id).pipeline_id == ctx.pipeline_id
            ]

        current = ctx.current_ref
        is_member = current.job_name in join_names or current.qualified in join_names
        if not join_names or not is_member:
            return await self._trigger_without_join(ctx, next_job_name, next_ref, join_names)
        return await self._trigger_join(ctx, next_job_name, next_ref, join_names)

    async def _trigger_without_join(
        self,
        ctx: TriggerContext,
        next_job_name: str,
        next_ref: JobRef,
        join_names: list[str],
    ) -> Build | None:
        # A failed build still reports to a cross-pipeline join so it can be discarded
        if next_ref.is_external and ctx.external_join and str(next_ref.pipeline_id) in (
            ctx.build.parent_builds or {}
        ):
            return await self._trigger_remote_join(ctx, next_ref)

        if ctx.build.has_failed:
            logger.info(
                "Build %s ended %s, not triggering '%s'",
                ctx.build.id,
                ctx.build.status.value,
                next_job_name,
            )
            return None

        parent_builds = JoinProvenance.for_build(
            ctx.build,
            pipeline_id=ctx.pipeline_id,
            job_name=ctx.job.name,
            join_member_names=join_names,
        ).merged

        if not next_ref.is_external:
            return await self._lifecycle.create_internal_build(
                ctx.pipeline_id,
                next_job_name,
                ctx.build,
                username=ctx.username,
                scm_context=ctx.scm_context,
                parent_builds=parent_builds,
                base_branch=ctx.event.base_branch,
            )

        # A re-run keeps pointing at the event it re-runs
        parent_event_id = None if ctx.event.parent_event_id else ctx.event.id
        return await self._lifecycle.create_external_build(
            next_ref.pipeline_id,
            next_ref.job_name,
            parent_build_id=ctx.build.id,  # type: ignore[arg-type]
            parent_builds=parent_builds,
            cause_message=ctx.cause_message,
            parent_event_id=parent_event_id,
        )

    async def _trigger_join(
        self,
        ctx: TriggerContext,
        next_job_name: str,
        next_ref: JobRef,
        join_names: list[str],
    ) -> Build | None:
        provenance = JoinProvenance.for_build(
            ctx.build,
            pipeline_id=ctx.pipeline_id,
            job_name=ctx.job.name,
            join_member_names=join_names,
        )

        async with self._lock_for(next_ref):
            visible = await self._visible_builds(ctx.event)
            finished = self._finished_members(ctx, join_names, visible)

            if next_ref.is_external:
                next_build = await self._external_join_build(ctx, next_ref)
            else:
                job_id = job_id_for(ctx.event.workflow_graph, next_job_name)
                next_build = next((b for b in visible if b.job_id == job_id), None)

            if next_build is None:
                parent_builds = merge_provenance(
                    provenance.join_skeleton, finished, provenance.incoming, provenance.current
                )
                if next_ref.is_external:
                    new_build = await self._lifecycle.create_external_build(
                        next_ref.pipeline_id,
                        next_ref.job_name,
                        parent_build_id=ctx.build.id,  # type: ignore[arg-type]
                        parent_builds=parent_builds,
                        cause_message=ctx.cause_message,
                        parent_event_id=ctx.event.id,
                        start=False,
                    )
                else:
                    new_build = await self._lifecycle.create_internal_build(
                        ctx.pipeline_id,
                        next_job_name,
                        ctx.build,
                        username=ctx.username,
                        scm_context=ctx.scm_context,
                        parent_builds=parent_builds,
                        base_branch=ctx.event.base_branch,
                        start=False,
                    )
            else:
                new_build = await self._lifecycle.update_with_provenance(
                    next_build,
                    merge_provenance(finished, provenance.merged_into(next_build.parent_builds)),
                    ctx.build.id,  # type: ignore[arg-type]
                )

            if new_build is None:
                return None
            return await self._settle_join(new_build, join_names, ctx.pipeline_id)

    async def _trigger_remote_join(self, ctx: TriggerContext, next_ref: JobRef) -> Build | None:
        """Feed a join in ``next_ref``'s pipeline that this build's lineage started.

        The finished build descends from an event in that pipeline, so the join
        target lives in that event rather than in a new one.
        """
        remote_event_id = recorded_event_id(ctx.build.parent_builds, next_ref.pipeline_id)
        if remote_event_id is None:
            raise NotFoundError("Event", f"provenance of build {ctx.build.id} for {next_ref.pipeline_id}")
        remote_event = await self._registry.require_event(remote_event_id)
        remote_pipeline = await self._registry.require_pipeline(remote_event.pipeline_id)
        remote_graph = remote_event.workflow_graph

        current_info = build_provenance_skeleton(
            ctx.pipeline_id, ctx.job.name, build_id=ctx.build.id, event_id=ctx.event.id
        )

        async with self._lock_for(next_ref):
            job_id = job_id_for(remote_graph, next_ref.job_name)
            remote_builds = await self._registry.get_event_builds(remote_event.id)  # type: ignore[arg-type]
            next_build = next((b for b in remote_builds if b.job_id == job_id), None)

            if next_build is None:
                parent_build = await self._remote_parent_build(ctx, next_ref)
                new_build = await self._lifecycle.create_internal_build(
                    remote_event.pipeline_id,
                    next_ref.job_name,
                    parent_build,
                    username=ctx.username,
                    scm_context=ctx.scm_context,
                    parent_builds=current_info,
                    base_branch=ctx.event.base_branch,
                    parent_build_id=ctx.build.id,
                    start=False,
                )
            else:
                new_build = await self._lifecycle.update_with_provenance(
                    next_build, current_info, ctx.build.id  # type: ignore[arg-type]
                )
            if new_build is None:
                return None

            remote_joins = join_map(
                remote_graph, ctx.current_ref.qualified, chain_pr=remote_pipeline.chain_pr
            )
            if next_ref.job_name not in remote_joins:
                msg = (
                    f"'{next_ref.job_name}' is not downstream of '{ctx.current_ref.qualified}' "
                    f"in pipeline {remote_pipeline.id}"
                )
                raise MalformedGraphError(msg)
            return await self._settle_join(
                new_build, remote_joins[next_ref.job_name], next_ref.pipeline_id
            )

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _settle_join(
        self, build: Build, join_names: list[str], pipeline_id: int
    ) -> Build | None:
        """Start or remove a join target once all members have finished."""
        if build.status != BuildStatus.CREATED:
            logger.info("Build %s already %s, leaving it alone", build.id, build.status.value)
            return None

        status = await get_join_status(
            build.parent_builds, join_names, pipeline_id, self._registry.require_build
        )
        if not status.done:
            logger.info("Build %s waiting on join %s", build.id, join_names)
            return None
        if status.has_failure:
            await self._lifecycle.remove_speculative_build(build)
            return None
        return await self._lifecycle.promote_and_start(build)

    async def _visible_builds(self, event: Event) -> list[Build]:
        """Builds of ``event``, plus the parent's upstream builds for a re-run."""
        builds = await self._registry.get_event_builds(event.id)  # type: ignore[arg-type]
        if not event.parent_event_id or not event.start_from:
            return builds

        parent = await self._registry.require_event(event.parent_event_id)
        if parent.pipeline_id != event.pipeline_id:
            # Cross-pipeline lineage, not a re-run of this workflow
            return builds

        parent_builds = await self._registry.get_event_builds(parent.id)  # type: ignore[arg-type]
        return builds + remove_downstream_builds(parent, event.start_from, parent_builds)

    def _finished_members(
        self, ctx: TriggerContext, join_names: list[str], visible: list[Build]
    ) -> ParentBuilds:
        """Provenance entries for internal join members that already have a build."""
        found: ParentBuilds = {}
        graph = ctx.event.workflow_graph
        for name in join_names:
            ref = JobRef.parse(name, ctx.pipeline_id)
            if ref.pipeline_id != ctx.pipeline_id:
                continue
            node = node_for(graph, ref.job_name)
            build = next((b for b in visible if b.job_id == node.id), None)
            if build is not None:
                found = merge_provenance(
                    found,
                    build_provenance_skeleton(
                        ctx.pipeline_id, ref.job_name, build_id=build.id, event_id=build.event_id
                    ),
                )
        return found

    async def _external_join_build(self, ctx: TriggerContext, ref: JobRef) -> Build | None:
        """The join target in another pipeline that a sibling already opened.

        A sibling in this event may have started it already, so its event is
        looked up first. Otherwise the latest unstarted build of the job is used.
        """
        job = await self._registry.require_job_by_name(ref.pipeline_id, ref.job_name)
        sibling_build = await self._registry.get_child_event_build(job.id, ctx.event.id)  # type: ignore[arg-type]
        if sibling_build is not None:
            return sibling_build
        return await self._registry.get_latest_build(job.id, status=BuildStatus.CREATED)  # type: ignore[arg-type]

    async def _remote_parent_build(self, ctx: TriggerContext, next_ref: JobRef) -> Build:
        """The build in ``next_ref``'s pipeline that led to the finished job."""
        source = parent_source_of(ctx.event.workflow_graph, ctx.job.name)
        source_ref = JobRef.parse(source, ctx.pipeline_id)
        build_id = recorded_build_id(
            ctx.build.parent_builds, JobRef(pipeline_id=next_ref.pipeline_id, job_name=source_ref.job_name)
        )
        if build_id is None:
            raise NotFoundError("Build", f"{next_ref.pipeline_id}:{source_ref.job_name}")
        return await self._registry.require_build(build_id)
