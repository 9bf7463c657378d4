"""Build lifecycle — create, merge into, remove and start single builds.

Key exports:
    BuildLifecycle — Build and event creation on top of the registry
    StartBuildCallback — Protocol for handing a queued build to the executor
"""

from __future__ import annotations

import logging
from typing import Protocol

from cascade.errors import DuplicateBuildError, NotFoundError
from cascade.models import Build, BuildStatus, Event, Job, ParentBuilds
from cascade.scm import ScmConfig, ScmProvider
from cascade.store.registry import TriggerRegistry
from cascade.workflow.provenance import merge_provenance

logger = logging.getLogger(__name__)


# ── Callback Protocols ───────────────────────────────────────────────────────


class StartBuildCallback(Protocol):
    """Called when a build is QUEUED and should begin executing."""

    async def __call__(self, build: Build) -> Build | None:
        """Start the build. Returns the updated build, or None to keep the queued one."""
        ...


# ── Build Lifecycle ──────────────────────────────────────────────────────────


class BuildLifecycle:
    """Single-build operations used by the trigger orchestrator.

    Cross-pipeline builds are always created inside a new event of the target
    pipeline, so the target gets its own workflow graph snapshot.
    """

    def __init__(self, registry: TriggerRegistry, scm: ScmProvider):
        self._registry = registry
        self._scm = scm
        self._start_build: StartBuildCallback | None = None

    def set_start_callback(self, callback: StartBuildCallback) -> None:
        """Set the callback that hands queued builds to the executor."""
        self._start_build = callback

    # ── Events ───────────────────────────────────────────────────────────────

    async def create_event(
        self,
        pipeline_id: int,
        start_from: str,
        cause_message: str,
        parent_build_id: int | None,
        *,
        parent_builds: ParentBuilds | None = None,
        parent_event_id: int | None = None,
    ) -> Event:
        """Open a new event in ``pipeline_id`` at the pipeline's current commit."""
        pipeline = await self._registry.require_pipeline(pipeline_id)
        admin = pipeline.admin
        if admin is None:
            raise NotFoundError("Pipeline admin", pipeline_id)

        token = await self._scm.unseal_token(admin, pipeline.scm_context)
        sha = await self._scm.get_commit_sha(
            ScmConfig(scm_context=pipeline.scm_context, scm_uri=pipeline.scm_uri, token=token)
        )

        event = await self._registry.create_event(
            Event(
                pipeline_id=pipeline_id,
                type="pipeline",
                sha=sha,
                start_from=start_from,
                cause_message=cause_message,
                username=admin,
                scm_context=pipeline.scm_context,
                parent_build_id=parent_build_id,
                parent_builds=parent_builds or {},
                parent_event_id=parent_event_id,
            )
        )
        logger.info(
            "Created event %s in pipeline %s from '%s' (%s)",
            event.id,
            pipeline_id,
            start_from,
            cause_message,
        )
        return event

    async def create_start_build(
        self,
        event: Event,
        *,
        parent_build_id: int | None = None,
        parent_builds: ParentBuilds | None = None,
        start: bool = True,
    ) -> Build | None:
        """Create the build for the job an event starts from."""
        if not event.start_from:
            msg = f"Event {event.id} has no start job"
            raise ValueError(msg)
        job = await self._registry.require_job_by_name(event.pipeline_id, event.start_from)
        return await self._create(
            job,
            event,
            sha=event.sha,
            parent_build_id=parent_build_id,
            parent_builds=parent_builds,
            username=event.username,
            scm_context=event.scm_context,
            base_branch=event.base_branch,
            start=start,
        )

    # ── Build Creation ───────────────────────────────────────────────────────

    async def create_internal_build(
        self,
        pipeline_id: int,
        job_name: str,
        build: Build,
        *,
        username: str | None,
        scm_context: str | None,
        parent_builds: ParentBuilds | None = None,
        start: bool = True,
        base_branch: str | None = None,
        parent_build_id: int | list[int] | None = None,
    ) -> Build | None:
        """Create a build of ``job_name`` in the event of ``build``.

        The new build inherits the commit and PR ref of that event. Returns None
        when the job is disabled, or when ``start`` is set and the event already
        has a build of the job. An unstarted duplicate is merged into the
        existing build instead.
        """
        event = await self._registry.require_event(build.event_id)
        job = await self._registry.require_job_by_name(pipeline_id, job_name)
        return await self._create(
            job,
            event,
            sha=build.sha,
            parent_build_id=parent_build_id if parent_build_id is not None else build.id,
            parent_builds=parent_builds,
            username=username,
            scm_context=scm_context,
            base_branch=base_branch,
            start=start,
        )

    async def create_external_build(
        self,
        pipeline_id: int,
        job_name: str,
        *,
        parent_build_id: int,
        parent_builds: ParentBuilds | None,
        cause_message: str,
        parent_event_id: int | None = None,
        start: bool = True,
    ) -> Build | None:
        """Create a build of ``job_name`` in a new event of another pipeline."""
        event = await self.create_event(
            pipeline_id,
            job_name,
            cause_message,
            parent_build_id,
            parent_builds=parent_builds,
            parent_event_id=parent_event_id,
        )
        return await self.create_start_build(
            event,
            parent_build_id=parent_build_id,
            parent_builds=parent_builds,
            start=start,
        )

    async def _create(
        self,
        job: Job,
        event: Event,
        *,
        sha: str,
        parent_build_id: int | list[int] | None,
        parent_builds: ParentBuilds | None,
        username: str | None,
        scm_context: str | None,
        base_branch: str | None,
        start: bool,
    ) -> Build | None:
        if not job.is_enabled:
            logger.warning(
                "Job '%s' (pipeline %s) is disabled, no build created", job.name, job.pipeline_id
            )
            return None

        pending = Build(
            job_id=job.id,  # type: ignore[arg-type]
            event_id=event.id,  # type: ignore[arg-type]
            sha=sha,
            status=BuildStatus.QUEUED if start else BuildStatus.CREATED,
            parent_build_id=parent_build_id,
            parent_builds=parent_builds or {},
            username=username,
            scm_context=scm_context,
            config_pipeline_sha=event.config_pipeline_sha,
            pr_ref=event.pr_ref,
            base_branch=base_branch,
        )
        try:
            created = await self._registry.create_build(pending)
        except DuplicateBuildError:
            if start:
                # An OR-trigger already queued this job; that run stands as is
                logger.info(
                    "Build for job '%s' already queued in event %s, not triggering again",
                    job.name,
                    event.id,
                )
                return None
            # A join sibling created it first; fold our provenance into theirs
            existing = await self._registry.get_build_for_job(pending.event_id, pending.job_id)
            if existing is None:
                raise
            logger.info(
                "Build for job '%s' already exists in event %s, merging instead",
                job.name,
                event.id,
            )
            return await self.update_with_provenance(
                existing, pending.parent_builds, pending.parent_build_ids
            )

        logger.info(
            "Created build %s for job '%s' in event %s (%s)",
            created.id,
            job.name,
            event.id,
            created.status.value,
        )
        if start:
            return await self._start(created)
        return created

    # ── Mutation ─────────────────────────────────────────────────────────────

    async def update_with_provenance(
        self,
        existing: Build,
        parent_builds: ParentBuilds,
        triggering_build_ids: int | list[int],
    ) -> Build:
        """Merge provenance into ``existing`` and record the triggering build(s) as parents."""
        new_ids = (
            triggering_build_ids
            if isinstance(triggering_build_ids, list)
            else [triggering_build_ids]
        )
        parent_ids = [i for i in new_ids if i is not None]
        parent_ids += [i for i in existing.parent_build_ids if i not in parent_ids]

        updated = existing.model_copy(
            update={
                "parent_builds": merge_provenance(existing.parent_builds, parent_builds),
                "parent_build_id": parent_ids,
            }
        )
        saved = await self._registry.update_build(updated)
        logger.info("Merged provenance into build %s (parents %s)", saved.id, parent_ids)
        return saved

    async def remove_speculative_build(self, build: Build | None) -> None:
        """Delete a build whose join can no longer succeed."""
        if build is None or build.id is None:
            return
        await self._registry.remove_build(build.id)
        logger.info("Removed build %s (job %s): a join member failed", build.id, build.job_id)

    async def promote_and_start(self, build: Build) -> Build:
        """Queue ``build`` and hand it to the executor."""
        queued = await self._registry.update_build(
            build.model_copy(update={"status": BuildStatus.QUEUED})
        )
        return await self._start(queued)

    async def _start(self, build: Build) -> Build:
        if self._start_build is None:
            logger.warning("No start callback configured; build %s left queued", build.id)
            return build
        started = await self._start_build(build)
        logger.info("Started build %s (job %s)", build.id, build.job_id)
        return started or build
