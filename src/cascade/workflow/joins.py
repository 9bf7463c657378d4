"""Join completion detection.

A join is done once every member has a recorded build in a finished status.
Failure is tracked separately so callers can decide when to act on it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from cascade.models import Build, ParentBuilds
from cascade.naming import JobRef
from cascade.workflow.provenance import recorded_build_id

logger = logging.getLogger(__name__)

BuildLookup = Callable[[int], Awaitable[Build]]


@dataclass(frozen=True)
class JoinStatus:
    done: bool
    has_failure: bool

    @property
    def should_start(self) -> bool:
        return self.done and not self.has_failure

    @property
    def should_remove(self) -> bool:
        return self.done and self.has_failure


def join_members(names: Iterable[str], pipeline_id: int) -> list[JobRef]:
    return [JobRef.parse(name, pipeline_id) for name in names]


async def get_join_status(
    parent_builds: ParentBuilds | None,
    join_member_names: Iterable[str],
    pipeline_id: int,
    get_build: BuildLookup,
) -> JoinStatus:
    """Evaluate a join from the provenance recorded on its target build.

    ``pipeline_id`` is the pipeline whose graph declared the join; bare member
    names belong to it.
    """
    done = True
    pending: list[int] = []
    for ref in join_members(join_member_names, pipeline_id):
        build_id = recorded_build_id(parent_builds, ref)
        if build_id is None:
            # Member has not run for this join yet
            done = False
        else:
            pending.append(build_id)

    has_failure = False
    for build in await asyncio.gather(*(get_build(build_id) for build_id in pending)):
        if build.has_failed:
            has_failure = True
        if not build.is_finished:
            done = False

    logger.debug(
        "Join over %d members in pipeline %s: done=%s has_failure=%s",
        len(pending),
        pipeline_id,
        done,
        has_failure,
    )
    return JoinStatus(done=done, has_failure=has_failure)
