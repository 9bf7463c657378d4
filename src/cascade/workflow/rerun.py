"""Partial re-run support.

When an event re-runs a workflow from ``start_from``, the parent event's builds
that are not downstream of the restart point still count as finished for join
purposes.
"""

from __future__ import annotations

import logging

from cascade.models import Build, Event
from cascade.workflow.graph import next_jobs, node_for

logger = logging.getLogger(__name__)


def collect_downstream_build_ids(parent_event: Event, start_from: str, builds: list[Build]) -> set[int]:
    """Depth-first walk from ``start_from`` collecting build ids of visited jobs.

    A job without a build in ``builds`` ends that branch of the walk.
    """
    graph = parent_event.workflow_graph
    builds_by_job = {b.job_id: b for b in builds}
    visited: set[int] = set()
    seen_jobs: set[str] = set()
    stack = [start_from]

    while stack:
        name = stack.pop()
        if name in seen_jobs:
            continue
        seen_jobs.add(name)

        node = node_for(graph, name)
        build = builds_by_job.get(node.id) if node.id is not None else None
        if build is None:
            continue
        visited.add(build.id)  # type: ignore[arg-type]
        stack.extend(next_jobs(graph, node.name))

    return visited


def remove_downstream_builds(parent_event: Event, start_from: str, builds: list[Build]) -> list[Build]:
    """Return the parent event's builds that are not reachable from ``start_from``."""
    visited = collect_downstream_build_ids(parent_event, start_from, builds)
    kept = [b for b in builds if b.id not in visited]
    logger.debug(
        "Re-run from '%s' of event %s: kept %d of %d parent builds",
        start_from,
        parent_event.id,
        len(kept),
        len(builds),
    )
    return kept
