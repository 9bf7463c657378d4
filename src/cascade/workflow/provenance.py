"""Parent-build provenance — which upstream build fed which downstream build.

The map is keyed by pipeline id (as a string, the map is stored as JSON)::

    {"111": {"event_id": 2, "jobs": {"D": 987, "B": None}}}

A ``None`` build id means that upstream job has not produced a build for this
join yet. Maps are never edited in place; every change goes through
:func:`merge_provenance`, which returns a new map.

Key exports:
    build_provenance_skeleton — Join skeleton or single-build entry
    merge_provenance — Right-biased two-level merge, non-null wins
    recorded_build_id — Build id recorded for a job reference
    JoinProvenance — The three sources merged for a finishing build
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from cascade.models import Build, ParentBuilds
from cascade.naming import JobRef


def _entry(event_id: int | None, jobs: dict[str, int | None]) -> dict:
    return {"event_id": event_id, "jobs": dict(jobs)}


def build_provenance_skeleton(
    pipeline_id: int,
    job_name: str,
    *,
    build_id: int | None = None,
    event_id: int | None = None,
    join_member_names: Iterable[str] | None = None,
) -> ParentBuilds:
    """Create a provenance map.

    With ``join_member_names``, every member gets a ``None`` slot under its
    owning pipeline (qualified names are split via :class:`JobRef`). Without it,
    the map holds a single entry recording ``build_id`` for ``job_name``.
    """
    if join_member_names is not None:
        skeleton: ParentBuilds = {}
        for name in join_member_names:
            ref = JobRef.parse(name, pipeline_id)
            entry = skeleton.setdefault(str(ref.pipeline_id), _entry(None, {}))
            entry["jobs"][ref.job_name] = None
        return skeleton

    return {str(pipeline_id): _entry(event_id, {job_name: build_id})}


def merge_provenance(*maps: ParentBuilds | None) -> ParentBuilds:
    """Merge provenance maps left to right.

    Later non-null values replace earlier ones; a ``None`` never erases a
    recorded value. Every pipeline and job key from any input is kept.
    """
    merged: ParentBuilds = {}
    for source in maps:
        if not source:
            continue
        for pipeline_key, entry in source.items():
            target = merged.setdefault(str(pipeline_key), _entry(None, {}))
            event_id = entry.get("event_id")
            if event_id is not None:
                target["event_id"] = event_id
            for job_name, build_id in (entry.get("jobs") or {}).items():
                if build_id is not None or job_name not in target["jobs"]:
                    target["jobs"][job_name] = build_id
    return merged


def recorded_build_id(parent_builds: ParentBuilds | None, ref: JobRef) -> int | None:
    entry = (parent_builds or {}).get(str(ref.pipeline_id))
    if not entry:
        return None
    return (entry.get("jobs") or {}).get(ref.job_name)


def recorded_event_id(parent_builds: ParentBuilds | None, pipeline_id: int) -> int | None:
    entry = (parent_builds or {}).get(str(pipeline_id))
    if not entry:
        return None
    return entry.get("event_id")


@dataclass(frozen=True)
class JoinProvenance:
    """Provenance sources for one (finishing build, next job) pair.

    Merge order is skeleton, then the finishing build's own incoming map, then
    the entry for the finishing build itself, so the finishing build always wins.
    """

    join_skeleton: ParentBuilds
    incoming: ParentBuilds
    current: ParentBuilds

    @classmethod
    def for_build(
        cls,
        build: Build,
        *,
        pipeline_id: int,
        job_name: str,
        join_member_names: Iterable[str],
    ) -> JoinProvenance:
        return cls(
            join_skeleton=build_provenance_skeleton(
                pipeline_id, job_name, join_member_names=list(join_member_names)
            ),
            incoming=merge_provenance(build.parent_builds),
            current=build_provenance_skeleton(
                pipeline_id, job_name, build_id=build.id, event_id=build.event_id
            ),
        )

    @property
    def merged(self) -> ParentBuilds:
        return merge_provenance(self.join_skeleton, self.incoming, self.current)

    def merged_into(self, existing: ParentBuilds | None) -> ParentBuilds:
        """Fold an existing build's provenance in, below the finishing build."""
        return merge_provenance(self.join_skeleton, self.incoming, existing, self.current)
