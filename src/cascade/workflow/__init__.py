"""Workflow graph logic — pure functions over graph snapshots and provenance.

Key exports:
    next_jobs, join_sources, join_map — Graph queries
    merge_provenance, build_provenance_skeleton, JoinProvenance — Provenance
    get_join_status, JoinStatus — Join completion detection
    remove_downstream_builds — Partial re-run resolution
"""

from cascade.workflow.graph import join_map, join_sources, next_jobs
from cascade.workflow.joins import JoinStatus, get_join_status
from cascade.workflow.provenance import (
    JoinProvenance,
    build_provenance_skeleton,
    merge_provenance,
)
from cascade.workflow.rerun import remove_downstream_builds

__all__ = [
    # Graph
    "next_jobs",
    "join_sources",
    "join_map",
    # Provenance
    "JoinProvenance",
    "build_provenance_skeleton",
    "merge_provenance",
    # Joins
    "JoinStatus",
    "get_join_status",
    # Re-runs
    "remove_downstream_builds",
]
