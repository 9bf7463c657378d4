"""Tests for partial re-run resolution."""

from __future__ import annotations

import pytest

from cascade.errors import MalformedGraphError
from cascade.models import Build, BuildStatus, Event, WorkflowEdge, WorkflowGraph, WorkflowNode
from cascade.workflow.rerun import collect_downstream_build_ids, remove_downstream_builds

JOB_IDS = {"A": 1, "S": 2, "X": 3, "Y": 4, "Z": 5}


@pytest.fixture
def parent_event():
    """A → X, A → S; X → Y, X → Z."""
    graph = WorkflowGraph(
        nodes=[WorkflowNode(name="~commit")]
        + [WorkflowNode(name=name, id=job_id) for name, job_id in JOB_IDS.items()],
        edges=[
            WorkflowEdge(src="~commit", dest="A"),
            WorkflowEdge(src="A", dest="X"),
            WorkflowEdge(src="A", dest="S"),
            WorkflowEdge(src="X", dest="Y"),
            WorkflowEdge(src="X", dest="Z"),
        ],
    )
    return Event(id=7, pipeline_id=1, workflow_graph=graph)


def make_builds(*names):
    return [
        Build(id=100 + JOB_IDS[n], job_id=JOB_IDS[n], event_id=7, status=BuildStatus.SUCCESS)
        for n in names
    ]


def ids(builds):
    return {b.id for b in builds}


class TestRemoveDownstreamBuilds:
    def test_keeps_upstream_and_sibling_branch(self, parent_event):
        builds = make_builds("A", "S", "X", "Y", "Z")
        kept = remove_downstream_builds(parent_event, "X", builds)
        assert ids(kept) == {101, 102}

    def test_excludes_start_and_everything_reachable(self, parent_event):
        builds = make_builds("A", "S", "X", "Y", "Z")
        excluded = collect_downstream_build_ids(parent_event, "X", builds)
        assert excluded == {103, 104, 105}

    def test_restart_from_root_keeps_nothing(self, parent_event):
        builds = make_builds("A", "S", "X", "Y", "Z")
        assert remove_downstream_builds(parent_event, "A", builds) == []

    def test_restart_from_leaf(self, parent_event):
        builds = make_builds("A", "S", "X", "Y", "Z")
        assert ids(remove_downstream_builds(parent_event, "Y", builds)) == {101, 102, 103, 105}

    def test_job_without_build_ends_the_walk(self, parent_event):
        # X never ran in the parent, so Y's build is not reached through it
        builds = make_builds("A", "S", "Y")
        assert ids(remove_downstream_builds(parent_event, "X", builds)) == {101, 102, 104}

    def test_start_job_missing_from_graph_is_malformed(self, parent_event):
        with pytest.raises(MalformedGraphError):
            remove_downstream_builds(parent_event, "ghost", make_builds("A"))
