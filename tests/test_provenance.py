"""Tests for parent-build provenance maps."""

from __future__ import annotations

from cascade.models import Build
from cascade.naming import JobRef
from cascade.workflow.provenance import (
    JoinProvenance,
    build_provenance_skeleton,
    merge_provenance,
    recorded_build_id,
    recorded_event_id,
)


class TestSkeleton:
    def test_single_build_entry(self):
        assert build_provenance_skeleton(111, "D", build_id=987, event_id=2) == {
            "111": {"event_id": 2, "jobs": {"D": 987}}
        }

    def test_join_members_start_empty(self):
        skeleton = build_provenance_skeleton(111, "D", join_member_names=["A", "sd@222:B"])
        assert skeleton == {
            "111": {"event_id": None, "jobs": {"A": None}},
            "222": {"event_id": None, "jobs": {"B": None}},
        }

    def test_members_of_one_pipeline_share_an_entry(self):
        skeleton = build_provenance_skeleton(1, "x", join_member_names=["A", "B", "sd@1:C"])
        assert skeleton == {"1": {"event_id": None, "jobs": {"A": None, "B": None, "C": None}}}

    def test_empty_join_list_gives_empty_map(self):
        assert build_provenance_skeleton(1, "x", join_member_names=[]) == {}


class TestMerge:
    A = {"1": {"event_id": 10, "jobs": {"A": 100, "B": None}}}
    B = {"1": {"event_id": None, "jobs": {"B": 200}}, "2": {"event_id": 20, "jobs": {"X": 300}}}
    C = {"1": {"event_id": 11, "jobs": {"A": 101}}}

    def test_later_non_null_wins(self):
        merged = merge_provenance(self.A, self.C)
        assert merged["1"] == {"event_id": 11, "jobs": {"A": 101, "B": None}}

    def test_null_never_erases(self):
        merged = merge_provenance(self.A, {"1": {"event_id": None, "jobs": {"A": None}}})
        assert merged == self.A

    def test_keys_from_every_input_survive(self):
        merged = merge_provenance(self.A, self.B)
        assert merged == {
            "1": {"event_id": 10, "jobs": {"A": 100, "B": 200}},
            "2": {"event_id": 20, "jobs": {"X": 300}},
        }

    def test_associative(self):
        left = merge_provenance(merge_provenance(self.A, self.B), self.C)
        right = merge_provenance(self.A, merge_provenance(self.B, self.C))
        assert left == right == merge_provenance(self.A, self.B, self.C)

    def test_idempotent(self):
        assert merge_provenance(self.A, self.A) == self.A

    def test_inputs_are_not_mutated(self):
        before = {"1": {"event_id": 10, "jobs": {"A": 100, "B": None}}}
        merge_provenance(self.A, self.B, self.C)
        assert self.A == before

    def test_none_and_empty_inputs_are_skipped(self):
        assert merge_provenance(None, {}, self.A) == self.A

    def test_integer_pipeline_keys_are_normalized(self):
        merged = merge_provenance({1: {"event_id": 1, "jobs": {"A": 5}}}, self.C)
        assert merged == {"1": {"event_id": 11, "jobs": {"A": 101}}}


class TestLookups:
    def test_recorded_build_id(self):
        pb = {"1": {"event_id": 10, "jobs": {"A": 100, "B": None}}}
        assert recorded_build_id(pb, JobRef.parse("A", 1)) == 100
        assert recorded_build_id(pb, JobRef.parse("B", 1)) is None
        assert recorded_build_id(pb, JobRef.parse("sd@2:A", 1)) is None
        assert recorded_build_id(None, JobRef.parse("A", 1)) is None

    def test_recorded_event_id(self):
        assert recorded_event_id({"1": {"event_id": 10, "jobs": {}}}, 1) == 10
        assert recorded_event_id({}, 1) is None


class TestJoinProvenance:
    def test_finishing_build_overrides_everything(self):
        build = Build(
            id=500,
            job_id=1,
            event_id=50,
            parent_builds={"9": {"event_id": 90, "jobs": {"up": 900}}},
        )
        prov = JoinProvenance.for_build(
            build, pipeline_id=1, job_name="A", join_member_names=["A", "B"]
        )
        assert prov.merged == {
            "1": {"event_id": 50, "jobs": {"A": 500, "B": None}},
            "9": {"event_id": 90, "jobs": {"up": 900}},
        }

    def test_merged_into_keeps_existing_members(self):
        build = Build(id=600, job_id=2, event_id=50)
        prov = JoinProvenance.for_build(
            build, pipeline_id=1, job_name="B", join_member_names=["A", "B"]
        )
        existing = {"1": {"event_id": 50, "jobs": {"A": 500, "B": None}}}
        assert prov.merged_into(existing) == {"1": {"event_id": 50, "jobs": {"A": 500, "B": 600}}}
