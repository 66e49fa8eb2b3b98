"""
Tests: duplicate stage merger.

Covers the pure planner (survivor rules, conflicts), the transactional
merge (sections moved, losers deleted, legacy DESIGN folded into
DESIGN_CONCEPT), the re-runnable cleanup report and the unique index
installed once rooms are clean.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from roomflow.core.exceptions import MergeConflictError, NotFoundError, ValidationError
from roomflow.models import db as _db
from roomflow.models.change_log import FFEChangeLog
from roomflow.models.org import Organization, Project, Room
from roomflow.models.stage import DesignSection, Stage, StageStatus, StageType
from roomflow.services.stage_merger import (
    StageSnapshot,
    find_duplicates,
    group_duplicates,
    install_stage_uniqueness_index,
    merge_duplicates,
    plan_merge,
    run_duplicate_stage_cleanup,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


# ── ORM helpers ───────────────────────────────────────────────────────────────


def _make_stage(room_id, stage_type, *, minutes=0, status=StageStatus.NOT_STARTED,
                sections=(), assigned_to_id=None):
    stage = Stage(
        room_id=room_id,
        type=stage_type,
        status=status,
        assigned_to_id=assigned_to_id,
        created_at=T0 + timedelta(minutes=minutes),
    )
    for content in sections:
        stage.design_sections.append(DesignSection(type="GENERAL", content=content))
    _db.session.add(stage)
    _db.session.flush()
    return stage


def _active(room_id, stage_type=None):
    query = Stage.query_active().filter_by(room_id=room_id)
    if stage_type is not None:
        query = query.filter_by(type=stage_type)
    return query.all()


def _section_count(room_id):
    return (
        DesignSection.query
        .join(Stage, Stage.id == DesignSection.stage_id)
        .filter(Stage.room_id == room_id)
        .count()
    )


def _snap(stage_id, stage_type, *, minutes=0, status=StageStatus.NOT_STARTED, content=False):
    return StageSnapshot(
        id=stage_id,
        room_id="r1",
        type=stage_type,
        status=status,
        created_at=T0 + timedelta(minutes=minutes),
        has_section_content=content,
    )


# ── Pure planning ─────────────────────────────────────────────────────────────


class TestGroupDuplicates:
    def test_legacy_and_arrival_types_share_a_group(self):
        groups = group_duplicates([
            _snap("a", StageType.DESIGN),
            _snap("b", StageType.DESIGN_CONCEPT, minutes=1),
            _snap("c", StageType.THREE_D),
        ])
        assert len(groups) == 1
        assert groups[0].stage_type == StageType.DESIGN_CONCEPT
        assert groups[0].stage_ids == ("a", "b")

    def test_single_stages_are_not_groups(self):
        assert group_duplicates([_snap("a", StageType.DESIGN), _snap("b", StageType.FFE)]) == []


class TestPlanMerge:
    def test_single_active_arrival_stage_survives(self):
        plan = plan_merge([
            _snap("id1", StageType.DESIGN),
            _snap("id2", StageType.DESIGN_CONCEPT, minutes=1),
            _snap("id3", StageType.DESIGN_CONCEPT, minutes=2,
                  status=StageStatus.IN_PROGRESS, content=True),
        ])
        assert plan.survivor_id == "id3"
        assert set(plan.loser_ids) == {"id1", "id2"}
        assert plan.copy_activity_from is None

    def test_section_content_counts_as_activity(self):
        plan = plan_merge([
            _snap("a", StageType.THREE_D),
            _snap("b", StageType.THREE_D, minutes=1, content=True),
        ])
        assert plan.survivor_id == "b"

    def test_legacy_activity_moves_to_first_arrival_stage(self):
        plan = plan_merge([
            _snap("legacy", StageType.DESIGN, status=StageStatus.IN_PROGRESS),
            _snap("late", StageType.DESIGN_CONCEPT, minutes=5),
            _snap("early", StageType.DESIGN_CONCEPT, minutes=1),
        ])
        assert plan.survivor_id == "early"
        assert plan.copy_activity_from == "legacy"

    def test_nothing_active_keeps_earliest_arrival_stage(self):
        plan = plan_merge([
            _snap("legacy", StageType.DESIGN),
            _snap("b", StageType.DESIGN_CONCEPT, minutes=2),
            _snap("a", StageType.DESIGN_CONCEPT, minutes=1),
        ])
        assert plan.survivor_id == "a"
        assert plan.retype_survivor is False

    def test_legacy_only_group_is_retyped(self):
        plan = plan_merge([
            _snap("a", StageType.DESIGN),
            _snap("b", StageType.DESIGN, minutes=1),
        ])
        assert plan.survivor_id == "a"
        assert plan.retype_survivor is True

    def test_two_active_arrival_stages_conflict(self):
        with pytest.raises(MergeConflictError) as exc_info:
            plan_merge([
                _snap("a", StageType.DESIGN_CONCEPT, status=StageStatus.IN_PROGRESS),
                _snap("b", StageType.DESIGN_CONCEPT, minutes=1, content=True),
            ])
        assert exc_info.value.details["active_ids"] == ["a", "b"]

    def test_two_active_legacy_stages_conflict(self):
        with pytest.raises(MergeConflictError):
            plan_merge([
                _snap("a", StageType.DESIGN, status=StageStatus.COMPLETED),
                _snap("b", StageType.DESIGN, minutes=1, status=StageStatus.IN_PROGRESS),
                _snap("c", StageType.DESIGN_CONCEPT, minutes=2),
            ])

    def test_needs_two_stages(self):
        with pytest.raises(ValidationError):
            plan_merge([_snap("a", StageType.FFE)])


# ── Database merge ────────────────────────────────────────────────────────────


class TestMergeDuplicates:
    def test_active_arrival_stage_survives_with_all_sections(self, bathroom):
        _make_stage(bathroom.id, StageType.DESIGN)
        id2 = _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=1).id
        id3 = _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=2,
                          status=StageStatus.IN_PROGRESS,
                          sections=["Warm oak palette", "Brass accents"]).id
        _db.session.commit()

        result = merge_duplicates(bathroom.id, StageType.DESIGN_CONCEPT)

        assert result["survivor_id"] == id3
        assert id2 in result["removed_stage_ids"]
        assert len(result["removed_stage_ids"]) == 2
        assert [s.id for s in _active(bathroom.id)] == [id3]
        assert _section_count(bathroom.id) == 2

    def test_legacy_activity_and_sections_carried_over(self, bathroom):
        legacy = _make_stage(bathroom.id, StageType.DESIGN, status=StageStatus.IN_PROGRESS,
                             sections=["Moodboard v1", "Client notes"],
                             assigned_to_id="designer-1")
        legacy_section_ids = {s.id for s in legacy.design_sections}
        id2 = _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=1).id
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=2)
        _db.session.commit()

        result = merge_duplicates(bathroom.id, StageType.DESIGN)

        assert result["survivor_id"] == id2
        survivor = _db.session.get(Stage, id2)
        assert survivor.type == StageType.DESIGN_CONCEPT
        assert survivor.status == StageStatus.IN_PROGRESS
        assert survivor.assigned_to_id == "designer-1"
        assert {s.id for s in survivor.design_sections} == legacy_section_ids
        assert _active(bathroom.id, StageType.DESIGN) == []

    def test_uniqueness_restored_without_section_loss(self, bathroom):
        _make_stage(bathroom.id, StageType.DESIGN, sections=[""])
        _make_stage(bathroom.id, StageType.DESIGN, minutes=1)
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=2)
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=3, sections=["Concept A"])
        _db.session.commit()
        before = _section_count(bathroom.id)

        merge_duplicates(bathroom.id, StageType.DESIGN_CONCEPT)

        assert len(_active(bathroom.id, StageType.DESIGN_CONCEPT)) == 1
        assert _active(bathroom.id, StageType.DESIGN) == []
        assert _section_count(bathroom.id) == before
        assert DesignSection.query.filter(~DesignSection.stage_id.in_(
            select(Stage.id)
        )).count() == 0

    def test_legacy_only_group_retyped(self, bathroom):
        first = _make_stage(bathroom.id, StageType.DESIGN).id
        _make_stage(bathroom.id, StageType.DESIGN, minutes=1)
        _db.session.commit()

        result = merge_duplicates(bathroom.id, StageType.DESIGN)

        assert result["retyped_survivor"] is True
        assert _db.session.get(Stage, first).type == StageType.DESIGN_CONCEPT

    def test_conflict_changes_nothing(self, bathroom):
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, status=StageStatus.IN_PROGRESS)
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=1, sections=["Other idea"])
        _db.session.commit()

        with pytest.raises(MergeConflictError):
            merge_duplicates(bathroom.id, StageType.DESIGN_CONCEPT)

        assert len(_active(bathroom.id)) == 2
        assert _section_count(bathroom.id) == 1

    def test_no_duplicates_is_noop(self, bathroom):
        only = _make_stage(bathroom.id, StageType.FFE).id
        _db.session.commit()

        result = merge_duplicates(bathroom.id, StageType.FFE)

        assert result["noop"] is True
        assert result["survivor_id"] == only

    def test_unknown_stage_id(self, bathroom):
        _make_stage(bathroom.id, StageType.FFE)
        _make_stage(bathroom.id, StageType.FFE, minutes=1)
        _db.session.commit()

        with pytest.raises(NotFoundError):
            merge_duplicates(bathroom.id, StageType.FFE, ["missing"])

    def test_merge_is_logged(self, bathroom):
        _make_stage(bathroom.id, StageType.FFE)
        _make_stage(bathroom.id, StageType.FFE, minutes=1)
        _db.session.commit()

        result = merge_duplicates(bathroom.id, StageType.FFE, actor="ops")

        entry = FFEChangeLog.query.filter_by(action="stage.merge").one()
        assert entry.entity_id == result["survivor_id"]
        assert entry.actor == "ops"


# ── Cleanup run ───────────────────────────────────────────────────────────────


class TestCleanup:
    def test_report_and_idempotence(self, bathroom, living_room):
        _make_stage(bathroom.id, StageType.DESIGN)
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=1)
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=2,
                    status=StageStatus.IN_PROGRESS, sections=["A", "B"])
        _make_stage(living_room.id, StageType.FFE)
        _make_stage(living_room.id, StageType.FFE, minutes=1)
        _db.session.commit()

        first = run_duplicate_stage_cleanup()

        assert first["mode"] == "apply"
        assert first["rooms_scanned"] == 2
        assert first["rooms_processed"] == 2
        assert first["groups_found"] == 2
        assert first["stages_removed"] == 3
        assert first["conflicts"] == []
        assert _section_count(bathroom.id) == 2

        second = run_duplicate_stage_cleanup()

        assert second["groups_found"] == 0
        assert second["stages_removed"] == 0

    def test_dry_run_writes_nothing(self, bathroom):
        _make_stage(bathroom.id, StageType.DESIGN, sections=["Sketch"])
        _make_stage(bathroom.id, StageType.DESIGN_CONCEPT, minutes=1)
        _db.session.commit()

        report = run_duplicate_stage_cleanup(apply=False)

        assert report["mode"] == "dry-run"
        assert report["stages_removed"] == 1
        assert report["sections_reassigned"] == 1
        assert report["unique_index_installed"] is False
        assert len(_active(bathroom.id)) == 2
        assert FFEChangeLog.query.filter_by(action="stage.merge").count() == 0

    def test_conflicts_reported_and_left_alone(self, bathroom, living_room):
        _make_stage(bathroom.id, StageType.THREE_D, status=StageStatus.IN_PROGRESS)
        _make_stage(bathroom.id, StageType.THREE_D, minutes=1, status=StageStatus.COMPLETED)
        _make_stage(living_room.id, StageType.FFE)
        _make_stage(living_room.id, StageType.FFE, minutes=1)
        _db.session.commit()

        report = run_duplicate_stage_cleanup()

        assert len(report["conflicts"]) == 1
        assert report["conflicts"][0]["room_id"] == bathroom.id
        assert report["conflicts"][0]["stage_type"] == "THREE_D"
        assert report["stages_removed"] == 1
        assert report["unique_index_installed"] is False
        assert len(_active(bathroom.id, StageType.THREE_D)) == 2

    def test_soft_deleted_stages_ignored(self, bathroom):
        _make_stage(bathroom.id, StageType.FFE)
        retired = _make_stage(bathroom.id, StageType.FFE, minutes=1)
        retired.soft_delete()
        _db.session.commit()

        assert find_duplicates() == []
        assert run_duplicate_stage_cleanup()["stages_removed"] == 0

    def test_org_scope(self, bathroom):
        other = Organization(name="Other Studio", slug="other-studio")
        _db.session.add(other)
        _db.session.flush()
        other_project = Project(org_id=other.id, code="ELSEWHERE", name="Elsewhere")
        _db.session.add(other_project)
        _db.session.flush()
        other_room = Room(project_id=other_project.id, type="KITCHEN")
        _db.session.add(other_room)
        _db.session.flush()
        _make_stage(other_room.id, StageType.FFE)
        _make_stage(other_room.id, StageType.FFE, minutes=1)
        _db.session.commit()

        report = run_duplicate_stage_cleanup(bathroom.project.org_id)

        assert report["groups_found"] == 0
        assert len(_active(other_room.id)) == 2


class TestUniqueIndex:
    def test_index_blocks_new_duplicates(self, bathroom):
        _make_stage(bathroom.id, StageType.FFE)
        _make_stage(bathroom.id, StageType.FFE, minutes=1)
        _db.session.commit()

        report = run_duplicate_stage_cleanup()
        assert report["unique_index_installed"] is True

        with pytest.raises(IntegrityError):
            _make_stage(bathroom.id, StageType.FFE, minutes=5)
        _db.session.rollback()

    def test_index_allows_soft_deleted_duplicates(self, bathroom):
        assert install_stage_uniqueness_index() is True
        stage = _make_stage(bathroom.id, StageType.FFE)
        stage.soft_delete()
        _make_stage(bathroom.id, StageType.FFE, minutes=1)
        _db.session.commit()

        assert len(_active(bathroom.id, StageType.FFE)) == 1

    def test_index_refused_while_duplicates_remain(self, bathroom):
        _make_stage(bathroom.id, StageType.FFE)
        _make_stage(bathroom.id, StageType.FFE, minutes=1)
        _db.session.commit()

        assert install_stage_uniqueness_index() is False
