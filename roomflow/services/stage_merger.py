"""
Stage uniqueness enforcer / duplicate merger.

Rooms created before the (room_id, type) rule existed can carry several
non-deleted stages of one phase, and rooms started under the retired
DESIGN type may also carry a DESIGN_CONCEPT stage. Both count as
duplicates: stages are grouped by room and *canonical* type, where
DESIGN folds into DESIGN_CONCEPT.

Survivor selection for one group (``plan_merge``):
    candidates = arrival-type stages (DESIGN_CONCEPT, …) if any, else all
    1. exactly one candidate shows activity   -> it survives
    2. none does, but one legacy stage does    -> first arrival stage
       survives and takes over the legacy status, timestamps and assignee
    3. otherwise                               -> first candidate by
       creation order survives
    More than one active candidate (or, under rule 2, more than one
    active legacy stage) is a MergeConflictError: nothing is deleted and
    the group is reported for a human.

"Activity" means status other than NOT_STARTED, or at least one design
section with content or marked completed.

Applying a plan moves every design section of every loser onto the
survivor and then deletes the losers, one transaction per group under
the room lock. Running the cleanup again finds nothing to do.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import text

from roomflow.core.exceptions import MergeConflictError, NotFoundError, ValidationError
from roomflow.models import db
from roomflow.models.change_log import write_change
from roomflow.models.org import Project, Room
from roomflow.models.stage import (
    Stage,
    StageStatus,
    StageType,
    canonical_stage_type,
    is_superseded_type,
)
from roomflow.services.helpers.scoped_queries import lock_room
from roomflow.services.helpers.transactions import transaction

logger = logging.getLogger(__name__)

UNIQUE_INDEX_NAME = "uq_stages_room_type_active"
_UNIQUE_INDEX_DDL = (
    f"CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_INDEX_NAME} "
    "ON stages (room_id, type) WHERE deleted_at IS NULL"
)


# ═══════════════════════════════════════════════════════════════════
# SNAPSHOTS
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StageSnapshot:
    """What the planner needs to know about one stage."""

    id: str
    room_id: str
    type: StageType
    status: StageStatus = StageStatus.NOT_STARTED
    created_at: datetime | None = None
    assigned_to_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    section_ids: tuple[str, ...] = ()
    has_section_content: bool = False

    @property
    def canonical_type(self) -> StageType:
        return canonical_stage_type(self.type)

    @property
    def is_arrival(self) -> bool:
        return not is_superseded_type(self.type)

    @property
    def has_activity(self) -> bool:
        return self.status != StageStatus.NOT_STARTED or self.has_section_content


@dataclass(frozen=True)
class DuplicateGroup:
    room_id: str
    stage_type: StageType
    stage_ids: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "stage_type": self.stage_type.value,
            "stage_ids": list(self.stage_ids),
        }


@dataclass(frozen=True)
class MergePlan:
    room_id: str
    stage_type: StageType
    survivor_id: str
    loser_ids: tuple[str, ...]
    reason: str
    copy_activity_from: str | None = None
    retype_survivor: bool = False

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "stage_type": self.stage_type.value,
            "survivor_id": self.survivor_id,
            "removed_stage_ids": list(self.loser_ids),
            "reason": self.reason,
            "copied_activity_from": self.copy_activity_from,
            "retyped_survivor": self.retype_survivor,
        }


def snapshot_stage(stage: Stage, *, include_sections: bool = True) -> StageSnapshot:
    sections = list(stage.design_sections) if include_sections else []
    return StageSnapshot(
        id=stage.id,
        room_id=stage.room_id,
        type=stage.type,
        status=stage.status,
        created_at=stage.created_at,
        assigned_to_id=stage.assigned_to_id,
        started_at=stage.started_at,
        completed_at=stage.completed_at,
        section_ids=tuple(s.id for s in sections),
        has_section_content=any(s.is_non_empty for s in sections),
    )


def _creation_order(snapshot: StageSnapshot):
    return (snapshot.created_at is None, snapshot.created_at, snapshot.id)


# ═══════════════════════════════════════════════════════════════════
# PURE PLANNING
# ═══════════════════════════════════════════════════════════════════

def group_duplicates(snapshots: Sequence[StageSnapshot]) -> list[DuplicateGroup]:
    """Group by (room, canonical type) and keep groups with more than one stage."""
    buckets: dict[tuple[str, StageType], list[StageSnapshot]] = defaultdict(list)
    for snap in snapshots:
        buckets[(snap.room_id, snap.canonical_type)].append(snap)

    groups = []
    for (room_id, stage_type), members in buckets.items():
        if len(members) < 2:
            continue
        members.sort(key=_creation_order)
        groups.append(DuplicateGroup(
            room_id=room_id,
            stage_type=stage_type,
            stage_ids=tuple(m.id for m in members),
        ))
    groups.sort(key=lambda g: (g.room_id, g.stage_type.value))
    return groups


def plan_merge(stages: Sequence[StageSnapshot]) -> MergePlan:
    """Pick the survivor of one duplicate group.

    Raises:
        ValidationError: ``stages`` is not a duplicate group.
        MergeConflictError: Two or more candidates carry activity.
    """
    if len(stages) < 2:
        raise ValidationError("A duplicate group needs at least two stages",
                              details={"stage_ids": [s.id for s in stages]})
    room_ids = {s.room_id for s in stages}
    stage_types = {s.canonical_type for s in stages}
    if len(room_ids) != 1 or len(stage_types) != 1:
        raise ValidationError(
            "Stages of a duplicate group must share room and canonical type",
            details={"room_ids": sorted(room_ids), "types": sorted(t.value for t in stage_types)},
        )
    room_id = room_ids.pop()
    stage_type = stage_types.pop()

    ordered = sorted(stages, key=_creation_order)
    arrival = [s for s in ordered if s.is_arrival]
    legacy = [s for s in ordered if not s.is_arrival]
    candidates = arrival or ordered

    active = [s for s in candidates if s.has_activity]
    if len(active) > 1:
        raise MergeConflictError(
            room_id, stage_type.value, [s.id for s in ordered], [s.id for s in active],
        )

    copy_from = None
    if len(active) == 1:
        survivor = active[0]
        reason = "single active candidate"
    elif arrival:
        legacy_active = [s for s in legacy if s.has_activity]
        if len(legacy_active) > 1:
            raise MergeConflictError(
                room_id, stage_type.value, [s.id for s in ordered], [s.id for s in legacy_active],
            )
        survivor = arrival[0]
        if legacy_active:
            copy_from = legacy_active[0].id
            reason = "activity carried over from superseded stage"
        else:
            reason = "earliest candidate"
    else:
        survivor = candidates[0]
        reason = "earliest candidate"

    return MergePlan(
        room_id=room_id,
        stage_type=stage_type,
        survivor_id=survivor.id,
        loser_ids=tuple(s.id for s in ordered if s.id != survivor.id),
        reason=reason,
        copy_activity_from=copy_from,
        retype_survivor=not survivor.is_arrival,
    )


# ═══════════════════════════════════════════════════════════════════
# DATABASE OPERATIONS
# ═══════════════════════════════════════════════════════════════════

def _active_stage_query(org_id: int | None = None):
    query = Stage.query_active()
    if org_id is not None:
        query = (
            query.join(Room, Room.id == Stage.room_id)
            .join(Project, Project.id == Room.project_id)
            .filter(Project.org_id == org_id)
        )
    return query


def find_duplicates(org_id: int | None = None) -> list[DuplicateGroup]:
    """Every (room, canonical type) with more than one non-deleted stage."""
    stages = _active_stage_query(org_id).all()
    return group_duplicates([snapshot_stage(s, include_sections=False) for s in stages])


def merge_duplicates(
    room_id: str,
    stage_type,
    stage_ids: Sequence[str] | None = None,
    *,
    actor: str = "system",
) -> dict:
    """Merge one duplicate group of a room into a single stage.

    Args:
        room_id: Room owning the group.
        stage_type: Canonical type of the group (DESIGN is accepted and
            folded into DESIGN_CONCEPT).
        stage_ids: Restrict the merge to these stages; defaults to every
            non-deleted stage of the canonical type.
        actor: Recorded in the change log.

    Returns:
        Plan dict plus ``sections_reassigned`` and ``noop``.

    Raises:
        NotFoundError: Unknown room, or a listed stage is not an active
            stage of that room and type.
        MergeConflictError: See ``plan_merge``; nothing is changed.
    """
    stage_type = canonical_stage_type(stage_type)

    with transaction("merge_duplicates", resource="Stage", resource_id=room_id):
        lock_room(room_id)
        stages = [
            s for s in Stage.query_active().filter_by(room_id=room_id).all()
            if canonical_stage_type(s.type) == stage_type
        ]
        if stage_ids is not None:
            wanted = set(stage_ids)
            missing = wanted - {s.id for s in stages}
            if missing:
                raise NotFoundError(resource="Stage", resource_id=sorted(missing)[0])
            stages = [s for s in stages if s.id in wanted]

        if len(stages) < 2:
            return {
                "room_id": room_id,
                "stage_type": stage_type.value,
                "survivor_id": stages[0].id if stages else None,
                "removed_stage_ids": [],
                "sections_reassigned": 0,
                "reason": "no duplicates",
                "copied_activity_from": None,
                "retyped_survivor": False,
                "noop": True,
            }

        plan = plan_merge([snapshot_stage(s) for s in stages])
        by_id = {s.id: s for s in stages}
        survivor = by_id[plan.survivor_id]

        if plan.copy_activity_from:
            source = by_id[plan.copy_activity_from]
            survivor.status = source.status
            survivor.started_at = source.started_at
            survivor.completed_at = source.completed_at
            survivor.completed_by_id = source.completed_by_id
            survivor.assigned_to_id = source.assigned_to_id
        if plan.retype_survivor:
            survivor.type = stage_type

        moved = 0
        for loser_id in plan.loser_ids:
            loser = by_id[loser_id]
            for section in list(loser.design_sections):
                survivor.design_sections.append(section)
                moved += 1
        db.session.flush()

        for loser_id in plan.loser_ids:
            loser = by_id[loser_id]
            db.session.expire(loser, ["design_sections"])
            db.session.delete(loser)
        db.session.flush()

        write_change(
            entity_type="stage",
            entity_id=survivor.id,
            action="stage.merge",
            actor=actor,
            room_id=room_id,
            diff={**plan.to_dict(), "sections_reassigned": moved},
        )

    logger.info(
        "Merged %d duplicate %s stage(s) into %s (%s)",
        len(plan.loser_ids), stage_type.value, plan.survivor_id, plan.reason,
        extra={"room_id": room_id, "stage_id": plan.survivor_id},
    )
    result = plan.to_dict()
    result["sections_reassigned"] = moved
    result["noop"] = False
    return result


def run_duplicate_stage_cleanup(
    org_id: int | None = None,
    *,
    apply: bool = True,
    actor: str = "stage-cleanup",
) -> dict:
    """Find and merge every duplicate group; re-runnable.

    In dry-run mode (``apply=False``) plans are computed and reported but
    nothing is written.

    Returns:
        Report dict: mode, rooms_scanned, rooms_processed, groups_found,
        stages_removed, sections_reassigned, conflicts, merges,
        unique_index_installed.
    """
    room_query = Room.query
    if org_id is not None:
        room_query = room_query.join(Project, Project.id == Room.project_id).filter(
            Project.org_id == org_id
        )

    groups = find_duplicates(org_id)
    report = {
        "mode": "apply" if apply else "dry-run",
        "rooms_scanned": room_query.count(),
        "rooms_processed": 0,
        "groups_found": len(groups),
        "stages_removed": 0,
        "sections_reassigned": 0,
        "conflicts": [],
        "merges": [],
        "unique_index_installed": False,
    }

    for group in groups:
        try:
            if apply:
                result = merge_duplicates(
                    group.room_id, group.stage_type, group.stage_ids, actor=actor,
                )
            else:
                result = _dry_run_group(group)
        except MergeConflictError as exc:
            logger.warning("Duplicate stage conflict: %s", exc,
                           extra={"room_id": group.room_id})
            report["conflicts"].append(exc.details)
            continue
        report["merges"].append(result)
        report["stages_removed"] += len(result["removed_stage_ids"])
        report["sections_reassigned"] += result["sections_reassigned"]

    report["rooms_processed"] = len({m["room_id"] for m in report["merges"]})

    if apply and not report["conflicts"] and current_app.config.get(
        "STAGE_UNIQUE_INDEX_AUTO_INSTALL", True
    ):
        report["unique_index_installed"] = install_stage_uniqueness_index()

    logger.info(
        "Stage cleanup (%s): groups=%d removed=%d sections=%d conflicts=%d",
        report["mode"], report["groups_found"], report["stages_removed"],
        report["sections_reassigned"], len(report["conflicts"]),
    )
    return report


def _dry_run_group(group: DuplicateGroup) -> dict:
    stages = Stage.query.filter(Stage.id.in_(group.stage_ids)).all()
    snapshots = {s.id: snapshot_stage(s) for s in stages}
    plan = plan_merge(list(snapshots.values()))
    result = plan.to_dict()
    result["sections_reassigned"] = sum(
        len(snapshots[loser_id].section_ids) for loser_id in plan.loser_ids
    )
    result["noop"] = False
    return result


def install_stage_uniqueness_index() -> bool:
    """Create the partial unique index once no duplicates remain.

    Returns True when the index exists afterwards. Exact-type duplicates
    make index creation fail, and legacy/arrival pairs would slip past
    it, so any remaining group blocks installation.
    """
    remaining = find_duplicates()
    if remaining:
        logger.warning("Unique stage index not installed: %d duplicate group(s) remain",
                       len(remaining))
        return False
    with transaction("install_stage_uniqueness_index", resource="Stage"):
        db.session.execute(text(_UNIQUE_INDEX_DDL))
    logger.info("Unique index %s ensured on stages(room_id, type)", UNIQUE_INDEX_NAME)
    return True
