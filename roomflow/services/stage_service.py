"""
Stage service — phase workflow of a room.

Transaction policy: public functions commit.

Phases run DESIGN_CONCEPT -> THREE_D -> CLIENT_APPROVAL -> DRAWINGS / FFE.
Completing CLIENT_APPROVAL unlocks both DRAWINGS and FFE; every other
phase unlocks the next one in sequence. Stages are created through
``ensure_stage`` only, which is a get-or-create under the room lock, so
workflow code can never add a second stage of the same type.
"""

import logging
from datetime import datetime, timezone

from roomflow.core.exceptions import ValidationError
from roomflow.models import db
from roomflow.models.change_log import write_change
from roomflow.models.stage import (
    PHASE_DISPLAY_NAMES,
    PHASE_SEQUENCE,
    Stage,
    StageStatus,
    StageType,
    is_superseded_type,
    validate_stage_transition,
)
from roomflow.services.helpers.scoped_queries import get_scoped, lock_room
from roomflow.services.helpers.transactions import transaction

logger = logging.getLogger(__name__)


# ── Phase helpers ────────────────────────────────────────────────────────────

def next_phases(stage_type) -> list[StageType]:
    """Phases unlocked when ``stage_type`` completes."""
    stage_type = StageType(stage_type)
    if stage_type == StageType.CLIENT_APPROVAL:
        return [StageType.DRAWINGS, StageType.FFE]
    if stage_type not in PHASE_SEQUENCE:
        return []
    index = PHASE_SEQUENCE.index(stage_type)
    if index + 1 < len(PHASE_SEQUENCE):
        return [PHASE_SEQUENCE[index + 1]]
    return []


def phase_display_name(stage_type) -> str:
    stage_type = StageType(stage_type)
    return PHASE_DISPLAY_NAMES.get(stage_type, stage_type.value)


def _parse_stage_type(value) -> StageType:
    try:
        stage_type = StageType(value)
    except ValueError:
        raise ValidationError(f"Unknown stage type {value!r}", details={"type": value}) from None
    if is_superseded_type(stage_type):
        raise ValidationError(
            f"Stage type {stage_type.value} is retired and cannot be created",
            details={"type": stage_type.value},
        )
    return stage_type


# ── Read ─────────────────────────────────────────────────────────────────────

def list_room_stages(room_id: str) -> list[dict]:
    """Non-deleted stages of a room in phase order (legacy types last)."""
    stages = Stage.query_active().filter_by(room_id=room_id).all()
    order = {t: i for i, t in enumerate(PHASE_SEQUENCE)}
    stages.sort(key=lambda s: (order.get(s.type, len(order)), s.created_at))
    return [s.to_dict() for s in stages]


# ── Creation ─────────────────────────────────────────────────────────────────

def get_or_create_stage(room_id: str, stage_type: StageType, *, actor: str = "system"):
    """Get-or-create inside the caller's transaction. Caller holds the room lock."""
    existing = (
        Stage.query_active()
        .filter_by(room_id=room_id, type=stage_type)
        .order_by(Stage.created_at)
        .first()
    )
    if existing is not None:
        return existing, False
    stage = Stage(room_id=room_id, type=stage_type, status=StageStatus.NOT_STARTED)
    db.session.add(stage)
    db.session.flush()
    write_change(
        entity_type="stage",
        entity_id=stage.id,
        action="stage.create",
        actor=actor,
        room_id=room_id,
        diff={"type": stage_type.value},
    )
    return stage, True


def ensure_stage(room_id: str, stage_type, *, actor: str = "system") -> dict:
    """Return the room's stage of ``stage_type``, creating it if missing."""
    stage_type = _parse_stage_type(stage_type)
    with transaction("ensure_stage", resource="Stage", resource_id=room_id):
        lock_room(room_id)
        stage, created = get_or_create_stage(room_id, stage_type, actor=actor)
    if created:
        logger.info("Stage created id=%s type=%s", stage.id, stage_type.value,
                    extra={"room_id": room_id, "stage_id": stage.id})
    return {"stage": stage.to_dict(), "created": created}


# ── Transitions ──────────────────────────────────────────────────────────────

def transition_stage(
    stage_id: str,
    new_status,
    *,
    user_id: str | None = None,
    actor: str = "system",
) -> dict:
    """Move a stage along ``STAGE_TRANSITIONS``.

    Completing a stage ensures the phases it unlocks exist.

    Returns:
        ``{stage, unlocked_stages}``.

    Raises:
        ValidationError: Unknown status or transition not allowed.
    """
    try:
        new_status = StageStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown stage status {new_status!r}",
                              details={"status": new_status}) from None

    stage = get_scoped(Stage, stage_id)
    if stage.is_deleted:
        raise ValidationError("Stage is deleted", details={"stage_id": stage_id})
    old_status = stage.status
    if not validate_stage_transition(old_status, new_status):
        raise ValidationError(
            f"Invalid transition: {old_status.value} → {new_status.value}",
            details={"from": old_status.value, "to": new_status.value},
        )

    unlocked = []
    with transaction("transition_stage", resource="Stage", resource_id=stage_id):
        lock_room(stage.room_id)
        now = datetime.now(timezone.utc)
        stage.status = new_status
        if new_status == StageStatus.IN_PROGRESS and stage.started_at is None:
            stage.started_at = now
        if new_status == StageStatus.COMPLETED:
            stage.completed_at = now
            stage.completed_by_id = user_id
            for phase in next_phases(stage.type):
                next_stage, _created = get_or_create_stage(stage.room_id, phase, actor=actor)
                unlocked.append(next_stage)
        elif old_status == StageStatus.COMPLETED:
            stage.completed_at = None
            stage.completed_by_id = None

        write_change(
            entity_type="stage",
            entity_id=stage.id,
            action="stage.transition",
            actor=actor,
            room_id=stage.room_id,
            diff={"status": {"old": old_status.value, "new": new_status.value}},
        )

    logger.info("Stage %s: %s → %s", stage.id, old_status.value, new_status.value,
                extra={"room_id": stage.room_id, "stage_id": stage.id})
    return {
        "stage": stage.to_dict(),
        "unlocked_stages": [s.to_dict() for s in unlocked],
    }


def start_stage(stage_id: str, *, user_id: str | None = None, actor: str = "system") -> dict:
    return transition_stage(stage_id, StageStatus.IN_PROGRESS, user_id=user_id, actor=actor)


def complete_stage(stage_id: str, *, user_id: str | None = None, actor: str = "system") -> dict:
    return transition_stage(stage_id, StageStatus.COMPLETED, user_id=user_id, actor=actor)


def reopen_stage(stage_id: str, *, actor: str = "system") -> dict:
    """COMPLETED -> IN_PROGRESS, NOT_APPLICABLE -> NOT_STARTED."""
    stage = get_scoped(Stage, stage_id)
    target = (
        StageStatus.NOT_STARTED if stage.status == StageStatus.NOT_APPLICABLE
        else StageStatus.IN_PROGRESS
    )
    return transition_stage(stage_id, target, actor=actor)


def mark_not_applicable(stage_id: str, *, actor: str = "system") -> dict:
    return transition_stage(stage_id, StageStatus.NOT_APPLICABLE, actor=actor)


def assign_stage(stage_id: str, user_id: str | None, *, actor: str = "system") -> dict:
    """Set or clear the stage assignee."""
    stage = get_scoped(Stage, stage_id)
    old = stage.assigned_to_id
    with transaction("assign_stage", resource="Stage", resource_id=stage_id):
        stage.assigned_to_id = user_id
        write_change(
            entity_type="stage",
            entity_id=stage.id,
            action="stage.assign",
            actor=actor,
            room_id=stage.room_id,
            diff={"assigned_to_id": {"old": old, "new": user_id}},
        )
    logger.info("Stage %s assigned to %s", stage.id, user_id,
                extra={"room_id": stage.room_id, "stage_id": stage.id})
    return stage.to_dict()
