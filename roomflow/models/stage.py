"""
Roomflow
Phase stage models.

Models:
    - Stage: one workflow phase of a room (design concept, 3D, approval, …).
    - DesignSection: authored content hanging off a stage.

Invariant: at most one non-deleted Stage per (room_id, type). It is
enforced at the storage boundary by the partial unique index
``uq_stages_room_type_active`` once legacy duplicates have been merged
(see ``roomflow.services.stage_merger``).
"""

import enum
import uuid
from datetime import datetime, timezone

from roomflow.models import db
from roomflow.models.soft_delete import SoftDeleteMixin


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────

class StageType(str, enum.Enum):
    DESIGN = "DESIGN"                    # retired, superseded by DESIGN_CONCEPT
    DESIGN_CONCEPT = "DESIGN_CONCEPT"
    THREE_D = "THREE_D"
    CLIENT_APPROVAL = "CLIENT_APPROVAL"
    DRAWINGS = "DRAWINGS"
    FFE = "FFE"


class StageStatus(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    NOT_APPLICABLE = "NOT_APPLICABLE"


# ── Phase workflow ───────────────────────────────────────────────────────────

PHASE_SEQUENCE = (
    StageType.DESIGN_CONCEPT,
    StageType.THREE_D,
    StageType.CLIENT_APPROVAL,
    StageType.DRAWINGS,
    StageType.FFE,
)

# retired type -> the type that replaced it
SUPERSEDED_STAGE_TYPES = {
    StageType.DESIGN: StageType.DESIGN_CONCEPT,
}

PHASE_DISPLAY_NAMES = {
    StageType.DESIGN: "Design",
    StageType.DESIGN_CONCEPT: "Design Concept",
    StageType.THREE_D: "3D Rendering",
    StageType.CLIENT_APPROVAL: "Client Approval",
    StageType.DRAWINGS: "Drawings",
    StageType.FFE: "FFE (Furniture, Fixtures & Equipment)",
}

STAGE_TRANSITIONS = {
    StageStatus.NOT_STARTED: [
        StageStatus.IN_PROGRESS, StageStatus.ON_HOLD, StageStatus.NOT_APPLICABLE,
    ],
    StageStatus.IN_PROGRESS: [
        StageStatus.COMPLETED, StageStatus.ON_HOLD, StageStatus.NEEDS_ATTENTION,
        StageStatus.PENDING_APPROVAL, StageStatus.NOT_APPLICABLE,
    ],
    StageStatus.PENDING_APPROVAL: [
        StageStatus.COMPLETED, StageStatus.REVISION_REQUESTED, StageStatus.IN_PROGRESS,
    ],
    StageStatus.REVISION_REQUESTED: [StageStatus.IN_PROGRESS, StageStatus.ON_HOLD],
    StageStatus.NEEDS_ATTENTION: [StageStatus.IN_PROGRESS, StageStatus.ON_HOLD],
    StageStatus.ON_HOLD: [StageStatus.IN_PROGRESS, StageStatus.NOT_STARTED],
    StageStatus.COMPLETED: [StageStatus.IN_PROGRESS],       # reopen
    StageStatus.NOT_APPLICABLE: [StageStatus.NOT_STARTED],  # reopen
}


def validate_stage_transition(old_status, new_status):
    """Return True if Stage status transition is valid."""
    return new_status in STAGE_TRANSITIONS.get(old_status, [])


def canonical_stage_type(stage_type) -> StageType:
    """Fold a retired stage type into the type that superseded it."""
    stage_type = StageType(stage_type)
    return SUPERSEDED_STAGE_TYPES.get(stage_type, stage_type)


def is_superseded_type(stage_type) -> bool:
    return StageType(stage_type) in SUPERSEDED_STAGE_TYPES


# ═════════════════════════════════════════════════════════════════════════════
# Stage
# ═════════════════════════════════════════════════════════════════════════════

class Stage(SoftDeleteMixin, db.Model):
    """One phase of a room's design workflow."""

    __tablename__ = "stages"
    __table_args__ = (
        db.Index("idx_stages_room_type", "room_id", "type"),
        db.Index("idx_stages_status", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    room_id = db.Column(
        db.String(36),
        db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = db.Column(
        db.Enum(StageType, name="stage_type_enum", native_enum=False, length=30),
        nullable=False,
    )
    status = db.Column(
        db.Enum(StageStatus, name="stage_status_enum", native_enum=False, length=30),
        nullable=False,
        default=StageStatus.NOT_STARTED,
    )
    assigned_to_id = db.Column(
        db.String(36), nullable=True, index=True,
        comment="User id from the identity service",
    )
    start_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    room = db.relationship("Room", backref=db.backref("stages", lazy="dynamic"))
    design_sections = db.relationship(
        "DesignSection",
        backref="stage",
        cascade="all, delete-orphan",
        order_by="DesignSection.created_at",
    )

    @property
    def display_name(self) -> str:
        return PHASE_DISPLAY_NAMES.get(self.type, self.type.value)

    def to_dict(self, include_sections=False) -> dict:
        d = {
            "id": self.id,
            "room_id": self.room_id,
            "type": self.type.value,
            "display_name": self.display_name,
            "status": self.status.value,
            "assigned_to_id": self.assigned_to_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by_id": self.completed_by_id,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_sections:
            d["design_sections"] = [s.to_dict() for s in self.design_sections]
        return d

    def __repr__(self):
        return f"<Stage {self.id}: {self.type.value} room={self.room_id}>"


class DesignSection(db.Model):
    """
    Authored content of a design stage (general notes, wall covering, …).

    No uniqueness on (stage_id, type): merging duplicate stages moves every
    section onto the surviving stage, so two sections of the same type may
    end up side by side.
    """

    __tablename__ = "design_sections"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    stage_id = db.Column(
        db.String(36),
        db.ForeignKey("stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = db.Column(
        db.String(40), nullable=False, default="GENERAL",
        comment="GENERAL | WALL_COVERING | CEILING | FLOOR | …",
    )
    content = db.Column(db.Text, nullable=True)
    completed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    @property
    def is_non_empty(self) -> bool:
        return bool(self.completed) or bool((self.content or "").strip())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "type": self.type,
            "content": self.content,
            "completed": self.completed,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<DesignSection {self.id}: {self.type} stage={self.stage_id}>"
