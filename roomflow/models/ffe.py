"""
Roomflow
FFE (Furnishings, Fixtures & Equipment) models.

Template side (reusable, organisation scoped):
    - FFETemplate -> FFETemplateSection -> FFETemplateItem

Instance side (one per room, deep copy of a template):
    - RoomFFEInstance -> RoomFFESection -> RoomFFEItem

Instance rows never reference template rows for their content; the
template_* foreign keys are provenance only and are nulled when the
template is removed.
"""

import enum
import uuid
from datetime import datetime, timezone

from roomflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Enums ────────────────────────────────────────────────────────────────────

class FFEItemState(str, enum.Enum):
    # current
    NOT_STARTED = "NOT_STARTED"
    UNDECIDED = "UNDECIDED"
    COMPLETED = "COMPLETED"
    # legacy: still readable, never newly assigned
    PENDING = "PENDING"
    SELECTED = "SELECTED"
    CONFIRMED = "CONFIRMED"
    NOT_NEEDED = "NOT_NEEDED"


class TemplateStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class InstanceStatus(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class QuantityMode(str, enum.Enum):
    FIXED = "FIXED"                  # one row, quantity is a count
    PER_SUB_UNIT = "PER_SUB_UNIT"    # one row per unit (e.g. per sink)


class VisibilityRule(str, enum.Enum):
    ALWAYS = "ALWAYS"          # linked sub-items always shown
    ON_OPTION = "ON_OPTION"    # shown when chosen_option is in visibility_options


# ── Constants ────────────────────────────────────────────────────────────────

CURRENT_ITEM_STATES = frozenset({
    FFEItemState.NOT_STARTED,
    FFEItemState.UNDECIDED,
    FFEItemState.COMPLETED,
})

LEGACY_ITEM_STATES = frozenset(FFEItemState) - CURRENT_ITEM_STATES

# Any state may move to any current state; nothing may move into a legacy one.
ITEM_STATE_TRANSITIONS = {state: CURRENT_ITEM_STATES for state in FFEItemState}

# States that count as "done" for progress (NOT_NEEDED is legacy but final).
DONE_ITEM_STATES = frozenset({FFEItemState.COMPLETED, FFEItemState.NOT_NEEDED})

# States that mean nobody has touched the item yet.
UNTOUCHED_ITEM_STATES = frozenset({FFEItemState.NOT_STARTED, FFEItemState.PENDING})

MAX_ITEM_NAME_LENGTH = 200

# Custom items are added one row per unit, at most this many per call.
MAX_CUSTOM_ITEM_QUANTITY = 50


def validate_item_transition(old_state, new_state):
    """Return True if RoomFFEItem state transition is valid."""
    return new_state in ITEM_STATE_TRANSITIONS.get(old_state, frozenset())


# ═════════════════════════════════════════════════════════════════════════════
# Template side
# ═════════════════════════════════════════════════════════════════════════════

class FFETemplate(db.Model):
    """Reusable checklist of sections and items, owned by an organisation."""

    __tablename__ = "ffe_templates"
    __table_args__ = (
        db.UniqueConstraint("org_id", "name", name="uq_ffe_templates_org_name"),
        db.Index("idx_ffe_templates_org_status", "org_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    org_id = db.Column(
        db.Integer,
        db.ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.Enum(TemplateStatus, name="ffe_template_status_enum", native_enum=False, length=20),
        nullable=False,
        default=TemplateStatus.DRAFT,
    )
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    room_types = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Room types this template targets; empty = any",
    )
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    sections = db.relationship(
        "FFETemplateSection",
        backref="template",
        cascade="all, delete-orphan",
        order_by="FFETemplateSection.order",
    )

    def to_dict(self, include_sections=True) -> dict:
        d = {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "is_default": self.is_default,
            "room_types": list(self.room_types or []),
            "version": self.version,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_sections:
            d["sections"] = [s.to_dict() for s in self.sections]
        return d

    def __repr__(self):
        return f"<FFETemplate {self.id}: {self.name}>"


class FFETemplateSection(db.Model):
    __tablename__ = "ffe_template_sections"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_id = db.Column(
        db.String(36),
        db.ForeignKey("ffe_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)

    items = db.relationship(
        "FFETemplateItem",
        backref="section",
        cascade="all, delete-orphan",
        order_by="FFETemplateItem.order",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "name": self.name,
            "description": self.description,
            "order": self.order,
            "items": [i.to_dict() for i in self.items],
        }

    def __repr__(self):
        return f"<FFETemplateSection {self.id}: {self.name}>"


class FFETemplateItem(db.Model):
    """
    Template line item.

    ``linked_item_ids`` names other items of the same template that are
    materialised as sub-items of this one. Linked targets must not carry
    links of their own.
    """

    __tablename__ = "ffe_template_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    section_id = db.Column(
        db.String(36),
        db.ForeignKey("ffe_template_sections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    options = db.Column(
        db.JSON, nullable=False, default=list,
        comment='Choosable option labels, e.g. ["Standard", "Custom"]',
    )
    default_state = db.Column(
        db.Enum(FFEItemState, name="ffe_item_state_enum", native_enum=False, length=20),
        nullable=False,
        default=FFEItemState.NOT_STARTED,
    )
    quantity_mode = db.Column(
        db.Enum(QuantityMode, name="ffe_quantity_mode_enum", native_enum=False, length=20),
        nullable=False,
        default=QuantityMode.FIXED,
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    sub_unit_label = db.Column(
        db.String(50), nullable=True,
        comment="Name of one unit for PER_SUB_UNIT items (sink, window, …)",
    )
    visibility_rule = db.Column(
        db.Enum(VisibilityRule, name="ffe_visibility_rule_enum", native_enum=False, length=20),
        nullable=False,
        default=VisibilityRule.ALWAYS,
    )
    visibility_options = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Options of this item that reveal its linked sub-items",
    )
    linked_item_ids = db.Column(
        db.JSON, nullable=False, default=list,
        comment="Ids of items in the same template cloned as sub-items",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_ffe_template_items_quantity_positive"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "section_id": self.section_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "order": self.order,
            "is_required": self.is_required,
            "options": list(self.options or []),
            "default_state": self.default_state.value,
            "quantity_mode": self.quantity_mode.value,
            "quantity": self.quantity,
            "sub_unit_label": self.sub_unit_label,
            "visibility_rule": self.visibility_rule.value,
            "visibility_options": list(self.visibility_options or []),
            "linked_item_ids": list(self.linked_item_ids or []),
        }

    def __repr__(self):
        return f"<FFETemplateItem {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# Instance side
# ═════════════════════════════════════════════════════════════════════════════

class RoomFFEInstance(db.Model):
    """The per-room FFE checklist. At most one per room."""

    __tablename__ = "room_ffe_instances"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    room_id = db.Column(
        db.String(36),
        db.ForeignKey("rooms.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    template_id = db.Column(
        db.String(36),
        db.ForeignKey("ffe_templates.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Provenance only; NULL for the built-in default set",
    )
    template_key = db.Column(
        db.String(100), nullable=True,
        comment="Built-in default set key when no stored template was used",
    )
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(
        db.Enum(InstanceStatus, name="ffe_instance_status_enum", native_enum=False, length=20),
        nullable=False,
        default=InstanceStatus.NOT_STARTED,
    )
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0-100")
    notes = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    room = db.relationship("Room", backref=db.backref("ffe_instance", uselist=False))
    sections = db.relationship(
        "RoomFFESection",
        backref="instance",
        cascade="all, delete-orphan",
        order_by="RoomFFESection.order",
    )

    def all_items(self) -> list:
        return [item for section in self.sections for item in section.items]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "template_id": self.template_id,
            "template_key": self.template_key,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress,
            "notes": self.notes,
            "completed_at": _iso(self.completed_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<RoomFFEInstance {self.id}: room={self.room_id}>"


class RoomFFESection(db.Model):
    __tablename__ = "room_ffe_sections"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    instance_id = db.Column(
        db.String(36),
        db.ForeignKey("room_ffe_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_section_id = db.Column(
        db.String(36),
        db.ForeignKey("ffe_template_sections.id", ondelete="SET NULL"),
        nullable=True,
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)
    is_custom = db.Column(db.Boolean, nullable=False, default=False)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    items = db.relationship(
        "RoomFFEItem",
        backref="section",
        cascade="all, delete-orphan",
        order_by=lambda: [RoomFFEItem.order, RoomFFEItem.unit_index],
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "template_section_id": self.template_section_id,
            "name": self.name,
            "description": self.description,
            "order": self.order,
            "is_custom": self.is_custom,
            "is_completed": self.is_completed,
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<RoomFFESection {self.id}: {self.name}>"


class RoomFFEItem(db.Model):
    """
    One tracked line of a room's FFE checklist.

    Sub-items point at their parent through ``parent_item_id``. Units of a
    PER_SUB_UNIT item are sibling rows sharing ``quantity_group_id``;
    ``quantity`` on each row equals the size of the group.

    ``version`` is bumped by the mapper on every UPDATE; a write that
    loses a race raises ``StaleDataError``.
    """

    __tablename__ = "room_ffe_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_room_ffe_items_quantity_positive"),
        db.Index("idx_room_ffe_items_section_order", "section_id", "order"),
        db.Index("idx_room_ffe_items_quantity_group", "quantity_group_id"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    section_id = db.Column(
        db.String(36),
        db.ForeignKey("room_ffe_sections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_item_id = db.Column(
        db.String(36),
        db.ForeignKey("ffe_template_items.id", ondelete="SET NULL"),
        nullable=True,
    )
    parent_item_id = db.Column(
        db.String(36),
        db.ForeignKey("room_ffe_items.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL for top-level items",
    )
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(100), nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(
        db.Enum(FFEItemState, name="ffe_item_state_enum", native_enum=False, length=20),
        nullable=False,
        default=FFEItemState.NOT_STARTED,
    )
    note = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    options = db.Column(db.JSON, nullable=False, default=list)
    chosen_option = db.Column(db.String(100), nullable=True)
    visibility_rule = db.Column(
        db.Enum(VisibilityRule, name="ffe_visibility_rule_enum", native_enum=False, length=20),
        nullable=False,
        default=VisibilityRule.ALWAYS,
    )
    visibility_options = db.Column(db.JSON, nullable=False, default=list)
    visible = db.Column(
        db.Boolean, nullable=False, default=True,
        comment="Cached resolver output; recomputed after option changes",
    )

    quantity_mode = db.Column(
        db.Enum(QuantityMode, name="ffe_quantity_mode_enum", native_enum=False, length=20),
        nullable=False,
        default=QuantityMode.FIXED,
    )
    sub_unit_label = db.Column(db.String(50), nullable=True)
    quantity_group_id = db.Column(db.String(36), nullable=True)
    unit_index = db.Column(db.Integer, nullable=True, comment="1-based within the group")

    is_custom = db.Column(db.Boolean, nullable=False, default=False)
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    parent = db.relationship(
        "RoomFFEItem",
        remote_side="RoomFFEItem.id",
        backref=db.backref(
            "children",
            cascade="all",
            order_by="RoomFFEItem.order",
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_sub_item(self) -> bool:
        return self.parent_item_id is not None

    @property
    def display_name(self) -> str:
        if self.unit_index is not None and self.sub_unit_label:
            return f"{self.name} ({self.sub_unit_label} {self.unit_index})"
        return self.name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "section_id": self.section_id,
            "template_item_id": self.template_item_id,
            "parent_item_id": self.parent_item_id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category,
            "order": self.order,
            "status": self.status.value,
            "note": self.note,
            "quantity": self.quantity,
            "completed_at": _iso(self.completed_at),
            "options": list(self.options or []),
            "chosen_option": self.chosen_option,
            "visibility_rule": self.visibility_rule.value,
            "visibility_options": list(self.visibility_options or []),
            "visible": self.visible,
            "quantity_mode": self.quantity_mode.value,
            "sub_unit_label": self.sub_unit_label,
            "quantity_group_id": self.quantity_group_id,
            "unit_index": self.unit_index,
            "is_custom": self.is_custom,
            "is_required": self.is_required,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<RoomFFEItem {self.id}: {self.name} [{self.status.value}]>"
