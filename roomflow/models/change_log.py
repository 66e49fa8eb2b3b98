"""
Roomflow
FFE change log.

Models:
    - FFEChangeLog: append-only trail of FFE and stage mutations.
"""

import json
from datetime import UTC, datetime

from roomflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

CHANGE_ENTITY_TYPES = {
    "ffe_instance", "ffe_section", "ffe_item",
    "ffe_template", "stage",
}

CHANGE_ACTIONS = {
    # Instance
    "instance.materialize",
    # Item
    "item.set_status",
    "item.set_note",
    "item.choose_option",
    "item.set_quantity",
    "item.add_custom",
    "item.add_linked",
    "item.remove_linked",
    # Section
    "section.add_custom",
    # Template
    "template.create",
    "template.update_item",
    "template.copy",
    "template.archive",
    "template.delete",
    "template.set_default",
    # Stage
    "stage.create",
    "stage.transition",
    "stage.assign",
    "stage.merge",
}


class FFEChangeLog(db.Model):
    """
    One row per mutation. ``diff_json`` carries ``{field: {old, new}}``
    for field changes and a free-form payload for structural ones.
    """

    __tablename__ = "ffe_change_logs"
    __table_args__ = (
        db.Index("idx_ffe_change_entity", "entity_type", "entity_id"),
        db.Index("idx_ffe_change_room", "room_id"),
        db.Index("idx_ffe_change_action", "action"),
        db.Index("idx_ffe_change_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(
        db.Integer,
        db.ForeignKey("orgs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Plain ids, no FKs: entries outlive the rows they describe.
    room_id = db.Column(db.String(36), nullable=True)
    instance_id = db.Column(db.String(36), nullable=True)

    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="ffe_instance | ffe_item | ffe_template | stage | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(
        db.String(60), nullable=False,
        comment="item.set_status | stage.merge | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    diff_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "room_id": self.room_id,
            "instance_id": self.instance_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<FFEChangeLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_change(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    org_id: int | None = None,
    room_id: str | None = None,
    instance_id: str | None = None,
    diff: dict | None = None,
) -> FFEChangeLog:
    """
    Append a single change row.  Uses ``flush`` so callers keep
    transaction control.
    """
    entry = FFEChangeLog(
        org_id=org_id,
        room_id=room_id,
        instance_id=instance_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def field_diff(old: dict, new: dict) -> dict:
    """Return ``{field: {"old": ..., "new": ...}}`` for keys whose value changed."""
    return {
        key: {"old": old.get(key), "new": new.get(key)}
        for key in new
        if old.get(key) != new.get(key)
    }
