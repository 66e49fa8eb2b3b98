"""
Roomflow
Organisation hierarchy models: Organization -> Project -> Room.

A Room is the unit every FFE instance and every phase stage hangs off.
"""

import uuid
from datetime import datetime, timezone

from roomflow.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

BATHROOM_ROOM_TYPES = {
    "BATHROOM", "MASTER_BATHROOM", "FAMILY_BATHROOM",
    "GUEST_BATHROOM", "POWDER_ROOM",
}

ROOM_TYPES = BATHROOM_ROOM_TYPES | {
    "BEDROOM", "MASTER_BEDROOM", "GUEST_BEDROOM",
    "LIVING_ROOM", "DINING_ROOM", "KITCHEN", "FAMILY_ROOM",
    "OFFICE", "STUDY_ROOM", "LAUNDRY_ROOM",
    "FOYER", "ENTRANCE", "HALLWAY", "OTHER",
}

PROJECT_STATUSES = {"draft", "active", "on_hold", "completed", "archived"}


class Organization(db.Model):
    """Design firm owning projects and FFE templates."""

    __tablename__ = "orgs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), nullable=False, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    projects = db.relationship("Project", backref="org", lazy="dynamic",
                               cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.slug}>"


class Project(db.Model):
    """Client engagement grouping a set of rooms."""

    __tablename__ = "projects"
    __table_args__ = (
        db.UniqueConstraint("org_id", "code", name="uq_projects_org_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(
        db.Integer,
        db.ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(
        db.String(30), nullable=False, default="active",
        comment="draft | active | on_hold | completed | archived",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    rooms = db.relationship("Room", backref="project", lazy="dynamic",
                            cascade="all, delete-orphan", order_by="Room.order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "code": self.code,
            "name": self.name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"


class Room(db.Model):
    """A physical space inside a project (bathroom, bedroom, ...)."""

    __tablename__ = "rooms"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = db.Column(
        db.String(40), nullable=False, default="OTHER",
        comment="MASTER_BATHROOM | BEDROOM | KITCHEN | …",
    )
    name = db.Column(db.String(200), nullable=True)
    order = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="NOT_STARTED")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    @property
    def org_id(self) -> int | None:
        return self.project.org_id if self.project is not None else None

    @property
    def is_bathroom(self) -> bool:
        return self.type in BATHROOM_ROOM_TYPES

    @property
    def display_name(self) -> str:
        return self.name or self.type.replace("_", " ").title()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "type": self.type,
            "name": self.name,
            "display_name": self.display_name,
            "order": self.order,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Room {self.id}: {self.type}>"
