"""
Room service — room creation with its phase stages.

Transaction policy: ``create_room`` commits.
"""

import logging

from roomflow.core.exceptions import ValidationError
from roomflow.models import db
from roomflow.models.org import ROOM_TYPES, Project, Room
from roomflow.models.stage import PHASE_SEQUENCE
from roomflow.services.helpers.scoped_queries import get_scoped
from roomflow.services.helpers.transactions import transaction
from roomflow.services.stage_service import get_or_create_stage, list_room_stages

logger = logging.getLogger(__name__)


def create_room(
    project_id: int,
    *,
    room_type: str,
    name: str | None = None,
    order: int | None = None,
    actor: str = "system",
) -> dict:
    """Create a room and one NOT_STARTED stage per workflow phase.

    Raises:
        NotFoundError: Unknown project.
        ValidationError: Unknown room type.
    """
    if room_type not in ROOM_TYPES:
        raise ValidationError(
            f"Unknown room type {room_type!r}",
            details={"room_type": room_type},
        )
    project = get_scoped(Project, project_id)

    with transaction("create_room", resource="Room"):
        if order is None:
            order = project.rooms.count()
        room = Room(project_id=project.id, type=room_type, name=name, order=order)
        db.session.add(room)
        db.session.flush()
        for phase in PHASE_SEQUENCE:
            get_or_create_stage(room.id, phase, actor=actor)

    logger.info("Room created id=%s type=%s project=%s", room.id, room_type, project.id,
                extra={"room_id": room.id, "project_id": project.id})
    d = room.to_dict()
    d["stages"] = list_room_stages(room.id)
    return d


def get_room(room_id: str) -> dict:
    room = get_scoped(Room, room_id)
    d = room.to_dict()
    d["stages"] = list_room_stages(room.id)
    d["has_ffe_instance"] = room.ffe_instance is not None
    return d
