"""
Scoped lookup and room-lock helpers.

Every get-by-id in the services goes through ``get_scoped`` so a missing
row always surfaces as ``NotFoundError`` rather than ``None`` leaking
into business code.

Room-scoped writes (materialisation, quantity groups, linked items,
stage merges) serialise on the room row via ``lock_room``:

    room = lock_room(room_id)       # SELECT … FOR UPDATE
    ...                              # mutate children of the room
    db.session.commit()              # releases the lock

On SQLite ``FOR UPDATE`` is not emitted; the database-wide write lock
gives the same ordering there.
"""

import logging

from sqlalchemy import select

from roomflow.core.exceptions import NotFoundError
from roomflow.models import db
from roomflow.models.org import Room

logger = logging.getLogger(__name__)


def get_scoped(model, pk, **scope):
    """Fetch a single entity by PK, optionally constrained by scope columns.

    Scope keywords map to column names on the model (``org_id=…``,
    ``room_id=…``). An unknown scope column is a programming error and
    raises ValueError immediately.

    Raises:
        NotFoundError: Row does not exist or lies outside the scope.
    """
    stmt = select(model).where(model.id == pk)
    for column_name, value in scope.items():
        if value is None:
            continue
        column = getattr(model, column_name, None)
        if column is None:
            raise ValueError(
                f"get_scoped: {model.__name__} has no column '{column_name}'"
            )
        stmt = stmt.where(column == value)

    obj = db.session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(
            resource=model.__name__,
            resource_id=pk,
            org_id=scope.get("org_id"),
        )
    return obj


def get_scoped_or_none(model, pk, **scope):
    """Like get_scoped but returns None instead of raising."""
    try:
        return get_scoped(model, pk, **scope)
    except NotFoundError:
        return None


def lock_room(room_id: str) -> Room:
    """Load a room with a row lock held until the current transaction ends.

    Raises:
        NotFoundError: Unknown room.
    """
    room = db.session.execute(
        select(Room).where(Room.id == room_id).with_for_update()
    ).scalar_one_or_none()
    if room is None:
        raise NotFoundError(resource="Room", resource_id=room_id)
    logger.debug("Room lock acquired", extra={"room_id": room_id})
    return room
