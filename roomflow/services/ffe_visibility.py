"""
Visibility resolver for linked sub-items.

A top-level item is always visible. A sub-item is visible exactly when
its parent is visible and the parent's rule is satisfied:

    ALWAYS     -> satisfied
    ON_OPTION  -> satisfied when parent.chosen_option is in
                  parent.visibility_options

``resolve_visibility`` is pure: it reads attributes and returns a map,
so it runs equally on ORM rows and on plain objects in tests. The
``visible`` column on ``RoomFFEItem`` is only a cache written by
``refresh_visibility`` through ``store_visible``, which leaves the
row version alone: a derived value changing is not an edit.
"""

import logging

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from roomflow.models import db
from roomflow.models.ffe import RoomFFEItem, VisibilityRule

logger = logging.getLogger(__name__)


def unlocks_children(parent) -> bool:
    """True when ``parent``'s rule reveals its sub-items."""
    rule = VisibilityRule(parent.visibility_rule)
    if rule == VisibilityRule.ALWAYS:
        return True
    return parent.chosen_option is not None and parent.chosen_option in (
        parent.visibility_options or ()
    )


def resolve_visibility(items) -> dict[str, bool]:
    """Return ``{item_id: visible}`` for every item in ``items``.

    ``items`` must contain each sub-item's parent. A sub-item whose
    parent is missing from the collection is reported hidden.
    """
    by_id = {item.id: item for item in items}
    resolved: dict[str, bool] = {}

    def _visible(item, seen):
        if item.id in resolved:
            return resolved[item.id]
        if item.parent_item_id is None:
            result = True
        else:
            parent = by_id.get(item.parent_item_id)
            if parent is None or parent.id in seen:
                result = False
            else:
                result = _visible(parent, seen | {item.id}) and unlocks_children(parent)
        resolved[item.id] = result
        return result

    for item in by_id.values():
        _visible(item, frozenset())
    return resolved


def visible_items(items) -> list:
    """Filter ``items`` down to the visible ones, order preserved."""
    items = list(items)
    resolved = resolve_visibility(items)
    return [item for item in items if resolved[item.id]]


def refresh_visibility(items) -> dict[str, bool]:
    """Recompute and store the ``visible`` cache.

    Returns ``{item_id: visible}`` for the rows whose cached value
    changed. Caller owns the transaction.
    """
    items = list(items)
    resolved = resolve_visibility(items)
    changed = {}
    for item in items:
        value = resolved[item.id]
        if item.visible != value:
            store_visible(item, value)
            changed[item.id] = value
    if changed:
        logger.debug("Visibility cache refreshed for %d items", len(changed))
    return changed


def store_visible(item, value: bool) -> None:
    """Write the ``visible`` cache without bumping the row version.

    Persistent rows are updated through Core and the loaded attribute is
    marked clean; pending rows and plain objects just get the attribute.
    """
    state = sa_inspect(item, raiseerr=False)
    if state is None or not state.persistent:
        item.visible = value
        return
    db.session.execute(
        update(RoomFFEItem.__table__)
        .where(RoomFFEItem.__table__.c.id == item.id)
        .values(visible=value)
    )
    set_committed_value(item, "visible", value)
