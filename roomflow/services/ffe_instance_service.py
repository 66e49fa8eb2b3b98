"""
FFE instance service — reading the room checklist and structural edits.

Transaction policy: write functions commit via ``transaction()``;
``recalculate_progress`` and ``serialize_instance`` only touch the
session state and leave the commit to their caller.

Listing always recomputes visibility with the resolver; the ``visible``
column is never trusted for reads.
"""

import logging
from datetime import datetime, timezone

from roomflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from roomflow.models import db
from roomflow.models.change_log import write_change
from roomflow.models.ffe import (
    DONE_ITEM_STATES,
    MAX_CUSTOM_ITEM_QUANTITY,
    MAX_ITEM_NAME_LENGTH,
    UNTOUCHED_ITEM_STATES,
    FFEItemState,
    InstanceStatus,
    QuantityMode,
    RoomFFEInstance,
    RoomFFEItem,
    RoomFFESection,
    VisibilityRule,
)
from roomflow.models.org import Room
from roomflow.services.ffe_visibility import refresh_visibility, resolve_visibility, visible_items
from roomflow.services.helpers.scoped_queries import get_scoped, lock_room
from roomflow.services.helpers.transactions import transaction

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
# READ
# ═══════════════════════════════════════════════════════════════════

def serialize_instance(instance: RoomFFEInstance, *, only_visible: bool = False) -> dict:
    """Full section -> item -> sub-item tree with resolved visibility."""
    resolved = resolve_visibility(instance.all_items())

    def _item(item):
        d = item.to_dict()
        d["visible"] = resolved[item.id]
        d["sub_items"] = [
            _item(child) for child in _sorted(item.children)
            if not only_visible or resolved[child.id]
        ]
        return d

    sections = []
    for section in instance.sections:
        s = section.to_dict()
        s["items"] = [
            _item(item) for item in _sorted(section.items)
            if item.parent_item_id is None and (not only_visible or resolved[item.id])
        ]
        sections.append(s)

    d = instance.to_dict()
    d["sections"] = sections
    return d


def get_instance_tree(room_id: str, *, only_visible: bool = False) -> dict | None:
    """Return the room's instance tree, or None when it has none.

    Raises:
        NotFoundError: Unknown room.
    """
    room = get_scoped(Room, room_id)
    instance = RoomFFEInstance.query.filter_by(room_id=room.id).first()
    if instance is None:
        return None
    return serialize_instance(instance, only_visible=only_visible)


def get_progress_summary(room_ids: list[str]) -> dict:
    """Progress figures per room; rooms without an instance report zeros."""
    instances = {
        inst.room_id: inst
        for inst in RoomFFEInstance.query.filter(RoomFFEInstance.room_id.in_(room_ids)).all()
    }
    summary = {}
    for room_id in room_ids:
        instance = instances.get(room_id)
        if instance is None:
            summary[room_id] = {
                "has_instance": False,
                "instance_id": None,
                "status": InstanceStatus.NOT_STARTED.value,
                "progress": 0,
                "total_items": 0,
                "completed_items": 0,
                "in_progress_items": 0,
            }
            continue
        items = visible_items(instance.all_items())
        summary[room_id] = {
            "has_instance": True,
            "instance_id": instance.id,
            "status": instance.status.value,
            "progress": instance.progress,
            "total_items": len(items),
            "completed_items": sum(1 for i in items if i.status in DONE_ITEM_STATES),
            "in_progress_items": sum(
                1 for i in items
                if i.status not in DONE_ITEM_STATES and i.status not in UNTOUCHED_ITEM_STATES
            ),
        }
    return summary


# ═══════════════════════════════════════════════════════════════════
# PROGRESS
# ═══════════════════════════════════════════════════════════════════

def recalculate_progress(instance: RoomFFEInstance) -> int:
    """Recompute ``progress`` and ``status`` from the visible items.

    Hidden sub-items do not count: they are not part of the checklist
    until their parent's option reveals them.
    """
    items = visible_items(instance.all_items())
    total = len(items)
    done = sum(1 for item in items if item.status in DONE_ITEM_STATES)
    touched = any(item.status not in UNTOUCHED_ITEM_STATES for item in items)

    progress = round(done * 100 / total) if total else 0
    if total and done == total:
        status = InstanceStatus.COMPLETED
    elif touched:
        status = InstanceStatus.IN_PROGRESS
    else:
        status = InstanceStatus.NOT_STARTED

    if status == InstanceStatus.COMPLETED and instance.completed_at is None:
        instance.completed_at = datetime.now(timezone.utc)
    elif status != InstanceStatus.COMPLETED:
        instance.completed_at = None

    instance.progress = progress
    instance.status = status
    return progress


# ═══════════════════════════════════════════════════════════════════
# CUSTOM SECTIONS / ITEMS
# ═══════════════════════════════════════════════════════════════════

def add_custom_section(
    instance_id: str,
    *,
    name: str,
    description: str | None = None,
    actor: str = "system",
) -> dict:
    """Append a user-defined section to an instance."""
    name = _clean_name(name)
    instance = get_scoped(RoomFFEInstance, instance_id)

    with transaction("add_custom_section"):
        lock_room(instance.room_id)
        next_order = max((s.order for s in instance.sections), default=0) + 1
        section = RoomFFESection(
            name=name,
            description=description,
            order=next_order,
            is_custom=True,
        )
        instance.sections.append(section)
        db.session.flush()
        write_change(
            entity_type="ffe_section",
            entity_id=section.id,
            action="section.add_custom",
            actor=actor,
            room_id=instance.room_id,
            instance_id=instance.id,
            diff={"name": name, "order": next_order},
        )

    logger.info("Custom FFE section added id=%s instance=%s", section.id, instance.id,
                extra={"room_id": instance.room_id, "instance_id": instance.id})
    return section.to_dict()


def add_custom_item(
    section_id: str,
    data: dict,
    *,
    actor: str = "system",
) -> list[dict]:
    """Add user-defined top-level items to a section.

    ``data`` keys: name (required), description, category, quantity,
    options, note. A quantity of N creates N rows named "<name> #1" ..
    "<name> #N", each tracked on its own with quantity 1.

    Raises:
        ValidationError: Bad name, options, or quantity outside 1..50.
    """
    name = _clean_name(data.get("name"))
    quantity = data.get("quantity", 1)
    if (isinstance(quantity, bool) or not isinstance(quantity, int)
            or not 1 <= quantity <= MAX_CUSTOM_ITEM_QUANTITY):
        raise ValidationError(
            f"quantity must be between 1 and {MAX_CUSTOM_ITEM_QUANTITY}",
            details={"quantity": quantity},
        )
    names = [name] if quantity == 1 else [
        _clean_name(f"{name} #{i}") for i in range(1, quantity + 1)
    ]
    options = data.get("options") or []
    if not isinstance(options, list) or not all(isinstance(o, str) and o.strip() for o in options):
        raise ValidationError("options must be a list of non-empty strings", details={"options": options})

    section = get_scoped(RoomFFESection, section_id)
    instance = section.instance

    with transaction("add_custom_item"):
        lock_room(instance.room_id)
        first_order = max((i.order for i in section.items), default=0) + 1
        items = []
        for offset, item_name in enumerate(names):
            item = RoomFFEItem(
                name=item_name,
                description=data.get("description"),
                category=data.get("category") or section.name,
                order=first_order + offset,
                status=FFEItemState.NOT_STARTED,
                note=data.get("note"),
                quantity=1,
                options=[o.strip() for o in options],
                visibility_rule=VisibilityRule.ALWAYS,
                visibility_options=[],
                quantity_mode=QuantityMode.FIXED,
                is_custom=True,
                visible=True,
            )
            section.items.append(item)
            items.append(item)
        db.session.flush()
        recalculate_progress(instance)
        for item in items:
            write_change(
                entity_type="ffe_item",
                entity_id=item.id,
                action="item.add_custom",
                actor=actor,
                room_id=instance.room_id,
                instance_id=instance.id,
                diff={"name": item.name, "section_id": section.id},
            )

    logger.info("Custom FFE items added count=%d section=%s", len(items), section.id,
                extra={"room_id": instance.room_id, "instance_id": instance.id})
    return [item.to_dict() for item in items]


# ═══════════════════════════════════════════════════════════════════
# LINKED SUB-ITEMS
# ═══════════════════════════════════════════════════════════════════

def add_linked_item(
    parent_item_id: str,
    *,
    name: str,
    actor: str = "system",
) -> dict:
    """Attach a new sub-item under a top-level item.

    Names are unique per parent, compared case-insensitively.

    Raises:
        ValidationError: Parent is itself a sub-item, or bad name.
        ConflictError: Parent already has a sub-item with this name.
    """
    name = _clean_name(name)
    parent = get_scoped(RoomFFEItem, parent_item_id)
    if parent.parent_item_id is not None:
        raise ValidationError(
            "Sub-items cannot have sub-items of their own",
            details={"parent_item_id": parent_item_id},
        )
    instance = parent.section.instance

    with transaction("add_linked_item", resource_id=parent_item_id):
        lock_room(instance.room_id)
        if any(child.name.lower() == name.lower() for child in parent.children):
            raise ConflictError("RoomFFEItem", "name", name)

        next_order = max((c.order for c in parent.children), default=0) + 1
        child = RoomFFEItem(
            section_id=parent.section_id,
            name=name,
            category=parent.category,
            order=next_order,
            status=FFEItemState.NOT_STARTED,
            quantity=1,
            options=[],
            visibility_rule=VisibilityRule.ALWAYS,
            visibility_options=[],
            quantity_mode=QuantityMode.FIXED,
            is_custom=True,
            visible=False,
        )
        child.parent = parent
        parent.section.items.append(child)
        db.session.flush()
        refresh_visibility(instance.all_items())
        recalculate_progress(instance)
        write_change(
            entity_type="ffe_item",
            entity_id=child.id,
            action="item.add_linked",
            actor=actor,
            room_id=instance.room_id,
            instance_id=instance.id,
            diff={"parent_item_id": parent.id, "name": name},
        )

    logger.info("Linked FFE item added id=%s parent=%s", child.id, parent.id,
                extra={"room_id": instance.room_id, "item_id": child.id})
    return child.to_dict()


def remove_linked_item(
    parent_item_id: str,
    child_item_id: str,
    *,
    actor: str = "system",
) -> dict:
    """Delete one sub-item of a parent.

    Raises:
        NotFoundError: Unknown parent, or the child does not belong to it.
    """
    parent = get_scoped(RoomFFEItem, parent_item_id)
    child = get_scoped(RoomFFEItem, child_item_id)
    if child.parent_item_id != parent.id:
        raise NotFoundError(resource="RoomFFEItem", resource_id=child_item_id)
    instance = parent.section.instance

    with transaction("remove_linked_item", resource_id=child_item_id):
        lock_room(instance.room_id)
        removed = {"id": child.id, "name": child.name}
        db.session.delete(child)
        db.session.flush()
        db.session.expire(parent, ["children"])
        db.session.expire(parent.section, ["items"])
        recalculate_progress(instance)
        write_change(
            entity_type="ffe_item",
            entity_id=removed["id"],
            action="item.remove_linked",
            actor=actor,
            room_id=instance.room_id,
            instance_id=instance.id,
            diff={"parent_item_id": parent.id, "name": removed["name"]},
        )

    logger.info("Linked FFE item removed id=%s parent=%s", removed["id"], parent.id,
                extra={"room_id": instance.room_id, "item_id": removed["id"]})
    return {"removed_item_id": removed["id"], "parent_item_id": parent.id}


# ── Helpers ──────────────────────────────────────────────────────────────────

def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required", details={"name": name})
    name = name.strip()
    if len(name) > MAX_ITEM_NAME_LENGTH:
        raise ValidationError(
            f"name must be at most {MAX_ITEM_NAME_LENGTH} characters",
            details={"name": len(name)},
        )
    return name


def _sorted(items):
    return sorted(items, key=lambda i: (i.order, i.unit_index or 0, i.id or ""))
