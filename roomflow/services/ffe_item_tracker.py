"""
Item state tracker — status, note, chosen option and quantity of one
FFE item.

Transaction policy: every public function commits. All field changes of
one call land in a single transaction together with the progress
recalculation and change-log rows.

Scope of a write:
    - the addressed item
    - the visibility cache of its own sub-items (option changes)
    - the rows of its quantity group (PER_SUB_UNIT quantity changes)
Nothing else in the instance is modified.

Concurrency: callers pass the ``version`` they last read as
``expected_version``; a mismatch raises StaleWriteError. Writes that race
past that check are caught by the mapper version counter and surface as
the same exception. Nothing is retried here.
"""

import logging
from datetime import datetime, timezone

from roomflow.core.exceptions import ConflictError, ValidationError
from roomflow.models import db
from roomflow.models.change_log import write_change
from roomflow.models.ffe import (
    CURRENT_ITEM_STATES,
    LEGACY_ITEM_STATES,
    UNTOUCHED_ITEM_STATES,
    FFEItemState,
    QuantityMode,
    RoomFFEItem,
    validate_item_transition,
)
from roomflow.services.ffe_instance_service import recalculate_progress
from roomflow.services.ffe_visibility import resolve_visibility, store_visible
from roomflow.services.helpers.scoped_queries import get_scoped, lock_room
from roomflow.services.helpers.transactions import check_version, transaction

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("status", "note", "option", "quantity")


# ═══════════════════════════════════════════════════════════════════
# SINGLE-FIELD OPERATIONS
# ═══════════════════════════════════════════════════════════════════

def set_status(item_id: str, status, *, expected_version: int | None = None,
               actor: str = "system") -> dict:
    return update_item(item_id, {"status": status, "expected_version": expected_version},
                       actor=actor)


def set_note(item_id: str, text: str | None, *, expected_version: int | None = None,
             actor: str = "system") -> dict:
    return update_item(item_id, {"note": text, "expected_version": expected_version},
                       actor=actor)


def choose_option(item_id: str, option: str | None, *, expected_version: int | None = None,
                  actor: str = "system") -> dict:
    """Record the chosen option; sub-item visibility follows."""
    return update_item(item_id, {"option": option, "expected_version": expected_version},
                       actor=actor)


def set_quantity(item_id: str, count: int, *, confirm_data_loss: bool = False,
                 expected_version: int | None = None, actor: str = "system") -> dict:
    return update_item(item_id, {"quantity": count, "expected_version": expected_version},
                       confirm_data_loss=confirm_data_loss, actor=actor)


# ═══════════════════════════════════════════════════════════════════
# COMBINED UPDATE
# ═══════════════════════════════════════════════════════════════════

def update_item(
    item_id: str,
    data: dict,
    *,
    confirm_data_loss: bool = False,
    actor: str = "system",
) -> dict:
    """Apply any of status / note / option / quantity in one transaction.

    Args:
        item_id: Target RoomFFEItem.
        data: Fields to change, plus optional ``expected_version``.
        confirm_data_loss: Allow a quantity reduction to remove
            customised units.
        actor: Recorded in the change log.

    Returns:
        ``{item, changes, visibility, quantity_group, instance}``. ``item``
        is None when a quantity reduction removed the addressed unit.

    Raises:
        NotFoundError: Unknown item.
        ValidationError: Bad or retired status, bad quantity, unknown option.
        ConflictError: Reduction would drop customised units without
            ``confirm_data_loss``.
        StaleWriteError: ``expected_version`` is outdated.
    """
    unknown = set(data) - set(UPDATABLE_FIELDS) - {"expected_version"}
    if unknown:
        raise ValidationError(
            f"Unknown item fields: {', '.join(sorted(unknown))}",
            details={field: "not updatable" for field in unknown},
        )
    if not any(field in data for field in UPDATABLE_FIELDS):
        raise ValidationError("Nothing to update", details={"fields": list(UPDATABLE_FIELDS)})

    new_status = _parse_status(data["status"]) if "status" in data else None
    new_note = _clean_note(data["note"]) if "note" in data else None
    new_quantity = _parse_quantity(data["quantity"]) if "quantity" in data else None

    item = get_scoped(RoomFFEItem, item_id)
    instance = item.section.instance
    room_id = instance.room_id
    changes: dict = {}
    group_result = None

    with transaction("update_item", resource_id=item_id):
        if "quantity" in data:
            lock_room(room_id)
        check_version(item, data.get("expected_version"), "RoomFFEItem")

        if "status" in data:
            changes.update(_apply_status(item, new_status))
        if "note" in data:
            changes.update(_apply_note(item, new_note))
        if "option" in data:
            changes.update(_apply_option(item, data["option"]))
        if "quantity" in data:
            group_result = _apply_quantity(item, new_quantity, confirm_data_loss)
            changes.update(group_result.pop("changes"))

        db.session.flush()
        item_removed = group_result is not None and item_id in group_result["removed_item_ids"]
        visibility = {} if item_removed else _refresh_sub_item_cache(item, instance)
        if group_result is not None:
            for unit_id in group_result["added_item_ids"]:
                unit = db.session.get(RoomFFEItem, unit_id)
                visibility.update(_refresh_sub_item_cache(unit, instance))
        recalculate_progress(instance)

        for field, diff in changes.items():
            write_change(
                entity_type="ffe_item",
                entity_id=item_id,
                action=f"item.{_ACTION_BY_FIELD[field]}",
                actor=actor,
                org_id=instance.room.org_id,
                room_id=room_id,
                instance_id=instance.id,
                diff={field: diff},
            )

    if changes:
        logger.info(
            "FFE item updated id=%s fields=%s", item_id, ",".join(sorted(changes)),
            extra={"room_id": room_id, "item_id": item_id},
        )

    return {
        "item": None if item_removed else item.to_dict(),
        "changes": changes,
        "visibility": visibility,
        "quantity_group": group_result,
        "instance": {
            "id": instance.id,
            "progress": instance.progress,
            "status": instance.status.value,
        },
    }


_ACTION_BY_FIELD = {
    "status": "set_status",
    "note": "set_note",
    "chosen_option": "choose_option",
    "quantity": "set_quantity",
}


# ═══════════════════════════════════════════════════════════════════
# FIELD APPLIERS
# ═══════════════════════════════════════════════════════════════════

def _parse_status(value) -> FFEItemState:
    try:
        status = FFEItemState(value)
    except ValueError:
        raise ValidationError(
            f"Unknown item status {value!r}",
            details={"status": value, "allowed": sorted(s.value for s in CURRENT_ITEM_STATES)},
        ) from None
    if status in LEGACY_ITEM_STATES:
        raise ValidationError(
            f"Status {status.value} is retired and can no longer be assigned",
            details={"status": status.value, "allowed": sorted(s.value for s in CURRENT_ITEM_STATES)},
        )
    return status


def _apply_status(item: RoomFFEItem, new_status: FFEItemState) -> dict:
    old_status = item.status
    if old_status == new_status:
        return {}
    if not validate_item_transition(old_status, new_status):
        raise ValidationError(
            f"Invalid status transition: {old_status.value} → {new_status.value}",
            details={"from": old_status.value, "to": new_status.value},
        )
    item.status = new_status
    item.completed_at = (
        datetime.now(timezone.utc) if new_status == FFEItemState.COMPLETED else None
    )
    return {"status": {"old": old_status.value, "new": new_status.value}}


def _clean_note(value) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("note must be text", details={"note": type(value).__name__})
    return value if value.strip() else None


def _apply_note(item: RoomFFEItem, note: str | None) -> dict:
    if item.note == note:
        return {}
    old = item.note
    item.note = note
    return {"note": {"old": old, "new": note}}


def _apply_option(item: RoomFFEItem, option) -> dict:
    if option is not None:
        if not isinstance(option, str):
            raise ValidationError("option must be text", details={"option": option})
        if option not in (item.options or []):
            raise ValidationError(
                f"'{option}' is not an option of item '{item.name}'",
                details={"option": option, "allowed": list(item.options or [])},
            )
    if item.chosen_option == option:
        return {}
    old = item.chosen_option
    item.chosen_option = option
    return {"chosen_option": {"old": old, "new": option}}


def _refresh_sub_item_cache(item: RoomFFEItem, instance) -> dict[str, bool]:
    """Resolve visibility and store it for ``item``'s own sub-items only."""
    if not item.children:
        return {}
    resolved = resolve_visibility(instance.all_items())
    visibility = {}
    for child in item.children:
        value = resolved.get(child.id, False)
        if child.visible != value:
            store_visible(child, value)
        visibility[child.id] = value
    return visibility


# ═══════════════════════════════════════════════════════════════════
# QUANTITY
# ═══════════════════════════════════════════════════════════════════

def _parse_quantity(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("quantity must be an integer", details={"quantity": value})
    if value < 1:
        raise ValidationError("quantity must be >= 1", details={"quantity": value})
    return value


def is_customized(item: RoomFFEItem) -> bool:
    """Anything a person entered on the row or on one of its sub-items."""
    if item.status not in UNTOUCHED_ITEM_STATES:
        return True
    if item.note and item.note.strip():
        return True
    if item.chosen_option is not None:
        return True
    return any(is_customized(child) for child in item.children)


def _apply_quantity(item: RoomFFEItem, count: int, confirm_data_loss: bool) -> dict:
    if item.quantity_mode != QuantityMode.PER_SUB_UNIT or item.quantity_group_id is None:
        old = item.quantity
        item.quantity = count
        return {
            "changes": {} if old == count else {"quantity": {"old": old, "new": count}},
            "quantity_group_id": None,
            "quantity": count,
            "unit_ids": [item.id],
            "added_item_ids": [],
            "removed_item_ids": [],
        }

    group = (
        RoomFFEItem.query
        .filter_by(quantity_group_id=item.quantity_group_id)
        .order_by(RoomFFEItem.unit_index)
        .all()
    )
    current = len(group)
    added: list[RoomFFEItem] = []
    removed_ids: list[str] = []

    if count > current:
        definition = group[0]
        for index in range(current + 1, count + 1):
            added.append(_clone_unit(definition, index))
    elif count < current:
        # uncustomised first, then highest unit index first
        ranked = sorted(group, key=lambda u: (is_customized(u), -(u.unit_index or 0)))
        to_remove = ranked[: current - count]
        lost = [u.id for u in to_remove if is_customized(u)]
        if lost and not confirm_data_loss:
            raise ConflictError(
                "RoomFFEItem",
                "quantity",
                count,
                message=(
                    f"Reducing '{item.name}' to {count} would remove "
                    f"{len(lost)} customised unit(s); confirm to proceed"
                ),
                details={"customized_item_ids": lost, "requested_quantity": count},
            )
        for unit in to_remove:
            removed_ids.append(unit.id)
            _delete_unit(unit)

    survivors = sorted(
        [u for u in group if u.id not in removed_ids], key=lambda u: u.unit_index or 0,
    ) + added
    for index, unit in enumerate(survivors, start=1):
        unit.unit_index = index
        unit.quantity = count

    db.session.flush()
    return {
        "changes": {} if count == current else {"quantity": {"old": current, "new": count}},
        "quantity_group_id": item.quantity_group_id,
        "quantity": count,
        "unit_ids": [u.id for u in survivors],
        "added_item_ids": [u.id for u in added],
        "removed_item_ids": removed_ids,
    }


def _clone_unit(definition: RoomFFEItem, unit_index: int) -> RoomFFEItem:
    """New unit of a group: same definition, fresh tracking state."""
    unit = _copy_definition(definition)
    unit.unit_index = unit_index
    unit.quantity_group_id = definition.quantity_group_id
    definition.section.items.append(unit)
    for child_def in definition.children:
        child = _copy_definition(child_def)
        child.parent = unit
        child.visible = False
        definition.section.items.append(child)
    return unit


def _copy_definition(source: RoomFFEItem) -> RoomFFEItem:
    return RoomFFEItem(
        template_item_id=source.template_item_id,
        name=source.name,
        description=source.description,
        category=source.category,
        order=source.order,
        status=FFEItemState.NOT_STARTED,
        quantity=source.quantity,
        options=list(source.options or []),
        visibility_rule=source.visibility_rule,
        visibility_options=list(source.visibility_options or []),
        quantity_mode=source.quantity_mode,
        sub_unit_label=source.sub_unit_label,
        is_required=source.is_required,
        is_custom=source.is_custom,
        visible=True,
    )


def _delete_unit(unit: RoomFFEItem) -> None:
    section = unit.section
    for child in list(unit.children):
        unit.children.remove(child)
        section.items.remove(child)
        db.session.delete(child)
    section.items.remove(unit)
    db.session.delete(unit)
