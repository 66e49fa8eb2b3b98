"""
Instance materializer — template -> per-room FFE instance.

Transaction policy: ``materialize`` commits. The room row is locked for
the duration, and the unique constraint on ``room_ffe_instances.room_id``
catches any writer that slipped past the lock (SQLite, other processes).

What a materialisation produces:
    - one RoomFFESection per template section, same order
    - one RoomFFEItem per FIXED template item (quantity = count)
    - ``quantity`` rows per PER_SUB_UNIT item, sharing a quantity_group_id,
      unit_index 1..n, each carrying quantity = n
    - under every row, a clone of each linked item as a sub-item
    - visibility cache filled by the resolver

Items that appear only as somebody's linked item are not materialised at
the top level.
"""

import enum
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from roomflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from roomflow.models import db
from roomflow.models.change_log import write_change
from roomflow.models.ffe import (
    CURRENT_ITEM_STATES,
    FFEItemState,
    QuantityMode,
    RoomFFEInstance,
    RoomFFEItem,
    RoomFFESection,
    TemplateStatus,
)
from roomflow.services.ffe_instance_service import recalculate_progress, serialize_instance
from roomflow.services.ffe_visibility import refresh_visibility
from roomflow.services.helpers.scoped_queries import lock_room
from roomflow.services.helpers.transactions import transaction
from roomflow.services.template_store import (
    DEFAULT_TEMPLATE_KEY,
    SqlTemplateStore,
    TemplateItemSpec,
    TemplateSpec,
    builtin_template,
    validate_linkage,
)

logger = logging.getLogger(__name__)


class OnExisting(str, enum.Enum):
    """What to do when the room already has an instance."""

    RETURN_EXISTING = "return_existing"
    FAIL = "fail"


@dataclass
class MaterializeResult:
    instance: RoomFFEInstance
    created: bool


# ═══════════════════════════════════════════════════════════════════
# PUBLIC API
# ═══════════════════════════════════════════════════════════════════

def materialize(
    room_id: str,
    *,
    template_id: str,
    on_existing,
    actor: str = "system",
    name: str | None = None,
    template_store=None,
) -> MaterializeResult:
    """Create the room's FFE instance from a template.

    Args:
        room_id: Target room.
        template_id: Stored template id, or ``"default"`` for the
            built-in set matching the room type.
        on_existing: ``OnExisting`` (or its value). Required; there is
            no implicit choice between returning and failing.
        actor: Recorded in the change log.
        name: Instance name; defaults to "<room> FFE".
        template_store: Source of template snapshots. Defaults to the
            SQL-backed store.

    Raises:
        NotFoundError: Unknown room or template.
        ValidationError: Archived template, bad quantities or links.
        ConflictError: Instance exists and ``on_existing`` is FAIL.
    """
    mode = _coerce_on_existing(on_existing)
    store = template_store or SqlTemplateStore()

    try:
        with transaction("materialize", resource="RoomFFEInstance", resource_id=room_id):
            room = lock_room(room_id)
            existing = RoomFFEInstance.query.filter_by(room_id=room.id).first()
            if existing is not None:
                return _existing_outcome(existing, mode)

            spec = _resolve_template(room, template_id, store)
            instance = _build_instance(room, spec, actor=actor, name=name)
            db.session.add(instance)
            db.session.flush()

            refresh_visibility(instance.all_items())
            recalculate_progress(instance)
            write_change(
                entity_type="ffe_instance",
                entity_id=instance.id,
                action="instance.materialize",
                actor=actor,
                org_id=room.org_id,
                room_id=room.id,
                instance_id=instance.id,
                diff={
                    "template_id": spec.id,
                    "template_key": spec.key,
                    "sections": len(instance.sections),
                    "items": len(instance.all_items()),
                },
            )
    except IntegrityError:
        # Another writer created the instance between our check and insert.
        existing = RoomFFEInstance.query.filter_by(room_id=room_id).first()
        if existing is None:
            raise
        return _existing_outcome(existing, mode)

    logger.info(
        "FFE instance materialized id=%s room=%s items=%d",
        instance.id, room_id, len(instance.all_items()),
        extra={"room_id": room_id, "instance_id": instance.id},
    )
    return MaterializeResult(instance=instance, created=True)


def materialize_instance(
    room_id: str,
    *,
    template_id: str,
    on_existing,
    actor: str = "system",
    name: str | None = None,
) -> dict:
    """Dict-returning wrapper: ``{instance, created, noop}``."""
    result = materialize(
        room_id,
        template_id=template_id,
        on_existing=on_existing,
        actor=actor,
        name=name,
    )
    return {
        "instance": serialize_instance(result.instance),
        "created": result.created,
        "noop": not result.created,
    }


# ═══════════════════════════════════════════════════════════════════
# INTERNALS
# ═══════════════════════════════════════════════════════════════════

def _coerce_on_existing(value) -> OnExisting:
    if value is None:
        raise ValidationError(
            "on_existing is required (return_existing | fail)",
            details={"on_existing": None},
        )
    try:
        return OnExisting(value)
    except ValueError:
        raise ValidationError(
            f"Unknown on_existing mode {value!r}",
            details={"on_existing": value},
        ) from None


def _existing_outcome(existing: RoomFFEInstance, mode: OnExisting) -> MaterializeResult:
    if mode is OnExisting.FAIL:
        raise ConflictError("RoomFFEInstance", "room_id", existing.room_id)
    logger.info(
        "FFE instance already exists id=%s room=%s; returning it",
        existing.id, existing.room_id,
        extra={"room_id": existing.room_id, "instance_id": existing.id},
    )
    return MaterializeResult(instance=existing, created=False)


def _resolve_template(room, template_id: str, store) -> TemplateSpec:
    if not template_id:
        raise ValidationError("template_id is required", details={"template_id": template_id})
    if template_id == DEFAULT_TEMPLATE_KEY:
        return builtin_template(room.type)

    spec = store.get_template(template_id, org_id=room.org_id)
    if spec is None:
        raise NotFoundError(resource="FFETemplate", resource_id=template_id, org_id=room.org_id)
    if spec.status == TemplateStatus.ARCHIVED:
        raise ValidationError(
            f"Template '{spec.name}' is archived",
            details={"template_id": template_id},
        )
    return spec


def _build_instance(room, spec: TemplateSpec, *, actor: str, name: str | None) -> RoomFFEInstance:
    linked_only = validate_linkage(spec)
    items_by_id = spec.items_by_id()

    instance = RoomFFEInstance(
        room_id=room.id,
        template_id=spec.id,
        template_key=spec.key,
        name=name or f"{room.display_name} FFE",
        created_by=actor,
    )
    for section_spec in sorted(spec.sections, key=lambda s: s.order):
        section = RoomFFESection(
            template_section_id=section_spec.id if section_spec.stored else None,
            name=section_spec.name,
            description=section_spec.description,
            order=section_spec.order,
        )
        instance.sections.append(section)

        for item_spec in sorted(section_spec.items, key=lambda i: i.order):
            if item_spec.id in linked_only:
                continue
            for row in _expand_units(item_spec):
                section.items.append(row)
                for child_id in item_spec.linked_item_ids:
                    child = _clone_item(
                        items_by_id[child_id],
                        quantity=_checked_quantity(items_by_id[child_id]),
                    )
                    child.parent = row
                    child.visible = False
                    section.items.append(child)
    return instance


def _expand_units(item_spec: TemplateItemSpec) -> list[RoomFFEItem]:
    count = _checked_quantity(item_spec)
    if item_spec.quantity_mode == QuantityMode.PER_SUB_UNIT:
        group_id = str(uuid.uuid4())
        return [
            _clone_item(
                item_spec,
                quantity=count,
                quantity_mode=QuantityMode.PER_SUB_UNIT,
                unit_index=index,
                quantity_group_id=group_id,
            )
            for index in range(1, count + 1)
        ]
    return [_clone_item(item_spec, quantity=count)]


def _checked_quantity(item_spec: TemplateItemSpec) -> int:
    if not isinstance(item_spec.quantity, int) or item_spec.quantity < 1:
        raise ValidationError(
            f"Template item '{item_spec.name}' has invalid quantity {item_spec.quantity!r}",
            details={"item_id": item_spec.id, "quantity": item_spec.quantity},
        )
    return item_spec.quantity


def _clone_item(
    item_spec: TemplateItemSpec,
    *,
    quantity: int,
    quantity_mode: QuantityMode = QuantityMode.FIXED,
    unit_index: int | None = None,
    quantity_group_id: str | None = None,
) -> RoomFFEItem:
    status = FFEItemState(item_spec.default_state)
    if status not in CURRENT_ITEM_STATES:
        status = FFEItemState.NOT_STARTED
    return RoomFFEItem(
        template_item_id=item_spec.id if item_spec.stored else None,
        name=item_spec.name,
        description=item_spec.description,
        category=item_spec.category,
        order=item_spec.order,
        status=status,
        quantity=quantity,
        options=list(item_spec.options),
        visibility_rule=item_spec.visibility_rule,
        visibility_options=list(item_spec.visibility_options),
        quantity_mode=quantity_mode,
        sub_unit_label=item_spec.sub_unit_label,
        quantity_group_id=quantity_group_id,
        unit_index=unit_index,
        is_required=item_spec.is_required,
        is_custom=False,
        visible=True,
    )
