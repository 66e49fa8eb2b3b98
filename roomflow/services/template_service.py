"""
FFE template service — organisation template library.

Transaction policy: public functions commit, except
``seed_default_templates`` which only flushes (the CLI command commits,
mirroring the other seeders).

Editing a template never touches instances already materialised from
it; instances are deep copies.
"""

import logging
import uuid

from sqlalchemy import select

from roomflow.core.exceptions import ConflictError, ValidationError
from roomflow.models import db
from roomflow.models.change_log import field_diff, write_change
from roomflow.models.ffe import (
    CURRENT_ITEM_STATES,
    MAX_ITEM_NAME_LENGTH,
    FFEItemState,
    FFETemplate,
    FFETemplateItem,
    FFETemplateSection,
    QuantityMode,
    RoomFFEInstance,
    TemplateStatus,
    VisibilityRule,
)
from roomflow.models.org import Organization
from roomflow.services.helpers.scoped_queries import get_scoped
from roomflow.services.helpers.transactions import transaction
from roomflow.services.template_store import (
    builtin_template_definitions,
    snapshot_template,
    validate_linkage,
)

logger = logging.getLogger(__name__)

_ITEM_FIELDS = (
    "name", "description", "category", "order", "is_required", "options",
    "default_state", "quantity_mode", "quantity", "sub_unit_label",
    "visibility_rule", "visibility_options", "linked_item_ids",
)


# ═══════════════════════════════════════════════════════════════════
# READ
# ═══════════════════════════════════════════════════════════════════

def get_template(template_id: str, *, org_id: int) -> dict:
    return get_scoped(FFETemplate, template_id, org_id=org_id).to_dict()


def list_templates(org_id: int, *, status=None, room_type: str | None = None) -> list[dict]:
    """Templates of an organisation, default first, then by name."""
    stmt = select(FFETemplate).where(FFETemplate.org_id == org_id)
    if status is not None:
        stmt = stmt.where(FFETemplate.status == _parse_enum(TemplateStatus, status, "status"))
    stmt = stmt.order_by(FFETemplate.is_default.desc(), FFETemplate.name)
    templates = db.session.execute(stmt).scalars().all()
    if room_type is not None:
        templates = [t for t in templates if not t.room_types or room_type in t.room_types]
    return [t.to_dict(include_sections=False) for t in templates]


# ═══════════════════════════════════════════════════════════════════
# CREATE / UPDATE
# ═══════════════════════════════════════════════════════════════════

def create_template(org_id: int, data: dict, *, actor: str = "system") -> dict:
    """Create a template with nested sections and items.

    Items reference each other in ``linked`` by their payload ``key``;
    keys are replaced with generated ids.

    Raises:
        ValidationError: Missing name, bad item fields or bad links.
        ConflictError: Name already used in the organisation.
    """
    name = _clean_name(data.get("name"), "name")
    get_scoped(Organization, org_id)
    _ensure_name_free(org_id, name)
    status = _parse_enum(TemplateStatus, data.get("status", TemplateStatus.DRAFT), "status")

    with transaction("create_template", resource="FFETemplate"):
        tpl = FFETemplate(
            org_id=org_id,
            name=name,
            description=data.get("description"),
            status=status,
            room_types=list(data.get("room_types") or []),
            created_by=actor,
        )
        _build_sections(tpl, data.get("sections") or [])
        db.session.add(tpl)
        db.session.flush()
        validate_linkage(snapshot_template(tpl))
        write_change(
            entity_type="ffe_template",
            entity_id=tpl.id,
            action="template.create",
            actor=actor,
            org_id=org_id,
            diff={"name": name, "sections": len(tpl.sections)},
        )

    logger.info("FFE template created id=%s org=%s", tpl.id, org_id,
                extra={"org_id": org_id, "template_id": tpl.id})
    return tpl.to_dict()


def update_template_item(item_id: str, data: dict, *, org_id: int, actor: str = "system") -> dict:
    """Edit one template item and bump the template version."""
    item = get_scoped(FFETemplateItem, item_id)
    tpl = item.section.template
    if tpl.org_id != org_id:
        get_scoped(FFETemplate, tpl.id, org_id=org_id)

    unknown = set(data) - set(_ITEM_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown template item fields: {', '.join(sorted(unknown))}",
            details={field: "not updatable" for field in unknown},
        )
    before = item.to_dict()
    fields = _item_fields({**before, **data})

    with transaction("update_template_item", resource="FFETemplateItem", resource_id=item_id):
        for key, value in fields.items():
            setattr(item, key, value)
        db.session.flush()
        validate_linkage(snapshot_template(tpl))
        tpl.version = (tpl.version or 1) + 1
        write_change(
            entity_type="ffe_template",
            entity_id=tpl.id,
            action="template.update_item",
            actor=actor,
            org_id=tpl.org_id,
            diff={"item_id": item.id, **field_diff(before, item.to_dict())},
        )

    logger.info("FFE template item updated id=%s template=%s", item.id, tpl.id,
                extra={"org_id": tpl.org_id, "template_id": tpl.id})
    return item.to_dict()


def copy_template(template_id: str, *, org_id: int, name: str, actor: str = "system") -> dict:
    """Deep-copy a template as a new DRAFT, non-default template."""
    source = get_scoped(FFETemplate, template_id, org_id=org_id)
    name = _clean_name(name, "name")
    _ensure_name_free(org_id, name)

    with transaction("copy_template", resource="FFETemplate", resource_id=template_id):
        copy = FFETemplate(
            org_id=org_id,
            name=name,
            description=source.description,
            status=TemplateStatus.DRAFT,
            is_default=False,
            room_types=list(source.room_types or []),
            created_by=actor,
        )
        id_map = {
            item.id: str(uuid.uuid4())
            for section in source.sections for item in section.items
        }
        for section in source.sections:
            new_section = FFETemplateSection(
                name=section.name, description=section.description, order=section.order,
            )
            for item in section.items:
                fields = _item_fields(item.to_dict())
                fields["linked_item_ids"] = [id_map[i] for i in fields["linked_item_ids"]]
                new_section.items.append(FFETemplateItem(id=id_map[item.id], **fields))
            copy.sections.append(new_section)
        db.session.add(copy)
        db.session.flush()
        write_change(
            entity_type="ffe_template",
            entity_id=copy.id,
            action="template.copy",
            actor=actor,
            org_id=org_id,
            diff={"source_template_id": source.id, "name": name},
        )

    logger.info("FFE template copied %s -> %s", source.id, copy.id,
                extra={"org_id": org_id, "template_id": copy.id})
    return copy.to_dict()


# ═══════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════

def archive_template(template_id: str, *, org_id: int, actor: str = "system") -> dict:
    """Retire a template.

    A template that instances were materialised from is archived so the
    provenance link survives; an unused one is deleted outright.
    """
    tpl = get_scoped(FFETemplate, template_id, org_id=org_id)
    in_use = RoomFFEInstance.query.filter_by(template_id=tpl.id).count()

    with transaction("archive_template", resource="FFETemplate", resource_id=template_id):
        if in_use:
            tpl.status = TemplateStatus.ARCHIVED
            tpl.is_default = False
            action = "archived"
        else:
            db.session.delete(tpl)
            action = "deleted"
        write_change(
            entity_type="ffe_template",
            entity_id=template_id,
            action=f"template.{'archive' if in_use else 'delete'}",
            actor=actor,
            org_id=org_id,
            diff={"instances": in_use},
        )

    logger.info("FFE template %s id=%s (instances=%d)", action, template_id, in_use,
                extra={"org_id": org_id, "template_id": template_id})
    return {"template_id": template_id, "action": action, "instances": in_use}


def set_default_template(template_id: str, *, org_id: int, actor: str = "system") -> dict:
    """Make a template the organisation default (and ACTIVE)."""
    tpl = get_scoped(FFETemplate, template_id, org_id=org_id)
    if tpl.status == TemplateStatus.ARCHIVED:
        raise ValidationError("Archived templates cannot be the default",
                              details={"template_id": template_id})

    with transaction("set_default_template", resource="FFETemplate", resource_id=template_id):
        (
            FFETemplate.query
            .filter(FFETemplate.org_id == org_id, FFETemplate.id != tpl.id,
                    FFETemplate.is_default.is_(True))
            .update({FFETemplate.is_default: False}, synchronize_session="fetch")
        )
        tpl.is_default = True
        tpl.status = TemplateStatus.ACTIVE
        write_change(
            entity_type="ffe_template",
            entity_id=tpl.id,
            action="template.set_default",
            actor=actor,
            org_id=org_id,
        )

    logger.info("FFE template id=%s is now default for org %s", tpl.id, org_id,
                extra={"org_id": org_id, "template_id": tpl.id})
    return tpl.to_dict(include_sections=False)


def seed_default_templates(org_id: int, *, actor: str = "system") -> int:
    """
    Store the built-in sets as ACTIVE templates of an organisation.
    Safe to run multiple times — skips names that already exist.

    Flush only; the caller commits.
    """
    created = 0
    for definition in builtin_template_definitions().values():
        exists = FFETemplate.query.filter_by(org_id=org_id, name=definition["name"]).first()
        if exists:
            continue
        tpl = FFETemplate(
            org_id=org_id,
            name=definition["name"],
            description=definition.get("description"),
            status=TemplateStatus.ACTIVE,
            room_types=list(definition.get("room_types") or []),
            created_by=actor,
        )
        _build_sections(tpl, definition["sections"])
        db.session.add(tpl)
        created += 1

    if created > 0:
        db.session.flush()
        logger.info("Seeded %d FFE templates for org %s", created, org_id,
                    extra={"org_id": org_id})
    return created


# ── Helpers ──────────────────────────────────────────────────────────────────

def _build_sections(tpl: FFETemplate, sections: list[dict]) -> None:
    """Attach sections/items from a payload, resolving ``linked`` keys to ids."""
    key_to_id = {}
    for section in sections:
        for item in section.get("items") or []:
            key = item.get("key") or item.get("name")
            if key in key_to_id:
                raise ValidationError(f"Duplicate item key {key!r}", details={"key": key})
            key_to_id[key] = str(uuid.uuid4())

    for s_order, section in enumerate(sections, start=1):
        new_section = FFETemplateSection(
            name=_clean_name(section.get("name"), "section name"),
            description=section.get("description"),
            order=section.get("order", s_order),
        )
        for i_order, item in enumerate(section.get("items") or [], start=1):
            key = item.get("key") or item.get("name")
            linked_keys = item.get("linked") or []
            unknown = [k for k in linked_keys if k not in key_to_id]
            if unknown:
                raise ValidationError(
                    f"Item {key!r} links to unknown item key(s): {', '.join(map(str, unknown))}",
                    details={"key": key, "linked": unknown},
                )
            payload = {k: v for k, v in item.items() if k in _ITEM_FIELDS}
            payload.setdefault("order", i_order)
            payload.setdefault("category", section.get("name"))
            payload["linked_item_ids"] = [key_to_id[k] for k in linked_keys]
            new_section.items.append(FFETemplateItem(id=key_to_id[key], **_item_fields(payload)))
        tpl.sections.append(new_section)


def _item_fields(data: dict) -> dict:
    """Validate and normalise template item fields."""
    quantity = data.get("quantity", 1)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("quantity must be an integer >= 1", details={"quantity": quantity})

    default_state = _parse_enum(FFEItemState, data.get("default_state") or FFEItemState.NOT_STARTED,
                                "default_state")
    if default_state not in CURRENT_ITEM_STATES:
        raise ValidationError(f"Status {default_state.value} is retired",
                              details={"default_state": default_state.value})

    options = list(data.get("options") or [])
    visibility_rule = _parse_enum(VisibilityRule, data.get("visibility_rule") or VisibilityRule.ALWAYS,
                                  "visibility_rule")
    visibility_options = list(data.get("visibility_options") or [])
    stray = [o for o in visibility_options if o not in options]
    if stray:
        raise ValidationError(
            "visibility_options must be a subset of options",
            details={"visibility_options": stray},
        )
    if visibility_rule == VisibilityRule.ON_OPTION and not visibility_options:
        raise ValidationError(
            "ON_OPTION visibility needs at least one revealing option",
            details={"visibility_options": []},
        )

    return {
        "name": _clean_name(data.get("name"), "item name"),
        "description": data.get("description"),
        "category": data.get("category"),
        "order": data.get("order", 0),
        "is_required": bool(data.get("is_required", False)),
        "options": options,
        "default_state": default_state,
        "quantity_mode": _parse_enum(QuantityMode, data.get("quantity_mode") or QuantityMode.FIXED,
                                     "quantity_mode"),
        "quantity": quantity,
        "sub_unit_label": data.get("sub_unit_label"),
        "visibility_rule": visibility_rule,
        "visibility_options": visibility_options,
        "linked_item_ids": list(data.get("linked_item_ids") or []),
    }


def _parse_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field} {value!r}",
            details={field: value, "allowed": [m.value for m in enum_cls]},
        ) from None


def _clean_name(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={field: value})
    value = value.strip()
    if len(value) > MAX_ITEM_NAME_LENGTH:
        raise ValidationError(f"{field} must be at most {MAX_ITEM_NAME_LENGTH} characters",
                              details={field: len(value)})
    return value


def _ensure_name_free(org_id: int, name: str) -> None:
    if FFETemplate.query.filter_by(org_id=org_id, name=name).first() is not None:
        raise ConflictError("FFETemplate", "name", name)
