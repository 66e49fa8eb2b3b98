"""
Template store — read-only snapshots of FFE templates.

The materializer never touches ``FFETemplate`` rows directly. It asks a
``TemplateStore`` for an immutable ``TemplateSpec`` and copies from that,
so nothing done to an instance can leak back into the template.

Two sources:
    - SqlTemplateStore: organisation-scoped rows in ``ffe_templates``.
    - Built-in default sets ("default"): picked by room type; bathrooms
      get the bathroom set, everything else the general set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from roomflow.core.exceptions import ValidationError
from roomflow.models.ffe import (
    FFEItemState,
    FFETemplate,
    QuantityMode,
    TemplateStatus,
    VisibilityRule,
)
from roomflow.models.org import BATHROOM_ROOM_TYPES
from roomflow.services.helpers.scoped_queries import get_scoped_or_none

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_KEY = "default"


# ═══════════════════════════════════════════════════════════════════
# SNAPSHOTS
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TemplateItemSpec:
    """Immutable copy of one template item."""

    id: str
    name: str
    order: int = 0
    description: str | None = None
    category: str | None = None
    is_required: bool = False
    options: tuple[str, ...] = ()
    default_state: FFEItemState = FFEItemState.NOT_STARTED
    quantity_mode: QuantityMode = QuantityMode.FIXED
    quantity: int = 1
    sub_unit_label: str | None = None
    visibility_rule: VisibilityRule = VisibilityRule.ALWAYS
    visibility_options: tuple[str, ...] = ()
    linked_item_ids: tuple[str, ...] = ()
    # False for built-in items whose ids are not ffe_template_items rows
    stored: bool = True


@dataclass(frozen=True)
class TemplateSectionSpec:
    id: str
    name: str
    order: int = 0
    description: str | None = None
    items: tuple[TemplateItemSpec, ...] = ()
    stored: bool = True


@dataclass(frozen=True)
class TemplateSpec:
    """Immutable copy of a whole template, ready to materialise."""

    id: str | None
    name: str
    org_id: int | None = None
    key: str | None = None
    status: TemplateStatus = TemplateStatus.ACTIVE
    sections: tuple[TemplateSectionSpec, ...] = field(default_factory=tuple)

    def items_by_id(self) -> dict[str, TemplateItemSpec]:
        return {item.id: item for section in self.sections for item in section.items}


class TemplateStore(Protocol):
    """Anything that can hand out template snapshots."""

    def get_template(self, template_id: str, *, org_id: int | None = None) -> TemplateSpec | None:
        ...


# ═══════════════════════════════════════════════════════════════════
# SQL-BACKED STORE
# ═══════════════════════════════════════════════════════════════════

def snapshot_template(tpl: FFETemplate) -> TemplateSpec:
    """Freeze an ``FFETemplate`` row (with sections and items) into a spec."""
    sections = []
    for section in tpl.sections:
        items = tuple(
            TemplateItemSpec(
                id=item.id,
                name=item.name,
                order=item.order,
                description=item.description,
                category=item.category,
                is_required=item.is_required,
                options=tuple(item.options or ()),
                default_state=item.default_state,
                quantity_mode=item.quantity_mode,
                quantity=item.quantity,
                sub_unit_label=item.sub_unit_label,
                visibility_rule=item.visibility_rule,
                visibility_options=tuple(item.visibility_options or ()),
                linked_item_ids=tuple(item.linked_item_ids or ()),
            )
            for item in section.items
        )
        sections.append(TemplateSectionSpec(
            id=section.id,
            name=section.name,
            order=section.order,
            description=section.description,
            items=items,
        ))
    return TemplateSpec(
        id=tpl.id,
        name=tpl.name,
        org_id=tpl.org_id,
        status=tpl.status,
        sections=tuple(sections),
    )


class SqlTemplateStore:
    """Template store backed by the ``ffe_templates`` tables."""

    def get_template(self, template_id: str, *, org_id: int | None = None) -> TemplateSpec | None:
        tpl = get_scoped_or_none(FFETemplate, template_id, org_id=org_id)
        if tpl is None:
            return None
        return snapshot_template(tpl)


# ═══════════════════════════════════════════════════════════════════
# LINKAGE VALIDATION
# ═══════════════════════════════════════════════════════════════════

def validate_linkage(spec: TemplateSpec) -> set[str]:
    """
    Check sub-item links and return the ids that are only sub-items.

    Rules:
      - a linked id must name an item of the same template
      - an item cannot link to itself
      - a linked item must not carry links of its own (one nesting level)

    Raises:
        ValidationError: with ``details`` naming the offending item.
    """
    items = spec.items_by_id()
    linked: set[str] = set()
    for item in items.values():
        for target_id in item.linked_item_ids:
            if target_id == item.id:
                raise ValidationError(
                    f"Item '{item.name}' links to itself",
                    details={"item_id": item.id},
                )
            target = items.get(target_id)
            if target is None:
                raise ValidationError(
                    f"Item '{item.name}' links to unknown item {target_id}",
                    details={"item_id": item.id, "linked_item_id": target_id},
                )
            if target.linked_item_ids:
                raise ValidationError(
                    f"Linked item '{target.name}' has sub-items of its own; "
                    "only one level of nesting is supported",
                    details={"item_id": item.id, "linked_item_id": target_id},
                )
            linked.add(target_id)
    return linked


# ═══════════════════════════════════════════════════════════════════
# BUILT-IN DEFAULT SETS
# ═══════════════════════════════════════════════════════════════════

def builtin_template(room_type: str | None) -> TemplateSpec:
    """Return the built-in set for a room type."""
    key = "bathroom" if room_type in BATHROOM_ROOM_TYPES else "general"
    return _builtin_spec(key)


def builtin_template_definitions() -> dict[str, dict]:
    """Raw definitions of every built-in set, keyed by set key."""
    return {
        "bathroom": _bathroom_definition(),
        "general": _general_definition(),
    }


def _builtin_spec(key: str) -> TemplateSpec:
    definition = builtin_template_definitions()[key]
    sections = []
    for s_order, section in enumerate(definition["sections"], start=1):
        items = tuple(
            TemplateItemSpec(
                id=item["key"],
                name=item["name"],
                order=i_order,
                description=item.get("description"),
                category=item.get("category", section["name"]),
                is_required=item.get("is_required", False),
                options=tuple(item.get("options", ())),
                quantity_mode=item.get("quantity_mode", QuantityMode.FIXED),
                quantity=item.get("quantity", 1),
                sub_unit_label=item.get("sub_unit_label"),
                visibility_rule=item.get("visibility_rule", VisibilityRule.ALWAYS),
                visibility_options=tuple(item.get("visibility_options", ())),
                linked_item_ids=tuple(item.get("linked", ())),
                stored=False,
            )
            for i_order, item in enumerate(section["items"], start=1)
        )
        sections.append(TemplateSectionSpec(
            id=f"{key}:{section['name']}",
            name=section["name"],
            order=s_order,
            description=section.get("description"),
            items=items,
            stored=False,
        ))
    return TemplateSpec(
        id=None,
        key=key,
        name=definition["name"],
        sections=tuple(sections),
    )


def _bathroom_definition() -> dict:
    return {
        "name": "Bathroom FFE",
        "description": "Default checklist for bathrooms and powder rooms",
        "room_types": sorted(BATHROOM_ROOM_TYPES),
        "sections": [
            {
                "name": "Flooring",
                "description": "Floor coverings, materials, and treatments",
                "items": [
                    {"key": "floor_tile", "name": "Floor Tile", "is_required": True},
                    {"key": "grout", "name": "Grout"},
                ],
            },
            {
                "name": "Plumbing",
                "description": "Fixtures, fittings, and plumbing elements",
                "items": [
                    {
                        "key": "vanity", "name": "Vanity", "is_required": True,
                        "options": ["Standard", "Custom"],
                        "visibility_rule": VisibilityRule.ON_OPTION,
                        "visibility_options": ["Custom"],
                        "linked": ["vanity_cabinet", "vanity_handles", "vanity_counter"],
                    },
                    {"key": "vanity_cabinet", "name": "Cabinet"},
                    {"key": "vanity_handles", "name": "Handles"},
                    {"key": "vanity_counter", "name": "Counter"},
                    {
                        "key": "faucet", "name": "Faucet", "is_required": True,
                        "quantity_mode": QuantityMode.PER_SUB_UNIT,
                        "sub_unit_label": "sink",
                    },
                    {
                        "key": "toilet", "name": "Toilet",
                        "options": ["Freestanding", "Wall-mount"],
                        "visibility_rule": VisibilityRule.ON_OPTION,
                        "visibility_options": ["Wall-mount"],
                        "linked": ["toilet_carrier", "toilet_flush_plate"],
                    },
                    {"key": "toilet_carrier", "name": "In-wall Carrier"},
                    {"key": "toilet_flush_plate", "name": "Flush Plate"},
                    {"key": "shower_system", "name": "Shower System"},
                ],
            },
            {
                "name": "Lighting",
                "description": "Light fixtures, switches, and electrical",
                "items": [
                    {"key": "vanity_light", "name": "Vanity Light"},
                    {"key": "recessed_lighting", "name": "Recessed Lighting", "quantity": 4},
                ],
            },
            {
                "name": "Accessories",
                "description": "Mirrors, towel bars, and hardware",
                "items": [
                    {
                        "key": "mirror", "name": "Mirror",
                        "quantity_mode": QuantityMode.PER_SUB_UNIT,
                        "sub_unit_label": "sink",
                    },
                    {"key": "towel_bar", "name": "Towel Bar", "quantity": 2},
                    {"key": "paper_holder", "name": "Toilet Paper Holder"},
                ],
            },
        ],
    }


def _general_definition() -> dict:
    return {
        "name": "General Room FFE",
        "description": "Default checklist for living spaces",
        "room_types": [],
        "sections": [
            {
                "name": "Flooring",
                "description": "Floor coverings, materials, and treatments",
                "items": [
                    {"key": "flooring", "name": "Flooring", "is_required": True},
                    {"key": "baseboard", "name": "Baseboard"},
                ],
            },
            {
                "name": "Wall Treatments",
                "description": "Paint, wallpaper, paneling, and wall finishes",
                "items": [
                    {
                        "key": "wall_finish", "name": "Wall Finish",
                        "options": ["Paint", "Wallpaper"],
                        "visibility_rule": VisibilityRule.ON_OPTION,
                        "visibility_options": ["Wallpaper"],
                        "linked": ["wallpaper_pattern"],
                    },
                    {"key": "wallpaper_pattern", "name": "Wallpaper Pattern"},
                ],
            },
            {
                "name": "Lighting",
                "description": "Light fixtures, switches, and electrical",
                "items": [
                    {"key": "ceiling_fixture", "name": "Ceiling Fixture"},
                    {"key": "lamps", "name": "Lamps", "quantity": 2},
                ],
            },
            {
                "name": "Furniture",
                "description": "Built-in and freestanding furniture pieces",
                "items": [
                    {"key": "primary_furniture", "name": "Primary Furniture", "is_required": True},
                    {"key": "accent_chair", "name": "Accent Chair"},
                ],
            },
            {
                "name": "Window Treatments",
                "description": "Curtains, blinds, shutters, and window coverings",
                "items": [
                    {
                        "key": "drapery", "name": "Drapery",
                        "quantity_mode": QuantityMode.PER_SUB_UNIT,
                        "sub_unit_label": "window",
                    },
                ],
            },
        ],
    }
