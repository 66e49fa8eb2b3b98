"""
Tests: FFE template library — create, edit, copy, archive, default,
seeding.
"""

import pytest

from roomflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from roomflow.models import db as _db
from roomflow.models.ffe import FFETemplate, RoomFFEItem, TemplateStatus
from roomflow.models.org import Organization
from roomflow.services.ffe_materializer import materialize
from roomflow.services.template_service import (
    archive_template,
    copy_template,
    create_template,
    get_template,
    list_templates,
    seed_default_templates,
    set_default_template,
    update_template_item,
)
from roomflow.services.template_store import builtin_template, validate_linkage


def _payload(name="Kitchen Basics", **overrides):
    data = {
        "name": name,
        "room_types": ["KITCHEN"],
        "sections": [
            {
                "name": "Cabinetry",
                "items": [
                    {
                        "key": "island", "name": "Island",
                        "options": ["None", "Custom"],
                        "visibility_rule": "ON_OPTION",
                        "visibility_options": ["Custom"],
                        "linked": ["island_top", "island_seating"],
                    },
                    {"key": "island_top", "name": "Island Countertop"},
                    {"key": "island_seating", "name": "Counter Stools", "quantity": 3},
                    {"key": "pulls", "name": "Cabinet Pulls", "quantity": 24},
                ],
            },
        ],
    }
    data.update(overrides)
    return data


def _items(tpl):
    return {i["name"]: i for s in tpl["sections"] for i in s["items"]}


class TestCreateTemplate:
    def test_links_resolved_to_ids(self, org):
        tpl = create_template(org.id, _payload())

        items = _items(tpl)
        assert tpl["status"] == "DRAFT"
        assert items["Island"]["linked_item_ids"] == [
            items["Island Countertop"]["id"], items["Counter Stools"]["id"],
        ]
        assert items["Island"]["category"] == "Cabinetry"

    def test_duplicate_name_conflicts(self, org):
        create_template(org.id, _payload())
        with pytest.raises(ConflictError):
            create_template(org.id, _payload())

    def test_unknown_link_key(self, org):
        data = _payload()
        data["sections"][0]["items"][0]["linked"] = ["ghost"]
        with pytest.raises(ValidationError):
            create_template(org.id, data)
        assert FFETemplate.query.count() == 0

    def test_nested_links_rejected(self, org):
        data = _payload()
        data["sections"][0]["items"][1]["linked"] = ["pulls"]
        with pytest.raises(ValidationError):
            create_template(org.id, data)
        assert FFETemplate.query.count() == 0

    def test_zero_quantity_rejected(self, org):
        data = _payload()
        data["sections"][0]["items"][3]["quantity"] = 0
        with pytest.raises(ValidationError):
            create_template(org.id, data)

    def test_legacy_default_state_rejected(self, org):
        data = _payload()
        data["sections"][0]["items"][3]["default_state"] = "PENDING"
        with pytest.raises(ValidationError):
            create_template(org.id, data)

    def test_visibility_options_must_be_options(self, org):
        data = _payload()
        data["sections"][0]["items"][0]["visibility_options"] = ["Marble"]
        with pytest.raises(ValidationError):
            create_template(org.id, data)

    def test_unknown_org(self):
        with pytest.raises(NotFoundError):
            create_template(404, _payload())


class TestReadTemplates:
    def test_get_is_org_scoped(self, org):
        tpl = create_template(org.id, _payload())
        other = Organization(name="Other", slug="other")
        _db.session.add(other)
        _db.session.flush()

        assert get_template(tpl["id"], org_id=org.id)["name"] == "Kitchen Basics"
        with pytest.raises(NotFoundError):
            get_template(tpl["id"], org_id=other.id)

    def test_list_filters(self, org):
        create_template(org.id, _payload())
        create_template(org.id, _payload("Any Room", room_types=[], status="ACTIVE"))

        assert [t["name"] for t in list_templates(org.id, status="ACTIVE")] == ["Any Room"]
        assert {t["name"] for t in list_templates(org.id, room_type="BEDROOM")} == {"Any Room"}
        assert len(list_templates(org.id, room_type="KITCHEN")) == 2
        assert "sections" not in list_templates(org.id)[0]


class TestUpdateTemplateItem:
    def test_update_bumps_version(self, org):
        tpl = create_template(org.id, _payload())
        pulls = _items(tpl)["Cabinet Pulls"]

        updated = update_template_item(pulls["id"], {"quantity": 30}, org_id=org.id)

        assert updated["quantity"] == 30
        assert get_template(tpl["id"], org_id=org.id)["version"] == 2

    def test_self_link_rejected(self, org):
        tpl = create_template(org.id, _payload())
        pulls = _items(tpl)["Cabinet Pulls"]

        with pytest.raises(ValidationError):
            update_template_item(pulls["id"], {"linked_item_ids": [pulls["id"]]}, org_id=org.id)

    def test_edit_does_not_reach_existing_instances(self, org, bathroom):
        tpl = create_template(org.id, _payload(room_types=[], status="ACTIVE"))
        materialize(bathroom.id, template_id=tpl["id"], on_existing="fail")
        pulls = _items(tpl)["Cabinet Pulls"]

        update_template_item(pulls["id"], {"name": "Knobs", "quantity": 10}, org_id=org.id)

        row = RoomFFEItem.query.filter_by(template_item_id=pulls["id"]).one()
        assert row.name == "Cabinet Pulls"
        assert row.quantity == 24

    def test_unknown_field(self, org):
        tpl = create_template(org.id, _payload())
        pulls = _items(tpl)["Cabinet Pulls"]
        with pytest.raises(ValidationError):
            update_template_item(pulls["id"], {"price": 4}, org_id=org.id)


class TestCopyTemplate:
    def test_copy_is_independent_draft(self, org):
        source = create_template(org.id, _payload(status="ACTIVE"))
        set_default_template(source["id"], org_id=org.id)

        copy = copy_template(source["id"], org_id=org.id, name="Kitchen Deluxe")

        assert copy["status"] == "DRAFT"
        assert copy["is_default"] is False
        src_items, copy_items = _items(source), _items(copy)
        assert copy_items["Island"]["id"] != src_items["Island"]["id"]
        assert copy_items["Island"]["linked_item_ids"] == [
            copy_items["Island Countertop"]["id"], copy_items["Counter Stools"]["id"],
        ]

    def test_copy_name_must_be_free(self, org):
        source = create_template(org.id, _payload())
        with pytest.raises(ConflictError):
            copy_template(source["id"], org_id=org.id, name="Kitchen Basics")


class TestLifecycle:
    def test_unused_template_is_deleted(self, org):
        tpl = create_template(org.id, _payload())

        result = archive_template(tpl["id"], org_id=org.id)

        assert result["action"] == "deleted"
        assert _db.session.get(FFETemplate, tpl["id"]) is None

    def test_used_template_is_archived(self, org, bathroom):
        tpl = create_template(org.id, _payload(room_types=[], status="ACTIVE"))
        set_default_template(tpl["id"], org_id=org.id)
        materialize(bathroom.id, template_id=tpl["id"], on_existing="fail")

        result = archive_template(tpl["id"], org_id=org.id)

        assert result == {"template_id": tpl["id"], "action": "archived", "instances": 1}
        row = _db.session.get(FFETemplate, tpl["id"])
        assert row.status == TemplateStatus.ARCHIVED
        assert row.is_default is False

    def test_single_default_per_org(self, org):
        first = create_template(org.id, _payload("First"))
        second = create_template(org.id, _payload("Second"))

        set_default_template(first["id"], org_id=org.id)
        result = set_default_template(second["id"], org_id=org.id)

        assert result["is_default"] is True
        assert result["status"] == "ACTIVE"
        assert FFETemplate.query.filter_by(org_id=org.id, is_default=True).count() == 1

    def test_archived_cannot_be_default(self, org, bathroom):
        tpl = create_template(org.id, _payload(room_types=[], status="ACTIVE"))
        materialize(bathroom.id, template_id=tpl["id"], on_existing="fail")
        archive_template(tpl["id"], org_id=org.id)

        with pytest.raises(ValidationError):
            set_default_template(tpl["id"], org_id=org.id)


class TestSeeding:
    def test_seed_is_idempotent(self, org):
        assert seed_default_templates(org.id) == 2
        _db.session.commit()
        assert seed_default_templates(org.id) == 0

    def test_seeded_template_matches_builtin(self, org):
        seed_default_templates(org.id)
        _db.session.commit()

        stored = FFETemplate.query.filter_by(org_id=org.id, name="Bathroom FFE").one()
        builtin = builtin_template("BATHROOM")
        assert stored.status == TemplateStatus.ACTIVE
        assert [s.name for s in stored.sections] == [s.name for s in builtin.sections]
        vanity = next(i for s in stored.sections for i in s.items if i.name == "Vanity")
        assert len(vanity.linked_item_ids) == 3

    def test_builtin_sets_have_valid_links(self):
        for room_type in ("BATHROOM", "LIVING_ROOM"):
            linked = validate_linkage(builtin_template(room_type))
            assert linked
