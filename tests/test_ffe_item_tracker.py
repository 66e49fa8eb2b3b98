"""
Tests: item state tracker.

Status/note/option writes touch one item, the visibility of its own
sub-items and the instance progress. PER_SUB_UNIT quantity changes add
or remove whole units and refuse to drop customised units unless the
caller confirms.
"""

import pytest
from sqlalchemy import text

from roomflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from roomflow.models import db as _db
from roomflow.models.change_log import FFEChangeLog
from roomflow.models.ffe import FFEItemState, InstanceStatus, RoomFFEItem
from roomflow.services.ffe_item_tracker import (
    choose_option,
    is_customized,
    set_note,
    set_quantity,
    set_status,
    update_item,
)
from roomflow.services.ffe_materializer import materialize


def _instance(room):
    return materialize(room.id, template_id="default", on_existing="fail").instance


def _find(instance, name):
    return next(i for i in instance.all_items() if i.name == name and i.parent_item_id is None)


def _group(item_id):
    item = _db.session.get(RoomFFEItem, item_id)
    return (
        RoomFFEItem.query
        .filter_by(quantity_group_id=item.quantity_group_id)
        .order_by(RoomFFEItem.unit_index)
        .all()
    )


class TestStatus:
    def test_set_status_completed(self, bathroom):
        instance = _instance(bathroom)
        tile = _find(instance, "Floor Tile")

        result = set_status(tile.id, "COMPLETED")

        assert result["item"]["status"] == "COMPLETED"
        assert result["item"]["completed_at"] is not None
        assert result["changes"] == {"status": {"old": "NOT_STARTED", "new": "COMPLETED"}}
        assert result["instance"]["progress"] > 0
        assert result["instance"]["status"] == InstanceStatus.IN_PROGRESS.value

    def test_back_to_not_started_clears_completed_at(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        set_status(tile.id, FFEItemState.COMPLETED)

        result = set_status(tile.id, FFEItemState.NOT_STARTED)

        assert result["item"]["completed_at"] is None

    def test_undecided_is_allowed(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        assert set_status(tile.id, "UNDECIDED")["item"]["status"] == "UNDECIDED"

    @pytest.mark.parametrize("legacy", ["PENDING", "SELECTED", "CONFIRMED", "NOT_NEEDED"])
    def test_legacy_status_rejected(self, bathroom, legacy):
        tile = _find(_instance(bathroom), "Floor Tile")

        with pytest.raises(ValidationError):
            set_status(tile.id, legacy)
        assert _db.session.get(RoomFFEItem, tile.id).status == FFEItemState.NOT_STARTED

    def test_unknown_status_rejected(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        with pytest.raises(ValidationError):
            set_status(tile.id, "DONE")

    def test_legacy_row_can_move_to_current_state(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        tile.status = FFEItemState.SELECTED
        _db.session.commit()

        result = set_status(tile.id, "COMPLETED")

        assert result["changes"]["status"] == {"old": "SELECTED", "new": "COMPLETED"}

    def test_same_status_is_no_change(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        result = set_status(tile.id, "NOT_STARTED")
        assert result["changes"] == {}
        assert FFEChangeLog.query.filter_by(action="item.set_status").count() == 0

    def test_all_visible_done_completes_instance(self, bathroom):
        instance = _instance(bathroom)
        visible_ids = [i.id for i in instance.all_items() if i.parent_item_id is None]

        for item_id in visible_ids:
            result = set_status(item_id, "COMPLETED")

        assert result["instance"]["progress"] == 100
        assert result["instance"]["status"] == InstanceStatus.COMPLETED.value

    def test_unknown_item(self, bathroom):
        with pytest.raises(NotFoundError):
            set_status("missing", "COMPLETED")


class TestNote:
    def test_set_and_clear_note(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")

        assert set_note(tile.id, "Honed marble")["item"]["note"] == "Honed marble"
        assert set_note(tile.id, "   ")["item"]["note"] is None

    def test_note_change_logged(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        set_note(tile.id, "Honed marble", actor="dana")

        entry = FFEChangeLog.query.filter_by(action="item.set_note").one()
        assert entry.actor == "dana"
        assert entry.entity_id == tile.id
        assert entry.diff == {"note": {"old": None, "new": "Honed marble"}}


class TestOptions:
    def test_revealing_option_shows_sub_items(self, bathroom):
        instance = _instance(bathroom)
        vanity = _find(instance, "Vanity")
        child_ids = {c.id for c in vanity.children}

        result = choose_option(vanity.id, "Custom")

        assert result["item"]["chosen_option"] == "Custom"
        assert result["visibility"] == {cid: True for cid in child_ids}
        assert all(_db.session.get(RoomFFEItem, cid).visible for cid in child_ids)

    def test_other_option_hides_sub_items_again(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")
        choose_option(vanity.id, "Custom")

        result = choose_option(vanity.id, "Standard")

        assert set(result["visibility"].values()) == {False}

    def test_revealed_sub_items_count_toward_progress(self, bathroom):
        instance = _instance(bathroom)
        vanity = _find(instance, "Vanity")
        before = set_status(vanity.id, "COMPLETED")["instance"]["progress"]

        after = choose_option(vanity.id, "Custom")["instance"]["progress"]

        assert after < before

    def test_option_outside_list_rejected(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")
        with pytest.raises(ValidationError):
            choose_option(vanity.id, "Floating")

    def test_option_change_touches_nothing_else(self, bathroom):
        instance = _instance(bathroom)
        vanity = _find(instance, "Vanity")
        toilet = _find(instance, "Toilet")
        toilet_children = {c.id: c.version for c in toilet.children}

        choose_option(vanity.id, "Custom")

        for child_id, version in toilet_children.items():
            assert _db.session.get(RoomFFEItem, child_id).version == version


class TestVersioning:
    def test_stale_expected_version_rejected(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        seen = tile.version

        set_note(tile.id, "first", expected_version=seen)
        with pytest.raises(StaleWriteError):
            set_note(tile.id, "second", expected_version=seen)

        assert _db.session.get(RoomFFEItem, tile.id).note == "first"

    def test_version_increases_on_write(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        seen = tile.version

        result = set_status(tile.id, "COMPLETED", expected_version=seen)

        assert result["item"]["version"] > seen

    def test_revealing_sub_items_keeps_their_version(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")
        cabinet_id = vanity.children[0].id
        seen = _db.session.get(RoomFFEItem, cabinet_id).version

        choose_option(vanity.id, "Custom")
        _db.session.expire_all()
        cabinet = _db.session.get(RoomFFEItem, cabinet_id)
        assert cabinet.visible is True
        assert cabinet.version == seen

        result = set_note(cabinet_id, "Soft close", expected_version=seen)
        assert result["item"]["note"] == "Soft close"

    def test_concurrent_row_update_detected_by_mapper(self, bathroom):
        tile = _find(_instance(bathroom), "Floor Tile")
        loaded = _db.session.get(RoomFFEItem, tile.id)
        assert loaded.version is not None
        _db.session.execute(
            text("UPDATE room_ffe_items SET version = version + 1 WHERE id = :id"),
            {"id": tile.id},
        )

        with pytest.raises(StaleWriteError):
            set_status(tile.id, "COMPLETED")


class TestCombinedUpdate:
    def test_all_fields_in_one_call(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")

        result = update_item(vanity.id, {
            "status": "UNDECIDED",
            "note": "Walnut",
            "option": "Custom",
        })

        assert set(result["changes"]) == {"status", "note", "chosen_option"}
        assert FFEChangeLog.query.filter(FFEChangeLog.action.like("item.%")).count() == 3

    def test_failed_field_rolls_back_whole_call(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")

        with pytest.raises(ValidationError):
            update_item(vanity.id, {"note": "Walnut", "option": "Floating"})

        assert _db.session.get(RoomFFEItem, vanity.id).note is None

    def test_unknown_field_rejected(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")
        with pytest.raises(ValidationError):
            update_item(vanity.id, {"price": 10})

    def test_empty_update_rejected(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")
        with pytest.raises(ValidationError):
            update_item(vanity.id, {})


class TestQuantity:
    def test_fixed_item_quantity_is_a_count(self, bathroom):
        lights = _find(_instance(bathroom), "Recessed Lighting")

        result = set_quantity(lights.id, 6)

        assert result["item"]["quantity"] == 6
        assert result["quantity_group"]["added_item_ids"] == []

    @pytest.mark.parametrize("bad", [0, -1, "2", 1.5, True])
    def test_invalid_quantity_rejected(self, bathroom, bad):
        faucet = _find(_instance(bathroom), "Faucet")
        with pytest.raises(ValidationError):
            set_quantity(faucet.id, bad)

    def test_increase_adds_units(self, bathroom):
        faucet = _find(_instance(bathroom), "Faucet")

        result = set_quantity(faucet.id, 3)

        units = _group(faucet.id)
        assert [u.unit_index for u in units] == [1, 2, 3]
        assert all(u.quantity == 3 for u in units)
        assert len(result["quantity_group"]["added_item_ids"]) == 2
        assert result["changes"]["quantity"] == {"old": 1, "new": 3}

    def test_new_units_start_fresh(self, bathroom):
        faucet = _find(_instance(bathroom), "Faucet")
        set_note(faucet.id, "Brushed brass")

        set_quantity(faucet.id, 2)

        units = _group(faucet.id)
        assert units[0].note == "Brushed brass"
        assert units[1].note is None
        assert units[1].status == FFEItemState.NOT_STARTED

    def test_decrease_drops_uncustomised_units_first(self, bathroom):
        faucet = _find(_instance(bathroom), "Faucet")
        set_quantity(faucet.id, 3)
        third = _group(faucet.id)[2]
        set_note(third.id, "Wall-mounted")

        result = update_item(faucet.id, {"quantity": 1})

        units = _group(third.id)
        assert [u.id for u in units] == [third.id]
        assert units[0].unit_index == 1
        assert units[0].quantity == 1
        assert result["item"] is None
        assert faucet.id in result["quantity_group"]["removed_item_ids"]

    def test_decrease_losing_customised_units_needs_confirmation(self, bathroom):
        faucet = _find(_instance(bathroom), "Faucet")
        set_quantity(faucet.id, 3)
        units = _group(faucet.id)
        set_note(units[1].id, "Polished nickel")
        set_status(units[2].id, "COMPLETED")

        with pytest.raises(ConflictError) as exc_info:
            set_quantity(units[1].id, 1)

        assert exc_info.value.details["customized_item_ids"] == [units[2].id]
        assert len(_group(faucet.id)) == 3

    def test_confirmed_decrease_removes_customised_units(self, bathroom):
        faucet = _find(_instance(bathroom), "Faucet")
        set_quantity(faucet.id, 3)
        units = _group(faucet.id)
        set_note(units[1].id, "Polished nickel")
        set_status(units[2].id, "COMPLETED")
        keep_id = units[1].id

        result = set_quantity(keep_id, 1, confirm_data_loss=True)

        remaining = _group(keep_id)
        assert [u.id for u in remaining] == [keep_id]
        assert result["item"]["unit_index"] == 1

    def test_removed_units_leave_progress(self, bathroom):
        faucet = _find(_instance(bathroom), "Faucet")
        set_quantity(faucet.id, 2)
        first, second = _group(faucet.id)
        set_status(first.id, "COMPLETED")
        before = set_status(second.id, "COMPLETED")["instance"]["progress"]

        result = set_quantity(faucet.id, 1, confirm_data_loss=True)

        assert before == round(2 * 100 / 12)
        assert result["instance"]["progress"] == round(100 / 11)
        assert _db.session.get(RoomFFEItem, second.id) is None


class TestIsCustomized:
    def test_fresh_item_is_not_customized(self, bathroom):
        assert is_customized(_find(_instance(bathroom), "Faucet")) is False

    def test_customised_sub_item_marks_parent(self, bathroom):
        vanity = _find(_instance(bathroom), "Vanity")
        child = vanity.children[0]
        set_note(child.id, "Soft close")

        assert is_customized(_db.session.get(RoomFFEItem, vanity.id)) is True
