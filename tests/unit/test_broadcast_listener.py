import json

import pytest
from pydantic import ValidationError

from apps.adsheet.core.columns import Column, row_from_record
from apps.adsheet.core.events import (
    BroadcastEvent,
    FieldChange,
    batch_update,
    changes_event,
    cross_tab_status,
    field_update,
    full_refresh,
    row_insert,
    row_update,
)
from apps.adsheet.sync.grid import SheetGrid
from apps.adsheet.sync.listener import BroadcastListener, HandleOutcome
from apps.adsheet.sync.session import SessionScope

ME = "session_me0000001"
OTHER = "session_other0001"


def _record(record_id, local_id, **values):
    return {"id": record_id, "local_id": local_id, "owner_id": 7, **values}


class Harness:
    def __init__(self, records, server_records=None):
        self.grid = SheetGrid(rows=[row_from_record(record) for record in records])
        self.server_records = server_records if server_records is not None else records
        self.reloads = 0
        self.sources = []
        self.grid.add_hook("after_change", lambda changes, source: self.sources.append(source))
        self.listener = BroadcastListener(self.grid, SessionScope(ME), self.reload)

    async def reload(self):
        self.reloads += 1
        self.grid.load_data([row_from_record(record) for record in self.server_records])
        return True


async def test_field_update_from_another_session_is_applied_externally():
    harness = Harness([_record(1, 1, name="A")])

    outcome = await harness.listener.handle(field_update(1, "name", "A", "B", session_id=OTHER))

    assert outcome is HandleOutcome.APPLIED
    assert harness.grid.get_data_at_cell(0, Column.NAME) == "B"
    assert harness.sources == ["external"]
    assert harness.reloads == 0


async def test_own_field_update_is_an_echo():
    harness = Harness([_record(1, 1, name="A")])

    outcome = await harness.listener.handle(field_update(1, "name", "A", "B", session_id=ME))

    assert outcome is HandleOutcome.ECHO
    assert harness.grid.get_data_at_cell(0, Column.NAME) == "A"


async def test_batch_update_applies_to_every_session_in_one_repaint():
    harness = Harness([_record(1, 1, name="A"), _record(2, 2, name="B")])
    repaints = harness.grid.repaint_count
    event = batch_update(
        [
            FieldChange(record_id=1, field="name", old_value="A", new_value="A2"),
            FieldChange(record_id=2, field="rental_percentage", old_value="0", new_value="15%"),
        ],
        session_id=ME,
    )

    outcome = await harness.listener.handle(event)

    assert outcome is HandleOutcome.APPLIED
    assert harness.grid.get_data_at_cell(0, Column.NAME) == "A2"
    assert harness.grid.get_data_at_cell(1, Column.RENTAL_PERCENTAGE) == "15"
    assert harness.grid.repaint_count == repaints + 1


async def test_unknown_record_triggers_reload_then_applies():
    server = [_record(1, 1, name="A"), _record(5, 2, name="fresh")]
    harness = Harness([_record(1, 1, name="A")], server_records=server)

    outcome = await harness.listener.handle(field_update(5, "name", "fresh", "edited", session_id=OTHER))

    assert outcome is HandleOutcome.RELOADED
    assert harness.reloads == 1
    assert harness.grid.get_data_at_cell(1, Column.NAME) == "edited"


async def test_unknown_record_after_reload_is_dropped():
    harness = Harness([_record(1, 1)])
    outcome = await harness.listener.handle(field_update(99, "name", "", "x", session_id=OTHER))
    assert outcome is HandleOutcome.DROPPED
    assert harness.reloads == 1


async def test_inserts_and_refreshes_always_reload():
    harness = Harness([_record(1, 1)])
    assert await harness.listener.handle(row_insert([_record(2, 2)], session_id=OTHER)) is HandleOutcome.RELOADED
    assert await harness.listener.handle(full_refresh()) is HandleOutcome.RELOADED
    assert harness.reloads == 2
    assert await harness.listener.handle(full_refresh(session_id=ME)) is HandleOutcome.ECHO


async def test_row_update_writes_all_fields():
    harness = Harness([_record(1, 1, name="A", card_type="Visa")])
    record = _record(1, 1, name="A2", card_type="Master", vat_percentage="10")

    outcome = await harness.listener.handle(row_update(record, session_id=OTHER))

    assert outcome is HandleOutcome.APPLIED
    row = harness.grid.get_data_at_row(0)
    assert row[Column.NAME] == "A2"
    assert row[Column.CARD_TYPE] == "Master"
    assert row[Column.VAT_PERCENTAGE] == "10"


async def test_cross_tab_status_only_touches_status():
    harness = Harness([_record(1, 1, name="A", status="active")])
    outcome = await harness.listener.handle(cross_tab_status(1, "paused", session_id=OTHER))
    assert outcome is HandleOutcome.APPLIED
    assert harness.grid.get_data_at_cell(0, Column.STATUS) == "paused"
    assert harness.grid.get_data_at_cell(0, Column.NAME) == "A"


async def test_wire_payloads_are_accepted():
    harness = Harness([_record(1, 1, name="A")])
    payload = json.dumps(field_update(1, "name", "A", "wire", session_id=OTHER).to_wire())
    assert await harness.listener.handle(payload) is HandleOutcome.APPLIED
    assert harness.grid.get_data_at_cell(0, Column.NAME) == "wire"


async def test_malformed_events_are_rejected():
    harness = Harness([_record(1, 1)])
    assert await harness.listener.handle({"type": "field-update"}) is HandleOutcome.INVALID
    assert await harness.listener.handle({"type": "nonsense"}) is HandleOutcome.INVALID
    assert await harness.listener.handle("{not json") is HandleOutcome.INVALID


def test_changes_event_picks_the_wire_type():
    one = [FieldChange(record_id=1, field="name", old_value="a", new_value="b")]
    assert changes_event(one).type.value == "field-update"
    assert changes_event(one * 2).type.value == "batch-update"
    with pytest.raises(ValidationError):
        BroadcastEvent(type="cross-tab-status", record_id=1)


def test_session_scope_keys_on_session_not_user():
    scope = SessionScope(ME)
    assert scope.is_self_echo(full_refresh(session_id=ME))
    assert not scope.is_self_echo(full_refresh(session_id=OTHER))
    assert not scope.is_self_echo(full_refresh())
    assert scope.should_apply(batch_update([FieldChange(record_id=1, field="name")], session_id=ME))
    assert SessionScope().session_id.startswith("session_")
    assert scope.stamp({"type": "x"}) == {"type": "x", "session_id": ME}

