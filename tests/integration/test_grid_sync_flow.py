import asyncio

from apps.adsheet.api.v1.helpers.broadcast import hub
from apps.adsheet.api.v1.helpers.memory_store import get_memory_store
from apps.adsheet.core.columns import Column
from apps.adsheet.sync.identity import Permanent, RowOrigin, Temporary, identity_of
from apps.adsheet.sync.listener import HandleOutcome

TENANT_ID = "acme"
OWNER_ID = 7


def _display_ids(orchestrator):
    return [row[Column.DISPLAY_ID] for row in orchestrator.grid.get_data()]


def _record_ids(orchestrator):
    return [row[Column.RECORD_ID] for row in orchestrator.grid.get_data()]


def _markers(orchestrator):
    return [row[Column.TEMP_MARKER] for row in orchestrator.grid.get_data() if row[Column.TEMP_MARKER]]


async def test_paste_into_empty_grid_creates_rows(make_orchestrator):
    grid = await make_orchestrator()
    block = [
        ["C-100", "Alpha"],
        ["C-200", "Beta"],
        ["C-300", "Gamma"],
    ]

    grid.grid.paste(0, Column.ACCOUNT_CODE, block)
    await grid.settle()

    assert _display_ids(grid) == ["1-7", "2-7", "3-7"]
    assert _markers(grid) == []
    assert all(isinstance(identity_of(grid.grid, row), Permanent) for row in range(3))

    stored = get_memory_store(TENANT_ID).list_accounts(OWNER_ID)
    assert [(record["account_code"], record["name"]) for record in stored] == [
        ("C-100", "Alpha"),
        ("C-200", "Beta"),
        ("C-300", "Gamma"),
    ]


async def test_edit_reaches_another_session(make_orchestrator):
    writer = await make_orchestrator()
    reader = await make_orchestrator()
    polling = reader.polling_channel()
    assert await polling.poll_once() == 0

    writer.add_rows(1)
    await writer.settle()
    assert await polling.poll_once() == 2
    assert _record_ids(reader) == _record_ids(writer)

    writer.grid.set_data_at_cell(0, Column.NAME, "Shared", "edit")
    assert await writer.flush() is True

    assert await polling.poll_once() == 1
    assert reader.grid.get_data_at_cell(0, Column.NAME) == "Shared"
    assert len(reader.save_queue) == 0


async def test_own_broadcasts_are_echoes(make_orchestrator):
    grid = await make_orchestrator()
    grid.add_rows(1)
    await grid.settle()

    grid.grid.set_data_at_cell(0, Column.NAME, "Mine", "edit")
    await grid.flush()

    scope = hub.scope(TENANT_ID, OWNER_ID)
    events = hub.changes_since(scope, 0)["events"]
    field_updates = [event for event in events if event["type"] == "field-update"]
    assert len(field_updates) == 1
    assert await grid.handle_event(field_updates[0]) is HandleOutcome.ECHO

    assert len(get_memory_store(TENANT_ID).changes) == 1
    assert len(grid.save_queue) == 0


async def test_concurrent_row_creation_leaves_no_duplicates(make_orchestrator):
    first = await make_orchestrator()
    second = await make_orchestrator()
    first_polling = first.polling_channel()
    second_polling = second.polling_channel()
    await first_polling.poll_once()
    await second_polling.poll_once()

    # Both pastes run past the end of an empty grid, so every row is new.
    first_codes = [f"A-{index}" for index in range(3)]
    second_codes = [f"B-{index}" for index in range(3)]
    first.grid.paste(0, Column.ACCOUNT_CODE, [[code] for code in first_codes])
    second.grid.paste(0, Column.ACCOUNT_CODE, [[code] for code in second_codes])
    await asyncio.gather(first.settle(), second.settle())
    await first_polling.poll_once()
    await second_polling.poll_once()
    await asyncio.gather(first.settle(), second.settle())

    assert len(get_memory_store(TENANT_ID).list_accounts(OWNER_ID)) == 6
    for orchestrator in (first, second):
        assert orchestrator.grid.count_rows() == 6
        assert sorted(_record_ids(orchestrator)) == [1, 2, 3, 4, 5, 6]
        assert _display_ids(orchestrator) == [f"{sequence}-7" for sequence in range(1, 7)]
        codes = [row[Column.ACCOUNT_CODE] for row in orchestrator.grid.get_data()]
        assert sorted(codes) == first_codes + second_codes
        assert _markers(orchestrator) == []


async def test_editing_a_new_row_holds_sync_until_the_editor_closes(make_orchestrator):
    grid = await make_orchestrator()
    grid.add_rows(1)
    await grid.settle()
    store = get_memory_store(TENANT_ID)
    changes_before = len(store.changes)

    grid.reconciler.insert_temp_rows(1, RowOrigin.MANUAL)
    assert isinstance(identity_of(grid.grid, 1), Temporary)
    grid.grid.begin_edit(1, Column.NAME)
    grid.grid.set_data_at_cell(1, Column.NAME, "Draft", "edit")
    grid.grid.set_data_at_cell(0, Column.NAME, "Renamed", "edit")
    await asyncio.sleep(0.05)

    assert len(store.list_accounts(OWNER_ID)) == 1
    assert len(store.changes) == changes_before
    assert len(grid.save_queue) == 1
    assert len(grid.temp_queue) == 1
    assert len(_markers(grid)) == 1

    grid.grid.end_edit()
    await asyncio.sleep(0.05)
    await grid.settle()

    assert [record["name"] for record in store.list_accounts(OWNER_ID)] == ["Renamed", "Draft"]
    assert _markers(grid) == []
    assert _display_ids(grid) == ["1-7", "2-7"]


async def test_status_change_reaches_another_session(make_orchestrator):
    writer = await make_orchestrator()
    writer.add_rows(1)
    await writer.settle()
    reader = await make_orchestrator()
    polling = reader.polling_channel()
    await polling.poll_once()

    await writer.set_status(0, "paused")

    assert await polling.poll_once() == 1
    assert reader.grid.get_data_at_cell(0, Column.STATUS) == "paused"


async def test_deleted_rows_disappear_from_other_sessions(make_orchestrator):
    writer = await make_orchestrator()
    writer.add_rows(2)
    await writer.settle()
    reader = await make_orchestrator()
    assert reader.grid.count_rows() == 2
    polling = reader.polling_channel()
    await polling.poll_once()

    assert await writer.delete_rows([0]) == 1

    assert await polling.poll_once() == 1
    assert _record_ids(reader) == _record_ids(writer)
    assert reader.grid.count_rows() == 1
