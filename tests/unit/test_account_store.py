from apps.adsheet.api.v1.helpers.memory_store import (
    MemoryAccountStore,
    get_memory_store,
    next_default_code_number,
)


def test_sequence_numbers_continue_per_owner():
    store = MemoryAccountStore()
    first = store.create_accounts(7, 7, [{"name": "A"}, {"name": "B"}])
    other = store.create_accounts(8, 8, [{"name": "X"}])
    more = store.create_accounts(7, 9, [{"name": "C"}])

    assert [record["local_id"] for record in first] == [1, 2]
    assert [record["display_id"] for record in first] == ["1-7", "2-7"]
    assert other[0]["local_id"] == 1
    assert more[0]["local_id"] == 3
    assert more[0]["created_by"] == 9
    assert len({record["id"] for record in first + other + more}) == 4


def test_blank_account_codes_get_numbered_defaults():
    store = MemoryAccountStore()
    created = store.create_accounts(7, 7, [{}, {"account_code": "123"}, {"account_code": "  "}])
    assert [record["account_code"] for record in created] == ["Tài khoản 1", "123", "Tài khoản 2"]
    assert created[0]["vat_percentage"] == "0"

    later = store.create_accounts(7, 7, [{}])
    assert later[0]["account_code"] == "Tài khoản 3"


def test_next_default_code_ignores_other_codes():
    assert next_default_code_number(["Tài khoản 4", "Tài khoản x", "TK 9", ""]) == 5
    assert next_default_code_number([]) == 1


def test_updates_and_deletes_are_owner_scoped():
    store = MemoryAccountStore()
    (record,) = store.create_accounts(7, 7, [{"name": "A"}])

    assert store.update_fields(8, record["id"], {"name": "stolen"}) is None
    previous, updated = store.update_fields(7, record["id"], {"name": "B"})
    assert previous == {"name": "A"}
    assert updated["name"] == "B"

    assert store.delete_accounts(8, [record["id"]]) == 0
    assert store.delete_accounts(7, [record["id"], 999]) == 1
    assert store.list_accounts(7) == []


def test_change_log_records_actor():
    store = MemoryAccountStore()
    store.log_changes(7, 9, [{"record_id": 1, "field": "name", "old_value": "a", "new_value": "b"}])
    assert store.changes[0]["user_id"] == 9
    assert store.changes[0]["owner_id"] == 7


def test_stores_are_per_tenant():
    assert get_memory_store("acme") is get_memory_store("acme")
    assert get_memory_store("acme") is not get_memory_store("other")
