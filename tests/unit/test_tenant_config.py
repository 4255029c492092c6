import pytest

from apps.adsheet.api.v1.helpers.config import (
    STORE_MEMORY,
    get_account_store,
    get_db_tables,
    get_history_size,
    validate_tenant_config,
)
from shared.constants import BROADCAST_HISTORY_SIZE
from shared.tenant import TenantConfigError, TenantConfigValidationError, tenant_scope


def test_memory_tenant_is_valid():
    with tenant_scope("ACME") as tenant_id:
        assert tenant_id == "acme"
        validate_tenant_config()
        assert get_account_store() == STORE_MEMORY
        assert get_history_size() == 50


def test_mysql_tenant_requires_database_settings():
    with tenant_scope("warehouse"):
        with pytest.raises(TenantConfigValidationError) as excinfo:
            validate_tenant_config()
    assert excinfo.value.app_name == "AdSheet"
    assert "DB_USER" in excinfo.value.missing
    assert "DB_NAME" in excinfo.value.missing
    assert "DB_TABLES" in excinfo.value.missing
    assert "DB_HOST" not in excinfo.value.missing


def test_invalid_values_are_reported():
    with tenant_scope("oddstore"):
        with pytest.raises(TenantConfigValidationError) as excinfo:
            validate_tenant_config()
    assert set(excinfo.value.invalid) == {"ACCOUNT_STORE", "CHANGE_HISTORY_SIZE"}


def test_db_tables_must_name_both_tables(isolated_environment):
    (isolated_environment / "partial.yaml").write_text(
        "ACCOUNT_STORE: mysql\n"
        "DB_HOST: h\nDB_USER: u\nDB_NAME: n\n"
        "DB_TABLES: '{\"ACCOUNTS\": \"ads.ad_accounts\", \"BAD\": \"drop table;\"}'\n",
        encoding="utf-8",
    )
    with tenant_scope("partial"):
        with pytest.raises(TenantConfigValidationError) as excinfo:
            validate_tenant_config()
    assert excinfo.value.missing == ["DB_TABLES.ACCOUNT_CHANGES"]
    assert excinfo.value.invalid == ["DB_TABLES.BAD"]


def test_history_size_defaults_without_tenant():
    assert get_history_size() == BROADCAST_HISTORY_SIZE


def test_unknown_tenant_is_a_config_error():
    with pytest.raises(TenantConfigError):
        with tenant_scope("nobody"):
            pass


def test_nested_db_tables_mapping_is_accepted(isolated_environment):
    (isolated_environment / "nested.yaml").write_text(
        "ACCOUNT_STORE: mysql\n"
        "DB_HOST: h\nDB_USER: u\nDB_NAME: n\n"
        "DB_TABLES:\n"
        "  ACCOUNTS: ads.ad_accounts\n"
        "  ACCOUNT_CHANGES: ads.ad_account_changes\n",
        encoding="utf-8",
    )
    with tenant_scope("nested"):
        validate_tenant_config()
        assert get_db_tables() == {
            "ACCOUNTS": "ads.ad_accounts",
            "ACCOUNT_CHANGES": "ads.ad_account_changes",
        }
