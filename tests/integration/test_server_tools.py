from __future__ import annotations

import json
from pathlib import Path

import pytest

from ipns_tables import load_config
from ipns_tables.errors import (
    CONFIG_ERROR,
    CONFLICT,
    INDEX_OUT_OF_RANGE,
    MALFORMED_PAYLOAD,
    NOT_FOUND,
    RECORD_NOT_FOUND,
    VALIDATION_ERROR,
    TablesError,
)
from ipns_tables.server import (
    _SHUTDOWN_MANAGER,
    _tables_append_impl,
    _tables_append_sync_impl,
    _tables_create_impl,
    _tables_delete_impl,
    _tables_list_impl,
    _tables_metrics_impl,
    _tables_read_impl,
    _tables_remove_impl,
    _tables_update_impl,
    get_directory,
    initialize_app,
    shutdown_app,
)


def _config(registry_path: Path):
    return load_config(
        argv=[],
        environ={
            "IPNS_TABLES_REGISTRY_FILE": str(registry_path),
            "IPNS_TABLES_ENABLE_STDIO": "false",
            "IPNS_TABLES_SHUTDOWN_TIMEOUT": "2s",
        },
    )


@pytest.fixture
def app(registry_path, make_directory):
    config = _config(registry_path)
    initialize_app(config, directory=make_directory())
    yield config
    shutdown_app()


@pytest.mark.asyncio
async def test_full_table_lifecycle(app) -> None:
    created = await _tables_create_impl(name="movies", description="favourites")
    assert created["ok"] is True
    assert created["table"]["id"] == "movies"
    assert created["table"]["data"] == "[]"
    assert created["table"]["ipns_name"]
    assert created["hash"]

    appended = await _tables_append_impl("movies", {"hash": "h1", "fileName": "a.mkv", "fileSize": 10})
    assert appended["ok"] is True
    assert appended["record"]["version"] == 1
    assert appended["total_records"] == 1
    assert appended["background_save"] is True

    synced = await _tables_append_sync_impl("movies", '{"hash": "h2", "fileName": "b.mkv"}')
    assert synced["ok"] is True
    assert synced["record"]["version"] == 2
    assert synced["hash"]

    read = await _tables_read_impl("movies")
    records = json.loads(read["table"]["data"])
    assert [record["hash"] for record in records] == ["h1", "h2"]

    listed = await _tables_list_impl()
    assert listed["count"] == 1
    assert listed["cached"] is True
    assert "data" not in listed["tables"][0]

    updated = await _tables_update_impl(
        "movies",
        name="Movies",
        data=json.dumps([{"version": 1, "hash": "h1"}, {"version": 2, "hash": "h2"}, {"version": 3, "hash": "h3"}]),
    )
    assert updated["ok"] is True
    assert updated["table"]["name"] == "Movies"
    assert updated["table"]["description"] == 'Torrent versions for "Movies" - 3 version(s)'

    removed = await _tables_remove_impl("movies", match={"hash": "h2"})
    assert removed["ok"] is True
    assert removed["removed"]["version"] == 2

    removed = await _tables_remove_impl("movies", index="0")
    assert removed["removed"]["hash"] == "h1"

    deleted = await _tables_delete_impl("movies")
    assert deleted == {"ok": True, "table_id": "movies", "deleted": True}

    missing = await _tables_read_impl("movies")
    assert missing["ok"] is False
    assert missing["error"]["code"] == NOT_FOUND


@pytest.mark.asyncio
async def test_error_codes_surface_as_failures(app) -> None:
    await _tables_create_impl(name="movies")

    duplicate = await _tables_create_impl(name="movies")
    assert duplicate["error"]["code"] == CONFLICT

    malformed = await _tables_update_impl("movies", data="[{oops")
    assert malformed["error"]["code"] == MALFORMED_PAYLOAD

    bad_record = await _tables_append_impl("movies", {"fileSize": "big"})
    assert bad_record["error"]["code"] == MALFORMED_PAYLOAD

    out_of_range = await _tables_remove_impl("movies", index=3)
    assert out_of_range["error"]["code"] == INDEX_OUT_OF_RANGE

    no_match = await _tables_remove_impl("movies", match={"hash": "zzz"})
    assert no_match["error"]["code"] == RECORD_NOT_FOUND

    ambiguous = await _tables_remove_impl("movies", index=0, match={"hash": "zzz"})
    assert ambiguous["error"]["code"] == VALIDATION_ERROR

    not_an_index = await _tables_remove_impl("movies", index="first")
    assert not_an_index["error"]["code"] == VALIDATION_ERROR

    metrics_resp = await _tables_metrics_impl()
    assert metrics_resp["ok"] is True
    body = metrics_resp["metrics"]
    assert 'ipns_tables_errors_total{code="CONFLICT"} 1' in body
    assert 'ipns_tables_errors_total{code="MALFORMED_PAYLOAD"} 2' in body
    assert 'ipns_tables_ops_total{op="create"} 1' in body
    assert "ipns_tables_tables_current 1" in body


@pytest.mark.asyncio
async def test_list_refresh_reloads_published_state(app) -> None:
    await _tables_create_impl(name="movies", data=json.dumps([{"hash": "h1"}]))

    listed = await _tables_list_impl(refresh=True)

    assert listed["ok"] is True
    assert listed["cached"] is False
    assert listed["tables"][0]["dirty"] is False


@pytest.mark.asyncio
async def test_tools_fail_when_not_initialised() -> None:
    shutdown_app()

    response = await _tables_list_impl()

    assert response["ok"] is False
    assert response["error"]["code"] == CONFIG_ERROR


@pytest.mark.asyncio
async def test_requests_rejected_once_shutdown_starts(app) -> None:
    _SHUTDOWN_MANAGER.request_shutdown(app.shutdown_timeout)

    response = await _tables_list_impl()

    assert response["ok"] is False
    assert response["error"]["code"] == CONFIG_ERROR


def test_initialize_app_rejects_corrupt_registry(registry_path, make_directory) -> None:
    registry_path.parent.mkdir(parents=True, exist_ok=True)
    registry_path.write_text("{corrupt", encoding="utf-8")

    with pytest.raises(TablesError) as exc:
        initialize_app(_config(registry_path), directory=make_directory())

    assert exc.value.code == CONFIG_ERROR
    with pytest.raises(TablesError):
        get_directory()
    assert registry_path.read_text(encoding="utf-8") == "{corrupt"
