from __future__ import annotations

import json
from pathlib import Path

import pytest

from ipns_tables.errors import CONFIG_ERROR
from ipns_tables.registry import Registry, RegistryEntry, RegistryError


def test_missing_file_loads_empty(tmp_path: Path) -> None:
    assert Registry(tmp_path / "missing.json").load() == {}


def test_save_then_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "tables_registry.json"
    registry = Registry(path)
    entries = [
        RegistryEntry(id="music", name="Music", key_name="music", ipns_name="k51music"),
        RegistryEntry(id="movies", name="movies", key_name="movies", ipns_name="k51movies"),
    ]

    registry.save(entries)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert list(payload["tables"]) == ["movies", "music"]
    assert payload["tables"]["music"] == {"id": "music", "name": "Music", "keyName": "music", "ipnsName": "k51music"}
    assert registry.load() == {entry.id: entry for entry in entries}
    assert not path.with_name(f"{path.name}.tmp").exists()


def test_load_fills_defaults_from_table_id(tmp_path: Path) -> None:
    path = tmp_path / "tables_registry.json"
    path.write_text(json.dumps({"tables": {"movies": {"ipnsName": "k51movies"}, "broken": "nope"}}), encoding="utf-8")

    entries = Registry(path).load()

    assert entries == {"movies": RegistryEntry(id="movies", name="movies", key_name="movies", ipns_name="k51movies")}


@pytest.mark.parametrize("content", ["{not json", json.dumps({"tables": ["movies"]})])
def test_corrupt_registry_is_a_config_error(tmp_path: Path, content: str) -> None:
    path = tmp_path / "tables_registry.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(RegistryError) as exc:
        Registry(path).load()

    assert exc.value.code == CONFIG_ERROR


def test_save_failure_is_a_config_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")

    with pytest.raises(RegistryError) as exc:
        Registry(blocker / "tables_registry.json").save([])

    assert exc.value.code == CONFIG_ERROR
