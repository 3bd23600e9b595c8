"""Tests for the stored config document: load, save, merge and migration."""

import json
import logging

from telegate.config_store import (
    DEFAULT_INTERNAL_PORT,
    ConfigStore,
    deep_merge_defaults,
    default_config,
    migrate_legacy,
)


def _write(path, doc):
    path.write_text(json.dumps(doc), encoding="utf-8")


class TestLoad:

    def test_missing_file_gives_defaults(self, store):
        config = store.load()
        assert config == default_config()

    def test_corrupt_file_gives_defaults(self, store):
        store.path.write_text("{not json", encoding="utf-8")
        assert store.load() == default_config()

    def test_empty_file_gives_defaults(self, store):
        store.path.write_text("", encoding="utf-8")
        assert store.load()["group_policy"] == "allowlist"

    def test_non_object_gives_defaults(self, store):
        _write(store.path, [1, 2, 3])
        assert store.load() == default_config()

    def test_defaults_are_fresh_copies(self, store):
        first = store.load()
        first["whitelist"]["ids"].append("1")
        assert store.load()["whitelist"]["ids"] == []

    def test_unknown_keys_preserved(self, store):
        _write(store.path, {"custom": {"x": 1}, "enabled": False})
        config = store.load()
        assert config["custom"] == {"x": 1}
        assert config["enabled"] is False
        assert config["internal_port"] == DEFAULT_INTERNAL_PORT

    def test_group_keys_normalized(self, store):
        _write(store.path, {"groups": {"-100200": {"name": "Team", "mode": "bogus", "allow_from": [5005]}}})
        group = store.load()["groups"]["-100200"]
        assert group["mode"] == "mention"
        assert group["allow_from"] == ["5005"]

    def test_owner_id_stringified(self, store):
        _write(store.path, {"owner": {"id": 1001}})
        assert store.load()["owner"]["id"] == "1001"

    def test_bad_policy_falls_back(self, store):
        _write(store.path, {"group_policy": "everyone"})
        assert store.load()["group_policy"] == "allowlist"


class TestSave:

    def test_roundtrip(self, store):
        config = default_config()
        config["owner"]["id"] = "1001"
        assert store.save(config) is True
        assert store.load()["owner"]["id"] == "1001"

    def test_no_temp_files_left(self, store):
        store.save(default_config())
        assert [p.name for p in store.path.parent.iterdir()] == ["config.json"]

    def test_creates_parent_dir(self, tmp_path):
        nested = ConfigStore(tmp_path / "a" / "b" / "config.json")
        assert nested.save(default_config())
        assert nested.path.exists()

    def test_unwritable_returns_false(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        assert ConfigStore(blocker / "config.json").save(default_config()) is False


class TestDeepMerge:

    def test_one_level_merge(self):
        merged = deep_merge_defaults(
            {"features": {"a": True, "b": False}, "n": 1},
            {"features": {"b": True}},
        )
        assert merged == {"features": {"a": True, "b": True}, "n": 1}

    def test_null_values_ignored(self):
        merged = deep_merge_defaults({"message": {"context_messages": 5}}, {"message": {"context_messages": None}})
        assert merged["message"]["context_messages"] == 5

    def test_non_dict_section_replaced_by_defaults(self):
        merged = deep_merge_defaults({"features": {"a": True}}, {"features": "broken"})
        assert merged["features"] == {"a": True}


class TestMigration:

    def test_legacy_owner_and_whitelist(self):
        doc = {
            "owner": {"chat_id": 1001, "username": "alice", "bound_at": "t"},
            "whitelist": {"chat_ids": [5005], "usernames": ["Bob"]},
        }
        notes = migrate_legacy(doc)
        assert len(notes) == 2
        assert doc["owner"] == {"id": "1001", "display_name": "alice", "bound_at": "t"}
        assert doc["whitelist"] == {"ids": ["5005"], "names": ["bob"]}

    def test_group_id_owner_reset(self):
        doc = {"owner": {"id": "-100123", "display_name": "Team"}}
        notes = migrate_legacy(doc)
        assert doc["owner"]["id"] is None
        assert any("Reset owner" in n for n in notes)

    def test_legacy_groups(self):
        doc = {
            "allowed_groups": [{"chat_id": -100200, "name": "Team"}],
            "smart_groups": [{"chat_id": -100300, "name": "Ops"}],
            "group_whitelist": {"enabled": True},
        }
        migrate_legacy(doc)
        assert doc["groups"]["-100200"]["mode"] == "mention"
        assert doc["groups"]["-100300"]["mode"] == "broadcast"
        assert doc["group_policy"] == "allowlist"
        assert "allowed_groups" not in doc
        assert "smart_groups" not in doc
        assert "group_whitelist" not in doc

    def test_disabled_group_whitelist_becomes_open(self):
        doc = {"allowed_groups": [], "smart_groups": [{"chat_id": -1, "name": "x"}], "group_whitelist": {"enabled": False}}
        migrate_legacy(doc)
        assert doc["group_policy"] == "open"

    def test_camel_case_policy(self):
        doc = {"groupPolicy": "open"}
        migrate_legacy(doc)
        assert doc == {"group_policy": "open"}

    def test_dead_features_removed(self):
        doc = {"features": {"download_media": True, "auto_split_messages": True, "max_message_length": 4000}}
        notes = migrate_legacy(doc)
        assert doc["features"] == {"download_media": True}
        assert len(notes) == 2

    def test_current_document_untouched(self):
        doc = default_config()
        assert migrate_legacy(doc) == []
        assert doc == default_config()

    def test_store_migrate_writes_file(self, store):
        _write(store.path, {"owner": {"chat_id": 1001, "username": "alice"}})
        notes = store.migrate()
        assert notes
        on_disk = json.loads(store.path.read_text(encoding="utf-8"))
        assert on_disk["owner"]["id"] == "1001"
        assert on_disk["internal_port"] == DEFAULT_INTERNAL_PORT
        assert store.migrate() == []

    def test_store_migrate_corrupt_file(self, store):
        store.path.write_text("{", encoding="utf-8")
        assert store.migrate() == []

    def test_null_and_scalar_legacy_values(self):
        doc = {"whitelist": {"chat_ids": None, "usernames": "bob"}, "allowed_groups": ["-100"], "smart_groups": 7}
        migrate_legacy(doc)
        assert doc["whitelist"] == {"ids": [], "names": []}
        assert list(doc["groups"]) == ["-100"]
        assert doc["groups"]["-100"]["mode"] == "mention"

    def test_non_dict_legacy_group_entries_skipped(self):
        doc = {"allowed_groups": [None, ["x"], {"name": "no id"}, {"chat_id": -100200}], "message": "5"}
        migrate_legacy(doc)
        assert list(doc["groups"]) == ["-100200"]
        assert doc["groups"]["-100200"]["history_limit"] == 5


class TestMalformedValues:

    def test_legacy_nulls_load(self, store):
        _write(store.path, {"whitelist": {"chat_ids": None}, "allowed_groups": ["-100"]})
        config = store.load()
        assert config["whitelist"] == {"ids": [], "names": []}
        assert "-100" in config["groups"]

    def test_scalar_lists_coerced(self, store):
        _write(store.path, {"whitelist": {"ids": 5, "names": None}, "groups": {"-1": {"allow_from": "*"}}})
        config = store.load()
        assert config["whitelist"]["ids"] == []
        assert config["groups"]["-1"]["allow_from"] == ["*"]

    def test_unexpected_shape_falls_back_to_defaults(self, store, monkeypatch, caplog):
        _write(store.path, {"group_policy": "open"})
        monkeypatch.setattr("telegate.config_store.migrate_legacy", _raise_type_error)
        with caplog.at_level(logging.ERROR, logger="telegate.config"):
            assert store.load() == default_config()
        assert "malformed" in caplog.text

    def test_migrate_reports_nothing(self, store, monkeypatch):
        _write(store.path, {"groupPolicy": "open"})
        monkeypatch.setattr("telegate.config_store.migrate_legacy", _raise_type_error)
        assert store.migrate() == []
        assert json.loads(store.path.read_text(encoding="utf-8")) == {"groupPolicy": "open"}


def _raise_type_error(doc):
    raise TypeError("'NoneType' object is not iterable")
