"""
Tests for memvault.config — configuration loading, env overrides, validation.
"""

import json

import pytest

from memvault.config import (
    BackupConfig,
    MemoryConfig,
    SearchConfig,
    StoreConfig,
    ValidationError,
    load_config,
    open_store,
)


def _write(tmp_path, data, name="config.json"):
    path = tmp_path / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


class TestLoadConfig:
    def test_defaults(self):
        cfg = load_config(environ={})
        assert cfg.store.db_path == "memory.db"
        assert cfg.store.fts_tokenizer == "unicode61 remove_diacritics 2"
        assert cfg.backup.backup_dir is None
        assert cfg.search.default_limit == 10

    def test_load_valid_json(self, tmp_path):
        """Parses all sections from a valid JSON config."""
        path = _write(tmp_path, {
            "store": {"db_path": "notes.db", "fts_tokenizer": "porter unicode61"},
            "backup": {"backup_dir": "bk", "max_backups": 3},
            "search": {"default_limit": 25},
        })
        cfg = load_config(path, environ={})
        assert cfg.store.db_path == "notes.db"
        assert cfg.store.fts_tokenizer == "porter unicode61"
        assert cfg.backup.max_backups == 3
        assert cfg.search.default_limit == 25

    def test_load_missing_file(self, tmp_path):
        """Returns defaults silently when file is missing."""
        cfg = load_config(str(tmp_path / "nonexistent.json"), environ={})
        assert isinstance(cfg, MemoryConfig)
        assert cfg.store.db_path == "memory.db"

    def test_load_invalid_json(self, tmp_path):
        """Returns defaults silently when file has invalid JSON."""
        path = tmp_path / "bad.json"
        path.write_text("not json {{{", encoding="utf-8")
        cfg = load_config(str(path), environ={})
        assert cfg.search.export_limit == 1000

    def test_unknown_key_falls_back(self, tmp_path):
        path = _write(tmp_path, {"store": {"no_such_field": 1}})
        cfg = load_config(path, environ={})
        assert cfg.store == StoreConfig()

    def test_partial_config(self, tmp_path):
        """Missing sections get defaults."""
        path = _write(tmp_path, {"search": {"max_depth": 2}})
        cfg = load_config(path, environ={})
        assert cfg.search.max_depth == 2
        assert cfg.backup == BackupConfig()


class TestEnvOverrides:
    def test_env_beats_file(self, tmp_path):
        path = _write(tmp_path, {"store": {"db_path": "from-file.db"}})
        cfg = load_config(path, environ={"MEMORY_DB": "from-env.db"})
        assert cfg.store.db_path == "from-env.db"

    def test_fts_preset(self):
        cfg = load_config(environ={"MEMORY_FTS": "en"})
        assert cfg.store.fts_tokenizer == "porter unicode61 remove_diacritics 2"

    def test_fts_custom(self):
        cfg = load_config(environ={"MEMORY_FTS": "trigram"})
        assert cfg.store.fts_tokenizer == "trigram"

    def test_cloud_safe(self):
        assert load_config(environ={"MEMORY_CLOUD_SAFE": "true"}).store.cloud_safe is True
        assert load_config(environ={"MEMORY_CLOUD_SAFE": "0"}).store.cloud_safe is False

    def test_backup_vars(self):
        cfg = load_config(environ={
            "MEMORY_BACKUP_PATH": "/tmp/bk",
            "MEMORY_BACKUP_INTERVAL": "30",
            "MEMORY_BACKUP_KEEP": "5",
        })
        assert cfg.backup.backup_dir == "/tmp/bk"
        assert cfg.backup.interval_minutes == 30
        assert cfg.backup.max_backups == 5

    def test_bad_integer_ignored(self):
        cfg = load_config(environ={"MEMORY_BACKUP_KEEP": "lots"})
        assert cfg.backup.max_backups == 10


class TestValidation:
    def test_defaults_valid(self):
        assert MemoryConfig().validate() == []

    def test_out_of_range(self):
        cfg = MemoryConfig(search=SearchConfig(max_depth=7))
        errors = cfg.validate()
        assert any("search.max_depth" in e for e in errors)

    def test_wrong_type(self):
        errors = StoreConfig(busy_timeout="slow").validate()
        assert errors == ["store.busy_timeout: expected int/float, got str"]

    def test_strict_raises(self):
        with pytest.raises(ValidationError):
            load_config(strict=True, environ={"MEMORY_MAX_CONTENT_SIZE": "0"})

    def test_empty_db_path(self):
        assert StoreConfig(db_path="").validate() == ["store.db_path: cannot be empty"]


class TestOpenStore:
    def test_open_without_backup(self, tmp_path):
        cfg = MemoryConfig(store=StoreConfig(db_path=str(tmp_path / "m.db")))
        with open_store(cfg) as store:
            store.store("hello")
            assert "backup_enabled" not in store.stats()

    def test_open_with_backup(self, tmp_path):
        cfg = MemoryConfig(
            store=StoreConfig(db_path=str(tmp_path / "m.db"), max_content_size=50),
            backup=BackupConfig(backup_dir=str(tmp_path / "bk")),
        )
        with open_store(cfg) as store:
            store.store("hello")
            stats = store.stats()
            assert stats["backup_enabled"] is True
            assert stats["backup_count"] == 1
            assert store._max_content_size == 50
