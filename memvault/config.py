"""
Memory Store Configuration

Configuration dataclasses for memvault: store, backup and search settings.
Includes load_config() for reading a JSON config file with silent fallback to
compiled defaults, followed by MEMORY_* environment overrides.

Precedence (invariant):
    MEMORY_* env var  >  config file  >  compiled default
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        expected = (
            "/".join(t.__name__ for t in typ) if isinstance(typ, tuple)
            else typ.__name__
        )
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = "memory.db"
    wal_mode: bool = True
    # DELETE journal + synchronous=FULL for synced folders (OneDrive, Dropbox)
    cloud_safe: bool = False
    fts_tokenizer: str = "unicode61 remove_diacritics 2"
    busy_timeout: float = 5.0
    max_content_size: int = 1024 * 1024

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.db_path:
            errors.append("store.db_path: cannot be empty")
        _check_range(errors, "store.busy_timeout",
                     self.busy_timeout, 0.0, 600.0, (int, float))
        _check_range(errors, "store.max_content_size",
                     self.max_content_size, 1, 100 * 1024 * 1024, int)
        return errors


@dataclass
class BackupConfig:
    """Backup rotation configuration (disabled when backup_dir is None)."""
    backup_dir: Optional[str] = None
    interval_minutes: int = 0   # 0 = backup after every write
    max_backups: int = 10       # 0 = keep everything

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "backup.interval_minutes",
                     self.interval_minutes, 0, 525600, int)
        _check_range(errors, "backup.max_backups",
                     self.max_backups, 0, 10000, int)
        return errors


@dataclass
class SearchConfig:
    """Search and export defaults."""
    default_limit: int = 10
    max_depth: int = 3
    export_limit: int = 1000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.default_limit",
                     self.default_limit, 1, 10000, int)
        _check_range(errors, "search.max_depth", self.max_depth, 1, 3, int)
        _check_range(errors, "search.export_limit",
                     self.export_limit, 1, 1000000, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level memvault configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "backup" in d:
            kwargs["backup"] = BackupConfig(**d["backup"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.backup.validate())
        errors.extend(self.search.validate())
        return errors


# ---------------------------------------------------------------------------
# Environment overrides (never crash on a bad export)
# ---------------------------------------------------------------------------


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, v)
        return default


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    """Parse boolean env var ("true"/"1"/"yes")."""
    v = environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def apply_env(cfg: MemoryConfig, environ: Optional[Mapping[str, str]] = None) -> MemoryConfig:
    """Apply MEMORY_* environment overrides in place and return *cfg*."""
    from memvault.fts import FTS_TOKENIZER_PRESETS

    env = os.environ if environ is None else environ
    if env.get("MEMORY_DB"):
        cfg.store.db_path = env["MEMORY_DB"]
    cfg.store.cloud_safe = _env_bool(env, "MEMORY_CLOUD_SAFE", cfg.store.cloud_safe)
    if env.get("MEMORY_FTS"):
        cfg.store.fts_tokenizer = FTS_TOKENIZER_PRESETS.get(
            env["MEMORY_FTS"], env["MEMORY_FTS"],
        )
    cfg.store.max_content_size = _env_int(
        env, "MEMORY_MAX_CONTENT_SIZE", cfg.store.max_content_size,
    )
    if env.get("MEMORY_BACKUP_PATH"):
        cfg.backup.backup_dir = env["MEMORY_BACKUP_PATH"]
    cfg.backup.interval_minutes = _env_int(
        env, "MEMORY_BACKUP_INTERVAL", cfg.backup.interval_minutes,
    )
    cfg.backup.max_backups = _env_int(
        env, "MEMORY_BACKUP_KEEP", cfg.backup.max_backups,
    )
    return cfg


def load_config(
    path: Optional[str] = None,
    *,
    strict: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> MemoryConfig:
    """Load config from a JSON file, then apply environment overrides.

    Args:
        path: Path to config.json. If None, starts from compiled defaults.
        strict: If True, raise ValidationError on invalid config values.
        environ: Environment mapping (default: os.environ).

    Returns:
        MemoryConfig with values from env, file, or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError) as exc:
            logger.debug("Config %s unusable (%s), using defaults", path, exc)
            cfg = MemoryConfig()

    apply_env(cfg, environ)

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


def open_store(cfg: MemoryConfig):
    """Open a MemoryStore (and BackupService when configured) from *cfg*."""
    from memvault.backup import BackupService
    from memvault.store import MemoryStore

    backup = None
    if cfg.backup.backup_dir:
        backup = BackupService(cfg.store.db_path, cfg.backup)
    return MemoryStore(
        db_path=cfg.store.db_path,
        wal_mode=cfg.store.wal_mode and not cfg.store.cloud_safe,
        cloud_safe=cfg.store.cloud_safe,
        fts_tokenizer=cfg.store.fts_tokenizer,
        busy_timeout=cfg.store.busy_timeout,
        max_content_size=cfg.store.max_content_size,
        backup=backup,
    )
