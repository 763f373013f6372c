from __future__ import annotations

import logging

import pytest

import lsql.logging as lsql_logging
from lsql.cache import clear_all_instances

_LSQL_ENV_VARS = (
    "LSQL_CONFIG",
    "LSQL_CACHE_PREFIX",
    "LSQL_CACHE_TTL",
    "LSQL_CACHE_DIR",
    "LSQL_CACHE_KEY",
    "REDIS_URL",
    "LSQL_APPLICATION",
    "LSQL_MODE",
    "LSQL_FORMAT",
    "LSQL_WORKERS",
    "LSQL_NO_COLOR",
    "LSQL_JSON_LOGS",
    "LSQL_LOG_LEVEL",
    "LSQL_RUN_TIMEOUT",
)


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Point ~/.lsql and the legacy temp cache at per-test directories."""
    for name in _LSQL_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "lsql_home"
    monkeypatch.setenv("LSQL_HOME", str(home))
    monkeypatch.setattr("lsql.cache.store.legacy_cache_dir", lambda: tmp_path / "legacy_lsql_cache")
    clear_all_instances()
    yield home
    clear_all_instances()


@pytest.fixture
def fresh_logging(monkeypatch):
    """Let setup_logging run again and restore the root logger afterwards."""
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    monkeypatch.setattr(lsql_logging.setup_logging, "_configured", False, raising=False)
    yield root
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)
