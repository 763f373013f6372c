from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..config import resolve_cache_settings
from .store import CredentialCache, credential_key

__all__ = [
    "CacheRegistry",
    "CredentialCache",
    "clear_all_instances",
    "credential_key",
    "get_cache",
]

_InstanceKey = Tuple[str, int, Optional[str]]


class CacheRegistry:
    """
    One CredentialCache per effective (prefix, ttl_seconds) pair and config
    file. Arguments left as None resolve through environment, config file and
    defaults, so instance() and instance("db_url", 600) share an object when
    those are the effective values.
    """

    def __init__(self) -> None:
        self._instances: Dict[_InstanceKey, CredentialCache] = {}
        self._lock = threading.Lock()

    def instance(
        self,
        prefix: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        *,
        config_path: Optional[Path] = None,
    ) -> CredentialCache:
        settings = resolve_cache_settings(prefix=prefix, ttl_seconds=ttl_seconds, config_path=config_path)
        key = (settings.prefix, settings.ttl_seconds, str(config_path) if config_path is not None else None)
        with self._lock:
            cache = self._instances.get(key)
            if cache is None:
                cache = CredentialCache(settings)
                self._instances[key] = cache
            return cache

    def clear(self) -> None:
        with self._lock:
            self._instances.clear()

    def __len__(self) -> int:
        return len(self._instances)


_global_registry = CacheRegistry()


def get_cache(
    prefix: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    *,
    config_path: Optional[Path] = None,
) -> CredentialCache:
    return _global_registry.instance(prefix, ttl_seconds, config_path=config_path)


def clear_all_instances() -> None:
    """Forget every registered instance. Stored entries are left untouched."""
    _global_registry.clear()
