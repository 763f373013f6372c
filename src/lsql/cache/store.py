from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import CacheSettings, legacy_cache_dir
from ..environments import EnvironmentContext
from ..logging import get_logger
from .backends import Clock, open_backend
from .crypto import ValueCipher

LOG = get_logger(__name__)

KEY_NAMESPACE = "lsql"


def migrate_legacy_cache(legacy: Path, current: Path) -> int:
    """
    Copy entries from the old temp-dir cache into the current directory
    without overwriting, then remove the old directory when it ends up empty.
    Every failure is logged and swallowed. Returns the number of entries copied.
    """
    if not legacy.is_dir() or legacy.resolve() == current.resolve():
        return 0
    copied = 0
    try:
        current.mkdir(parents=True, exist_ok=True)
        for entry in legacy.iterdir():
            if not entry.is_file():
                continue
            target = current / entry.name
            if target.exists():
                continue
            try:
                shutil.copy2(entry, target)
                entry.unlink()
                copied += 1
            except OSError as e:
                LOG.warning("Could not migrate cache entry %s: %s", entry.name, e)
        if not any(legacy.iterdir()):
            legacy.rmdir()
    except OSError as e:
        LOG.warning("Cache migration from %s failed: %s", legacy, e)
    if copied:
        LOG.info("Migrated %d cache entries from %s", copied, legacy)
    return copied


def credential_key(prefix: str, ctx: EnvironmentContext) -> str:
    """lsql:{prefix}:{space}_{env}_{region}_{app}[_c:{cluster}]"""
    body = "_".join([ctx.space, ctx.name, ctx.region, ctx.application])
    if ctx.cluster:
        # Marked, so an application name containing "_" never equals app + cluster.
        body = f"{body}_c:{ctx.cluster}"
    return f"{KEY_NAMESPACE}:{prefix}:{body}"


class CredentialCache:
    """
    TTL key-value store for resolved database URLs.

    Backed by Redis when REDIS_URL is reachable, otherwise by files under the
    cache directory. File values are AES-GCM encrypted when a passphrase
    (LSQL_CACHE_KEY) is configured. Reads never fail on a bad ciphertext: the
    stored text is returned unchanged.
    """

    def __init__(
        self,
        settings: CacheSettings,
        *,
        clock: Clock = time.time,
        backend: Any = None,
        legacy_directory: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.prefix = settings.prefix
        self.ttl_seconds = settings.ttl_seconds
        if backend is None:
            if not settings.redis_url:
                migrate_legacy_cache(legacy_directory or legacy_cache_dir(), settings.directory)
            backend = open_backend(settings.directory, redis_url=settings.redis_url, clock=clock)
        self.backend = backend
        self._cipher: Optional[ValueCipher] = None
        if settings.passphrase and getattr(backend, "encrypt_at_rest", False):
            self._cipher = ValueCipher(settings.passphrase)
        swept = self.backend.sweep_expired()
        if swept:
            LOG.debug("Removed %d expired cache entries", swept)

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    # Generic key/value operations

    def get(self, key: str) -> Optional[str]:
        value = self.backend.get(key)
        if value is None:
            return None
        if self._cipher is not None:
            return self._cipher.decrypt(value)
        return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        stored = value
        if self._cipher is not None:
            try:
                stored = self._cipher.encrypt(value)
            except Exception as e:
                LOG.warning("Encryption failed (%s); storing value unencrypted", type(e).__name__)
                stored = value
        self.backend.set(key, stored, ttl_seconds if ttl_seconds is not None else self.ttl_seconds)

    def exists(self, key: str) -> bool:
        return self.backend.exists(key)

    def clear(self) -> None:
        self.backend.clear()

    # Credential helpers

    def key_for(self, ctx: EnvironmentContext) -> str:
        return credential_key(self.prefix, ctx)

    def get_credential(self, ctx: EnvironmentContext) -> Optional[str]:
        return self.get(self.key_for(ctx))

    def set_credential(self, ctx: EnvironmentContext, url: str) -> None:
        self.set(self.key_for(ctx), url)

    def has_credential(self, ctx: EnvironmentContext) -> bool:
        return self.exists(self.key_for(ctx))

    def _encryption_status(self) -> str:
        if not getattr(self.backend, "encrypt_at_rest", False):
            return "Not needed (Redis)"
        return "Enabled" if self.encrypted else "Disabled (set LSQL_CACHE_KEY)"

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": self.backend.name,
            "prefix": self.prefix,
            "total_entries": self.backend.count(f"{KEY_NAMESPACE}:{self.prefix}:"),
            "ttl_seconds": self.ttl_seconds,
            "encryption": self._encryption_status(),
            "location": self.backend.location,
        }
