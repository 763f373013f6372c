from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Iterator, Optional
from urllib.parse import quote, unquote

from ..logging import get_logger
from ..util.errors import CacheError
from ..util.redact import redact_url

try:
    import redis  # type: ignore
except Exception:  # pragma: no cover - surfaced as a file-cache fallback
    redis = None  # type: ignore

LOG = get_logger(__name__)

Clock = Callable[[], float]

_TMP_PREFIX = ".tmp-"


class FileBackend:
    """
    One file per key under a directory. File names are the URL-quoted key, so
    'lsql:db_url:dev_...' is stored as 'lsql%3Adb_url%3Adev_...'. Each file holds
    {"value": ..., "expires_at": epoch-seconds}; expired entries read as absent
    and are removed on access.
    """

    name = "File"
    encrypt_at_rest = True

    def __init__(self, directory: Path, *, clock: Clock = time.time) -> None:
        self.directory = Path(directory)
        self._clock = clock
        self.directory.mkdir(parents=True, exist_ok=True)

    @property
    def location(self) -> str:
        return str(self.directory)

    def _path(self, key: str) -> Path:
        return self.directory / quote(key, safe="")

    def _read(self, path: Path) -> Optional[str]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            LOG.debug("Unreadable cache entry %s: %s", path.name, e)
            return None
        if not isinstance(payload, dict) or "value" not in payload:
            return None
        expires_at = payload.get("expires_at")
        if expires_at is not None:
            try:
                expires_at = float(expires_at)
            except (TypeError, ValueError):
                LOG.debug("Unreadable expiry in cache entry %s", path.name)
                return None
        if expires_at is not None and expires_at <= self._clock():
            self._discard(path)
            return None
        value = payload.get("value")
        return None if value is None else str(value)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            LOG.debug("Could not remove expired cache entry %s: %s", path.name, e)

    def get(self, key: str) -> Optional[str]:
        return self._read(self._path(key))

    def set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        data = json.dumps({"value": value, "expires_at": expires_at})
        fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path(key))
        except OSError:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def _entries(self) -> Iterator[Path]:
        try:
            children = list(self.directory.iterdir())
        except FileNotFoundError:
            return
        for child in children:
            if child.is_file() and not child.name.startswith(_TMP_PREFIX):
                yield child

    def keys(self) -> Iterator[str]:
        for path in self._entries():
            yield unquote(path.name)

    def count(self, key_prefix: str) -> int:
        quoted = quote(key_prefix, safe="")
        return sum(1 for path in self._entries() if path.name.startswith(quoted))

    def sweep_expired(self) -> int:
        """Read every entry once so expired ones are removed. Returns entries dropped."""
        dropped = 0
        for path in list(self._entries()):
            if self._read(path) is None and not path.exists():
                dropped += 1
        return dropped

    def clear(self) -> None:
        for path in list(self._entries()):
            self._discard(path)


class RedisBackend:
    """Thin wrapper over a redis-py client; expiry is delegated to the server."""

    name = "Redis"
    encrypt_at_rest = False

    def __init__(self, url: str, *, client: Any = None) -> None:
        self.url = url
        if client is None:
            if redis is None:
                raise CacheError("redis Python package not installed.")
            client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2)
        self._client = client
        try:
            self._client.ping()
        except Exception as e:
            raise CacheError(f"Redis at {redact_url(url)} is unreachable: {e}") from e

    @property
    def location(self) -> str:
        return redact_url(self.url)

    def get(self, key: str) -> Optional[str]:
        value = self._client.get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds:
            self._client.set(key, value, ex=int(ttl_seconds))
        else:
            self._client.set(key, value)

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def count(self, key_prefix: str) -> int:
        return sum(1 for _ in self._client.scan_iter(match=f"{key_prefix}*"))

    def sweep_expired(self) -> int:
        return 0

    def clear(self) -> None:
        # Wipes the whole logical database, not only this prefix.
        self._client.flushdb()


def open_backend(
    directory: Path,
    *,
    redis_url: Optional[str] = None,
    clock: Clock = time.time,
    redis_client: Any = None,
) -> Any:
    """
    Redis when a URL is configured and reachable, otherwise the file store.
    Redis problems are logged and never fatal.
    """
    if redis_url:
        try:
            return RedisBackend(redis_url, client=redis_client)
        except CacheError as e:
            LOG.warning("%s Falling back to file cache at %s", e, directory)
    return FileBackend(directory, clock=clock)
