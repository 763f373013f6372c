from __future__ import annotations

import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from .environments import EnvironmentContext
from .logging import get_logger
from .util.errors import SecretLookupError

LOG = get_logger(__name__)

_REPLICA_HOST_RE = re.compile(r"postgres-([^.]+)\.")
_URL_SCHEMES = ("postgres://", "postgresql://")

# mode -> (host suffix, prompt label)
_MODE_TABLE: Dict[str, Tuple[str, str]] = {
    "ro": ("replica-primary", "[RO-PRIMARY]"),
    "r1": ("replica-primary", "[RO-PRIMARY]"),
    "primary": ("replica-primary", "[RO-PRIMARY]"),
    "r2": ("replica-secondary", "[RO-SECONDARY]"),
    "secondary": ("replica-secondary", "[RO-SECONDARY]"),
    "r3": ("replica-tertiary", "[RO-TERTIARY]"),
    "tertiary": ("replica-tertiary", "[RO-TERTIARY]"),
}


def mode_display(mode: str) -> str:
    if not mode or mode == "rw":
        return ""
    entry = _MODE_TABLE.get(mode)
    return entry[1] if entry else f"[{mode}]"


def transform_database_url(url: str, mode: str) -> str:
    """
    Point a primary URL at a replica host by rewriting `postgres-<name>.` to
    `postgres-<name>-<suffix>.`. Any mode other than rw must change the URL.
    """
    if not mode or mode == "rw":
        return url
    suffix = _MODE_TABLE.get(mode, (mode, ""))[0]
    transformed = _REPLICA_HOST_RE.sub(lambda m: f"postgres-{m.group(1)}-{suffix}.", url, count=1)
    if transformed == url:
        raise SecretLookupError(
            f"Attempted to connect to {mode} replica, but the connection URL is identical "
            "to the main database URL. The replica may not exist."
        )
    return transformed


def override_database_name(url: str, database: Optional[str]) -> str:
    """Replace the database path of a URL, keeping credentials, host and query string."""
    if not database:
        return url
    try:
        parts = urlsplit(url)
    except ValueError as e:
        LOG.warning("Could not override database name (%s); using URL as is", e)
        return url
    if not parts.scheme or not parts.netloc:
        LOG.warning("Could not override database name: malformed database URL; using URL as is")
        return url
    return urlunsplit((parts.scheme, parts.netloc, f"/{database}", parts.query, parts.fragment))


def looks_like_database_url(value: Optional[str]) -> bool:
    return bool(value) and str(value).startswith(_URL_SCHEMES)


class DatabaseConnector:
    """
    Resolves the connection URL for an environment: credential cache first,
    then a (deduplicated) ping and a `lotus` secret lookup whose result is cached.
    """

    def __init__(self, lotus: Any, cache: Any, pings: Any = None) -> None:
        self.lotus = lotus
        self.cache = cache
        self.pings = pings

    def _cached_url(self, ctx: EnvironmentContext) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            value = self.cache.get_credential(ctx)
        except Exception as e:
            LOG.warning("Credential cache read failed: %s", e, extra={"environment": ctx.name})
            return None
        if value is None:
            return None
        if not looks_like_database_url(value):
            # Undecryptable or foreign entry; fetch a fresh one.
            LOG.debug("Ignoring unusable cached credential", extra={"environment": ctx.name})
            return None
        return value

    def _store(self, ctx: EnvironmentContext, url: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set_credential(ctx, url)
        except Exception as e:
            LOG.warning("Credential cache write failed: %s", e, extra={"environment": ctx.name})

    def lookup_base_url(self, ctx: EnvironmentContext) -> str:
        cached = self._cached_url(ctx)
        if cached is not None:
            LOG.debug("Using cached database URL", extra={"environment": ctx.name})
            return cached
        if self.pings is not None:
            self.pings.ensure_pinged(ctx.space, ctx.region, self.lotus.ping)
        url = self.lotus.get_database_url(ctx)
        self._store(ctx, url)
        return url

    def resolve_url(self, ctx: EnvironmentContext) -> str:
        url = transform_database_url(self.lookup_base_url(ctx), ctx.mode)
        return override_database_name(url, ctx.database)
