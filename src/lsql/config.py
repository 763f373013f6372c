from __future__ import annotations

import argparse
import os
import tempfile
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .logging import get_logger
from .util.errors import ConfigError

LOG = get_logger(__name__)

# --------
# Defaults
# --------
DEFAULT_APPLICATION = "greenhouse"
DEFAULT_MODE = "rw"
DEFAULT_CACHE_PREFIX = "db_url"
DEFAULT_CACHE_TTL_MINUTES = 10
DEFAULT_WORKERS = 0  # 0 = auto-detect
AUTO_OUTPUT = "__auto__"
FORMATS = ("csv", "txt", "json", "yaml")
CONFIG_FILE_NAME = "config.yml"
LEGACY_CACHE_DIR_NAME = "lsql_cache"

ALLOWED_CONFIG_KEYS = {
    "cache",
    "groups",
    "application",
    "mode",
    "format",
    "workers",
    "no_color",
    "json_logs",
    "log_level",
    "run_timeout",
}
BOOL_CONFIG_KEYS = {"no_color", "json_logs"}
INT_CONFIG_KEYS = {"workers", "run_timeout"}
STR_CONFIG_KEYS = {"application", "mode", "format", "log_level"}

DEFAULT_GROUPS: Dict[str, Dict[str, Any]] = {
    "staging": {
        "description": "Staging environments",
        "environments": ["staging", "staging-s2", "staging-s3", "staging-s101", "staging-s201"],
    },
    "all-prod": {
        "description": "All production environments",
        "environments": [
            "prod",
            "prod-s2",
            "prod-s3",
            "prod-s4",
            "prod-s5",
            "prod-s6",
            "prod-s7",
            "prod-s8",
            "prod-s9",
            "prod-s101",
            "prod-s201",
        ],
    },
    "us-prod": {
        "description": "All US production environments",
        "environments": ["prod", "prod-s2", "prod-s3", "prod-s4", "prod-s5", "prod-s6", "prod-s7", "prod-s8", "prod-s9"],
    },
    "eu-prod": {"description": "All EU production environments", "environments": ["prod-s101"]},
    "apse-prod": {"description": "All AP Southeast production environments", "environments": ["prod-s201"]},
    "us-staging": {"description": "All US staging environments", "environments": ["staging", "staging-s2", "staging-s3"]},
    "eu-staging": {"description": "All EU staging environments", "environments": ["staging-s101"]},
    "apse-staging": {"description": "All AP Southeast staging environments", "environments": ["staging-s201"]},
}


# ---------------
# File locations
# ---------------
def lsql_home() -> Path:
    env_home = os.getenv("LSQL_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".lsql"


def default_config_path() -> Path:
    return lsql_home() / CONFIG_FILE_NAME


def resolve_config_path(explicit_path: Optional[Path] = None) -> Path:
    if explicit_path is not None:
        return Path(explicit_path).expanduser()
    env_path = _env_str("LSQL_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return default_config_path()


def default_cache_dir() -> Path:
    return lsql_home() / "cache"


def legacy_cache_dir() -> Path:
    # Releases before the ~/.lsql layout cached under the system temp dir.
    return Path(tempfile.gettempdir()) / LEGACY_CACHE_DIR_NAME


# ------------
# File parsing
# ------------
def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be a mapping")
    return data


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load the user config file. A missing file is an empty config; an unreadable
    one is logged and treated as empty so lookups fall back to defaults.
    """
    p = resolve_config_path(path)
    if not p.exists():
        return {}
    try:
        return _parse_config_file(p)
    except (OSError, ValueError) as e:
        LOG.warning("Failed to load config file %s: %s", p, e)
        return {}


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate the top-level run keys of a config file. The cache and groups
    sections are read by their own accessors and are not part of RunConfig.
    """
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS or key in {"cache", "groups"}:
            continue
        if value is None:
            continue
        if key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in STR_CONFIG_KEYS:
            if not isinstance(value, str):
                raise ValueError(f"Config field '{key}' must be a string")
            normalized[key] = value
    fmt = normalized.get("format")
    if fmt is not None:
        fmt = fmt.lower()
        if fmt not in FORMATS:
            raise ValueError(f"Config field 'format' must be one of: {', '.join(FORMATS)}")
        normalized["format"] = fmt
    return normalized


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


# --------------
# Cache settings
# --------------
@dataclass(frozen=True)
class CacheSettings:
    prefix: str
    ttl_seconds: int
    directory: Path
    redis_url: Optional[str] = None
    passphrase: Optional[str] = field(default=None, repr=False)
    sources: Dict[str, str] = field(default_factory=dict, compare=False)


def _cache_section(config_path: Optional[Path]) -> Dict[str, Any]:
    section = load_config_file(config_path).get("cache") or {}
    if not isinstance(section, dict):
        LOG.warning("Config section 'cache' must be a mapping; ignoring it")
        return {}
    return section


def resolve_cache_settings(
    prefix: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    directory: Optional[Path] = None,
    *,
    config_path: Optional[Path] = None,
) -> CacheSettings:
    """
    Resolve cache settings. Priority (high -> low):
    explicit argument > environment variable > config file > built-in default.

    LSQL_CACHE_TTL and cache.ttl_minutes are in minutes; ttl_seconds is seconds.
    """
    section = _cache_section(config_path)
    sources: Dict[str, str] = {}

    def _pick(name: str, explicit: Any, env_value: Any, file_value: Any, default: Any) -> Any:
        for source, value in (
            ("argument", explicit),
            ("environment", env_value),
            ("config file", file_value),
        ):
            if value is not None:
                sources[name] = source
                return value
        sources[name] = "default"
        return default

    env_ttl = _env_int("LSQL_CACHE_TTL")
    file_ttl = section.get("ttl_minutes")
    if file_ttl is not None:
        file_ttl = _coerce_int("cache.ttl_minutes", file_ttl)

    effective_prefix = _pick(
        "prefix", prefix, _env_str("LSQL_CACHE_PREFIX"), section.get("prefix"), DEFAULT_CACHE_PREFIX
    )
    effective_ttl = _pick(
        "ttl",
        ttl_seconds,
        env_ttl * 60 if env_ttl is not None else None,
        file_ttl * 60 if file_ttl is not None else None,
        DEFAULT_CACHE_TTL_MINUTES * 60,
    )
    effective_dir = _pick(
        "directory", directory, _env_str("LSQL_CACHE_DIR"), section.get("directory"), default_cache_dir()
    )
    redis_url = _pick("redis_url", None, _env_str("REDIS_URL"), section.get("redis_url"), None)
    passphrase = _pick("encryption", None, _env_str("LSQL_CACHE_KEY"), section.get("encryption_key"), None)

    return CacheSettings(
        prefix=str(effective_prefix),
        ttl_seconds=int(effective_ttl),
        directory=Path(str(effective_dir)).expanduser(),
        redis_url=str(redis_url) if redis_url else None,
        passphrase=str(passphrase) if passphrase else None,
        sources=sources,
    )


# ------
# Groups
# ------
def get_groups(config_path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    groups = load_config_file(config_path).get("groups")
    if not groups:
        return dict(DEFAULT_GROUPS)
    if not isinstance(groups, dict):
        raise ConfigError("Config section 'groups' must be a mapping of group name to definition")
    return groups


def get_group_members(group_name: str, config_path: Optional[Path] = None) -> List[Any]:
    """
    Return the raw member entries of a group: plain environment names or
    {name, space, region, cluster} mappings. Unknown groups yield [].
    """
    group = get_groups(config_path).get(group_name)
    if not isinstance(group, dict):
        return []
    return list(group.get("environments") or [])


def describe_groups(config_path: Optional[Path] = None) -> List[str]:
    lines: List[str] = []
    for name, group in get_groups(config_path).items():
        group = group or {}
        members = group.get("environments") or []
        labels = [m if isinstance(m, str) else str((m or {}).get("name", "?")) for m in members]
        lines.append(f"{name}:")
        lines.append(f"  Description: {group.get('description') or 'No description'}")
        lines.append(f"  Environments ({len(labels)}): {', '.join(labels)}")
        lines.append("")
    return lines


_DEFAULT_CONFIG_TEMPLATE = """\
# lsql configuration file
# Settings and group definitions for the lsql command-line tool.

cache:
  # Cache key prefix. Keys use the format lsql:{prefix}:{space}_{env}_{region}_{app}
  prefix: db_url

  # How long database URLs are cached before requiring a fresh lookup (minutes)
  ttl_minutes: 10

  # Directory where encrypted cache files are stored (set LSQL_CACHE_KEY to encrypt)
  directory: %(directory)s

  # Optional Redis endpoint; falls back to the file cache when unreachable
  # redis_url: redis://localhost:6379/0

# Defaults applied to every run unless overridden by env vars or flags
# application: greenhouse
# format: csv
# workers: 0

# Environment groups for batch operations
%(groups)s
"""


def create_default_config(config_path: Optional[Path] = None) -> Tuple[Path, bool]:
    """
    Write a commented default config file. Never overwrites an existing file.
    Returns (path, created).
    """
    p = resolve_config_path(config_path)
    if p.exists():
        return p, False
    p.parent.mkdir(parents=True, exist_ok=True)
    groups_yaml = yaml.safe_dump({"groups": DEFAULT_GROUPS}, sort_keys=False, default_flow_style=False)
    p.write_text(
        _DEFAULT_CONFIG_TEMPLATE % {"directory": default_cache_dir(), "groups": groups_yaml},
        encoding="utf-8",
    )
    return p, True


def show_config(
    cli_prefix: Optional[str] = None,
    cli_ttl_seconds: Optional[int] = None,
    config_path: Optional[Path] = None,
) -> List[str]:
    p = resolve_config_path(config_path)
    settings = resolve_cache_settings(cli_prefix, cli_ttl_seconds, config_path=config_path)
    effective = {
        "cache": {
            "prefix": settings.prefix,
            "ttl_minutes": settings.ttl_seconds // 60,
            "directory": str(settings.directory),
            "backend": "redis" if settings.redis_url else "file",
            "encryption": "enabled" if settings.passphrase else "disabled",
        }
    }
    lines = [f"Configuration File: {p}", f"File exists: {p.exists()}", "", "Effective Configuration:"]
    lines.extend(yaml.safe_dump(effective, sort_keys=False).rstrip().splitlines())
    lines.append("")
    lines.append("Priority Information:")
    for key in ("prefix", "ttl", "directory"):
        lines.append(f"  cache_{key}: {settings.sources.get(key, 'default')}")
    if p.exists():
        lines.append("")
        lines.append("Raw Config File Contents:")
        lines.extend(p.read_text(encoding="utf-8").rstrip().splitlines())
    return lines


# ----------
# Run config
# ----------
@dataclass(frozen=True)
class RunConfig:
    # Target
    sql: Optional[str] = None
    env: Optional[str] = None
    group: Optional[str] = None
    space: Optional[str] = None
    region: Optional[str] = None
    application: str = DEFAULT_APPLICATION
    cluster: Optional[str] = None
    database: Optional[str] = None
    mode: str = DEFAULT_MODE

    # Output
    output: Optional[str] = None
    format: Optional[str] = None
    no_agg: bool = False
    no_color: bool = False
    verbose: bool = False
    quiet: bool = False

    # Execution
    parallel: bool = True
    workers: int = DEFAULT_WORKERS
    run_timeout: Optional[int] = None

    # Cache
    cache_prefix: Optional[str] = None
    cache_ttl_minutes: Optional[int] = None

    # Actions
    show_config: bool = False
    init_config: bool = False
    list_groups: bool = False
    cache_stats: bool = False
    clear_cache: bool = False

    # Logging
    json_logs: bool = False
    log_level: str = "WARNING"
    log_file: Optional[Path] = None

    config_path: Optional[Path] = None

    @property
    def cache_ttl_seconds(self) -> Optional[int]:
        if self.cache_ttl_minutes is None:
            return None
        return self.cache_ttl_minutes * 60

    @property
    def interactive(self) -> bool:
        return self.sql is None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lsql",
        description="Run SQL against one or many environments with cached credentials.",
        epilog=(
            "Examples:\n"
            "  lsql -e dev01                                 interactive session on dev01\n"
            "  lsql \"SELECT 1\" -e prod01                     run a query on prod01\n"
            "  lsql query.sql -g staging -f csv -o out.csv   run a file across a group\n"
            "  lsql \"SELECT 1\" -e prod01:prod:use1,dev02::euc1\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("sql", nargs="?", default=None, help="SQL statement or path to a .sql file")

    tgt = parser.add_argument_group("targets")
    tgt.add_argument("-e", "--env", default=None, help="Environment, or env[:space[:region[:cluster]]],... list")
    tgt.add_argument("-g", "--group", default=None, help="Environment group from the config file")
    tgt.add_argument("-s", "--space", default=None, help="Space (default from env name: prod/staging -> prod)")
    tgt.add_argument("-r", "--region", default=None, help="Region (default from env name suffix)")
    tgt.add_argument("-a", "--application", default=None, help=f"Application (default {DEFAULT_APPLICATION})")
    tgt.add_argument("-c", "--cluster", default=None, help="Cluster used instead of application for lookup")
    tgt.add_argument("-d", "--database", default=None, help="Override the database name in the URL")
    tgt.add_argument(
        "-m",
        "--mode",
        default=None,
        help="rw | ro/r1/primary | r2/secondary | r3/tertiary | <custom replica>",
    )

    out = parser.add_argument_group("output")
    out.add_argument("-o", "--output", nargs="?", const=AUTO_OUTPUT, default=None, help="Output file")
    out.add_argument("-f", "--format", default=None, choices=list(FORMATS), help="Output format")
    out.add_argument("-A", "--no-agg", action="store_true", default=None, help="Disable aggregated output")
    out.add_argument("-C", "--no-color", action="store_true", default=None, help="Disable prompt colors")
    out.add_argument("-v", "--verbose", action="store_true", default=False, help="Per-environment output")
    out.add_argument("-q", "--quiet", action="store_true", default=False, help="Suppress progress and banners")

    ex = parser.add_argument_group("execution")
    ex.add_argument("-p", "--parallel", nargs="?", type=int, const=0, default=None, metavar="N",
                    help="Parallel workers (default; 0 = auto-detect)")
    ex.add_argument("-P", "--no-parallel", action="store_true", default=False, help="Run environments sequentially")
    ex.add_argument("--run-timeout", type=int, default=None, help="Abandon unfinished environments after N seconds")

    cache = parser.add_argument_group("cache")
    cache.add_argument("--cache-prefix", default=None, help="Cache key prefix")
    cache.add_argument("--cache-ttl", type=int, default=None, metavar="MINUTES", help="Cache TTL in minutes")
    cache.add_argument("--cache-stats", action="store_true", default=False, help="Show cache statistics")
    cache.add_argument("--clear-cache", action="store_true", default=False, help="Clear the whole cache store")

    cfg = parser.add_argument_group("configuration")
    cfg.add_argument("--config", type=Path, default=None, help="Config file (default ~/.lsql/config.yml)")
    cfg.add_argument("--show-config", action="store_true", default=False, help="Show effective configuration")
    cfg.add_argument("--init-config", action="store_true", default=False, help="Create the default config file")
    cfg.add_argument("--list-groups", action="store_true", default=False, help="List environment groups")
    cfg.add_argument("--log-level", default=None, help="Log level (WARNING, INFO, DEBUG, ...)")
    cfg.add_argument("--json-logs", action=argparse.BooleanOptionalAction, default=None, help="Enable JSON logs")
    cfg.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[List[str]] = None,
) -> RunConfig:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.
    """
    ns = args if args is not None else build_parser().parse_args(argv)

    base: Dict[str, Any] = {
        "application": DEFAULT_APPLICATION,
        "mode": DEFAULT_MODE,
        "format": None,
        "workers": DEFAULT_WORKERS,
        "no_color": False,
        "json_logs": False,
        "log_level": "WARNING",
        "run_timeout": None,
    }

    config_path = getattr(ns, "config", None)
    file_cfg: Dict[str, Any] = {}
    if config_path is not None:
        file_cfg = _normalize_config_file(_parse_config_file(Path(config_path)))
    else:
        file_cfg = _normalize_config_file(load_config_file())

    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "application": _env_str("LSQL_APPLICATION"),
            "mode": _env_str("LSQL_MODE"),
            "format": _env_str("LSQL_FORMAT"),
            "workers": _env_int("LSQL_WORKERS"),
            "no_color": _env_bool("LSQL_NO_COLOR"),
            "json_logs": _env_bool("LSQL_JSON_LOGS"),
            "log_level": _env_str("LSQL_LOG_LEVEL"),
            "run_timeout": _env_int("LSQL_RUN_TIMEOUT"),
        }
    )

    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "application": getattr(ns, "application", None),
            "mode": getattr(ns, "mode", None),
            "format": getattr(ns, "format", None),
            "workers": getattr(ns, "parallel", None),
            "no_color": getattr(ns, "no_color", None),
            "json_logs": getattr(ns, "json_logs", None),
            "log_level": getattr(ns, "log_level", None),
            "run_timeout": getattr(ns, "run_timeout", None),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    fmt = merged.get("format")
    if fmt is not None:
        fmt = str(fmt).lower()
        if fmt not in FORMATS:
            raise ConfigError(f"Unsupported format '{fmt}'; expected one of: {', '.join(FORMATS)}")

    verbose = bool(getattr(ns, "verbose", False))
    quiet = bool(getattr(ns, "quiet", False))
    if verbose and quiet:
        raise ConfigError("--verbose and --quiet are mutually exclusive")

    run_timeout = merged.get("run_timeout")
    if run_timeout is not None and int(run_timeout) <= 0:
        run_timeout = None

    return RunConfig(
        sql=getattr(ns, "sql", None),
        env=getattr(ns, "env", None),
        group=getattr(ns, "group", None),
        space=getattr(ns, "space", None),
        region=getattr(ns, "region", None),
        application=str(merged["application"] or DEFAULT_APPLICATION),
        cluster=getattr(ns, "cluster", None),
        database=getattr(ns, "database", None),
        mode=str(merged["mode"] or DEFAULT_MODE),
        output=getattr(ns, "output", None),
        format=fmt,
        no_agg=bool(getattr(ns, "no_agg", None)),
        no_color=bool(merged["no_color"]),
        verbose=verbose,
        quiet=quiet,
        parallel=not bool(getattr(ns, "no_parallel", False)),
        workers=int(merged["workers"] or 0),
        run_timeout=int(run_timeout) if run_timeout is not None else None,
        cache_prefix=getattr(ns, "cache_prefix", None),
        cache_ttl_minutes=getattr(ns, "cache_ttl", None),
        show_config=bool(getattr(ns, "show_config", False)),
        init_config=bool(getattr(ns, "init_config", False)),
        list_groups=bool(getattr(ns, "list_groups", False)),
        cache_stats=bool(getattr(ns, "cache_stats", False)),
        clear_cache=bool(getattr(ns, "clear_cache", False)),
        json_logs=bool(merged["json_logs"]),
        log_level=str(merged["log_level"] or "WARNING").upper(),
        log_file=getattr(ns, "log_file", None),
        config_path=Path(config_path) if config_path is not None else None,
    )
