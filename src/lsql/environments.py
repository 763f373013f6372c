from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, List, Optional, Tuple

from .config import RunConfig, get_group_members, get_groups
from .util.errors import StructuralError

_SPACE_PROD_RE = re.compile(r"^(prod|staging)", re.IGNORECASE)
_REGION_RULES = (
    (re.compile(r"2[0-9][1-9]$"), "apse2"),
    (re.compile(r"1[0-9][1-9]$"), "euc1"),
)
DEFAULT_REGION = "use1"


@dataclass(frozen=True)
class EnvironmentContext:
    """
    Everything needed to resolve credentials for, and run against, one
    environment. Built once per environment per run and never mutated.
    """

    name: str
    space: str
    region: str
    application: str
    cluster: Optional[str] = None
    mode: str = "rw"
    database: Optional[str] = None
    output_target: Optional[Path] = None

    @property
    def space_region(self) -> Tuple[str, str]:
        return (self.space, self.region)


@dataclass(frozen=True)
class EnvironmentOverride:
    """Per-environment overrides from a group member or an à la carte entry."""

    name: str
    space: Optional[str] = None
    region: Optional[str] = None
    cluster: Optional[str] = None


def default_space(env_name: str) -> str:
    return "prod" if _SPACE_PROD_RE.match(env_name) else "dev"


def default_region(env_name: str) -> str:
    for pattern, region in _REGION_RULES:
        if pattern.search(env_name):
            return region
    return DEFAULT_REGION


def derive_context(base: EnvironmentContext, override: EnvironmentOverride) -> EnvironmentContext:
    """
    Pure derivation of one environment's context. Space/region fall back to
    the naming convention of the *new* name, never to the base environment's
    derived values.
    """
    return replace(
        base,
        name=override.name,
        space=override.space or default_space(override.name),
        region=override.region or default_region(override.name),
        cluster=override.cluster or base.cluster,
    )


def parse_environments(
    spec: str,
    fallback_space: Optional[str] = None,
    fallback_region: Optional[str] = None,
) -> List[EnvironmentOverride]:
    """
    Parse an à la carte spec: comma-separated env[:space[:region[:cluster]]].
    Empty parts take the fallback values (which may themselves be None).
    """
    overrides: List[EnvironmentOverride] = []
    for raw in (spec or "").split(","):
        raw = raw.strip()
        if not raw:
            continue
        parts = [p.strip() for p in raw.split(":")]
        if len(parts) > 4:
            raise StructuralError(f"Invalid environment spec '{raw}': expected env[:space[:region[:cluster]]]")
        parts += [""] * (4 - len(parts))
        name, space, region, cluster = parts
        if not name:
            raise StructuralError(f"Invalid environment spec '{raw}': environment name is empty")
        overrides.append(
            EnvironmentOverride(
                name=name,
                space=space or fallback_space,
                region=region or fallback_region,
                cluster=cluster or None,
            )
        )
    return overrides


def is_multi_environment(spec: Optional[str]) -> bool:
    if not spec:
        return False
    return len([p for p in spec.split(",") if p.strip()]) > 1


def _member_override(member: Any, cfg: RunConfig) -> EnvironmentOverride:
    if isinstance(member, str):
        return EnvironmentOverride(name=member, space=cfg.space, region=cfg.region)
    if isinstance(member, dict) and member.get("name"):
        return EnvironmentOverride(
            name=str(member["name"]),
            space=member.get("space") or cfg.space,
            region=member.get("region") or cfg.region,
            cluster=member.get("cluster"),
        )
    raise StructuralError(f"Invalid group member entry: {member!r}")


def base_context(cfg: RunConfig) -> EnvironmentContext:
    name = cfg.env or ""
    return EnvironmentContext(
        name=name,
        space=cfg.space or default_space(name),
        region=cfg.region or default_region(name),
        application=cfg.application,
        cluster=cfg.cluster,
        mode=cfg.mode,
        database=cfg.database,
    )


def resolve_contexts(cfg: RunConfig) -> List[EnvironmentContext]:
    """
    Resolve the run's target environments from --group or --env.
    Fails before any work for unknown/empty groups and missing targets.
    """
    base = base_context(cfg)
    if cfg.group:
        members = get_group_members(cfg.group, cfg.config_path)
        if not members:
            available = ", ".join(
                f"{name} ({len((g or {}).get('environments') or [])} environments)"
                for name, g in get_groups(cfg.config_path).items()
            )
            raise StructuralError(
                f"Group '{cfg.group}' not found or has no environments. Available groups: {available}"
            )
        overrides = [_member_override(m, cfg) for m in members]
    elif cfg.env:
        overrides = parse_environments(cfg.env, cfg.space, cfg.region)
    else:
        raise StructuralError("An environment (-e) or group (-g) is required")

    if not overrides:
        raise StructuralError("No environments to run against")
    return [derive_context(base, o) for o in overrides]
