from __future__ import annotations

import logging
import sys
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional

from .aggregate import CaptureSet
from .cache import get_cache
from .config import RunConfig, create_default_config, describe_groups, load_run_config, show_config
from .connector import DatabaseConnector, mode_display
from .environments import EnvironmentContext, resolve_contexts
from .logging import LogConfig, add_run_log_file, get_logger, setup_logging
from .lotus import LotusClient
from .orchestrator import ExecutionMode, ExecutionResult, Orchestrator, PingRecord
from .outputs import (
    append_sql_trailer,
    effective_format,
    output_label,
    per_environment_path,
    resolve_output_path,
)
from .psql import (
    PsqlRunner,
    SqlSource,
    capture_flags,
    direct_output_flags,
    extract_hostname,
    prompt_for,
    resolve_sql_source,
)
from .util.errors import ExportError, as_exit_code
from .util.rich_progress import RunProgress, render_execution_summary_table, stderr_console, summary_lines

LOG = get_logger(__name__)


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    timer_key: Optional[str] = None,
    **extra: Any,
) -> None:
    key = timer_key or step
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(key)
        elif phase in {"complete", "error", "warning", "skipped"}:
            duration_ms = timers.finish(key)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _status(cfg: RunConfig, message: str) -> None:
    """Operator-facing notices go to stderr so stdout stays machine-readable."""
    if not cfg.quiet:
        print(message, file=sys.stderr)


# ----------
# Operations
# ----------
class InteractiveSession:
    requires_interactive = True

    def __init__(self, cfg: RunConfig, connector: DatabaseConnector, psql: PsqlRunner) -> None:
        self.cfg = cfg
        self.connector = connector
        self.psql = psql

    def execute(self, ctx: EnvironmentContext) -> None:
        url = self.connector.resolve_url(ctx)
        _status(self.cfg, f"Connecting to: {extract_hostname(url)}")
        prompt = prompt_for(ctx.name, mode_display(ctx.mode), color=not self.cfg.no_color)
        self.psql.interactive(url, prompt)


class DirectQuery:
    """
    Runs the SQL with psql's own formatting: to stdout, or to an output file
    followed by a trailer holding the SQL that produced it.
    """

    requires_interactive = False

    def __init__(
        self,
        cfg: RunConfig,
        connector: DatabaseConnector,
        psql: PsqlRunner,
        source: SqlSource,
        *,
        fmt: Optional[str],
        output_path: Optional[Path] = None,
        split_outputs: bool = False,
    ) -> None:
        self.cfg = cfg
        self.connector = connector
        self.psql = psql
        self.source = source
        self.fmt = fmt
        self.output_path = output_path
        self.split_outputs = split_outputs
        self.written: Dict[str, Path] = {}

    def target_for(self, ctx: EnvironmentContext) -> Optional[Path]:
        if self.output_path is None:
            return None
        if self.split_outputs:
            return per_environment_path(self.output_path, ctx.name)
        return self.output_path

    def execute(self, ctx: EnvironmentContext) -> None:
        url = self.connector.resolve_url(ctx)
        if self.cfg.verbose or not self.split_outputs:
            _status(self.cfg, f"Connecting to: {extract_hostname(url)}")
        flags = direct_output_flags(self.fmt)
        target = self.target_for(ctx)
        if target is None:
            self.psql.stream(url, self.source, flags=flags)
            return
        self.psql.capture(url, self.source, target, flags=flags)
        append_sql_trailer(target, self.source)
        self.written[ctx.name] = target


class CapturedQuery:
    """Writes each environment's result to its own capture for later aggregation."""

    requires_interactive = False

    def __init__(
        self,
        cfg: RunConfig,
        connector: DatabaseConnector,
        psql: PsqlRunner,
        source: SqlSource,
        captures: CaptureSet,
        *,
        flags: Optional[List[str]] = None,
    ) -> None:
        self.cfg = cfg
        self.connector = connector
        self.psql = psql
        self.source = source
        self.captures = captures
        self.flags = flags if flags is not None else capture_flags(captures.unaligned)

    def execute(self, ctx: EnvironmentContext) -> None:
        url = self.connector.resolve_url(ctx)
        if self.cfg.verbose:
            _status(self.cfg, f"[{ctx.name}] Connecting to: {extract_hostname(url)}")
        self.psql.capture(url, self.source, self.captures.path_for(ctx.name), flags=self.flags)


# --------
# Commands
# --------
def cmd_init_config(cfg: RunConfig) -> int:
    path, created = create_default_config(cfg.config_path)
    if created:
        print(f"Created default configuration at {path}")
    else:
        print(f"Configuration file already exists at {path}")
    return 0


def cmd_show_config(cfg: RunConfig) -> int:
    for line in show_config(cfg.cache_prefix, cfg.cache_ttl_seconds, cfg.config_path):
        print(line)
    return 0


def cmd_list_groups(cfg: RunConfig) -> int:
    print("Available environment groups:")
    print("")
    for line in describe_groups(cfg.config_path):
        print(line)
    return 0


def format_cache_stats(stats: Dict[str, Any]) -> List[str]:
    ttl = int(stats.get("ttl_seconds") or 0)
    return [
        "Cache Statistics:",
        f"  Backend: {stats.get('backend')}",
        f"  Prefix: {stats.get('prefix')}",
        f"  Total entries: {stats.get('total_entries')}",
        f"  TTL: {ttl} seconds ({ttl // 60} minutes)",
        f"  Encryption: {stats.get('encryption')}",
        f"  Location: {stats.get('location')}",
    ]


def cmd_cache_stats(cfg: RunConfig, *, cache: Any = None) -> int:
    cache = cache or get_cache(cfg.cache_prefix, cfg.cache_ttl_seconds, config_path=cfg.config_path)
    for line in format_cache_stats(cache.stats()):
        print(line)
    return 0


def cmd_clear_cache(cfg: RunConfig, *, cache: Any = None) -> int:
    cache = cache or get_cache(cfg.cache_prefix, cfg.cache_ttl_seconds, config_path=cfg.config_path)
    cache.clear()
    # clear() is store-wide, not limited to the active prefix.
    print(f"Cache cleared: all entries in {cache.backend.name} store at {cache.backend.location}")
    return 0


def _report_summary(cfg: RunConfig, results: List[ExecutionResult]) -> None:
    if cfg.quiet or len(results) < 2:
        return
    console = stderr_console(no_color=cfg.no_color)
    rich_enabled = console is not None and console.is_terminal
    if render_execution_summary_table(results, enabled=rich_enabled, console=console):
        return
    for line in summary_lines(results):
        print(line, file=sys.stderr)


def _emit(rendered: str, output_path: Optional[Path]) -> None:
    if output_path is None:
        sys.stdout.write(rendered)
        sys.stdout.flush()
        return
    try:
        output_path.write_text(rendered, encoding="utf-8")
    except OSError as e:
        raise ExportError(f"Failed to write output file {output_path}: {e}") from e


def _single_exit_code(results: List[ExecutionResult]) -> int:
    if len(results) == 1 and not results[0].success:
        exc = results[0].exception
        return as_exit_code(exc) if exc is not None else 1
    return 0


def cmd_run(
    cfg: RunConfig,
    *,
    lotus: Any = None,
    psql: Any = None,
    cache: Any = None,
) -> int:
    timers = _StepTimers()

    _log_event(LOG, logging.INFO, "Resolving targets", step="targets", phase="start", timers=timers)
    source = resolve_sql_source(cfg.sql) if cfg.sql is not None else None
    contexts = resolve_contexts(cfg)
    _log_event(
        LOG,
        logging.INFO,
        "Targets resolved",
        step="targets",
        phase="complete",
        timers=timers,
        environments=[c.name for c in contexts],
    )

    if cache is None:
        cache = get_cache(cfg.cache_prefix, cfg.cache_ttl_seconds, config_path=cfg.config_path)
    lotus = lotus or LotusClient()
    psql = psql or PsqlRunner()
    pings = PingRecord()
    connector = DatabaseConnector(lotus, cache, pings)

    multi = len(contexts) > 1
    mode = ExecutionMode.parallel(cfg.workers) if cfg.parallel and multi else ExecutionMode.sequential()
    output_path = resolve_output_path(cfg.output, output_label(cfg.env, cfg.group)) if cfg.output else None
    fmt = effective_format(cfg.format, output_path)

    show_progress = multi and not cfg.quiet and not cfg.verbose and source is not None and sys.stderr.isatty()
    orchestrator = Orchestrator(
        cache,
        lotus,
        pings,
        verbose=cfg.verbose,
        run_timeout=float(cfg.run_timeout) if cfg.run_timeout else None,
    )

    if source is None:
        return _single_exit_code(orchestrator.run(contexts, mode, InteractiveSession(cfg, connector, psql)))

    _log_event(LOG, logging.INFO, "Executing", step="execute", phase="start", timers=timers, mode=mode.is_parallel)
    if not multi or (cfg.no_agg and output_path is not None):
        operation = DirectQuery(
            cfg, connector, psql, source, fmt=fmt, output_path=output_path, split_outputs=multi
        )
        with RunProgress(enabled=show_progress, console=stderr_console(no_color=cfg.no_color)) as progress:
            orchestrator.progress = progress if progress.enabled else None
            results = orchestrator.run(contexts, mode, operation)
        _log_event(LOG, logging.INFO, "Execution finished", step="execute", phase="complete", timers=timers)
        for env, path in operation.written.items():
            _status(cfg, f"Output written to {path}" + (f" ({env})" if multi else ""))
        _report_summary(cfg, results)
        return _single_exit_code(results)

    unaligned = (fmt in {"json", "yaml"}) and not cfg.no_agg
    with CaptureSet(unaligned=unaligned) as captures:
        captures.register([c.name for c in contexts])
        flags = direct_output_flags(cfg.format) if cfg.no_agg else None
        operation = CapturedQuery(cfg, connector, psql, source, captures, flags=flags)
        with RunProgress(enabled=show_progress, console=stderr_console(no_color=cfg.no_color)) as progress:
            orchestrator.progress = progress if progress.enabled else None
            results = orchestrator.run(contexts, mode, operation)
        _log_event(LOG, logging.INFO, "Execution finished", step="execute", phase="complete", timers=timers)

        succeeded = [r.environment for r in results if r.success]
        _log_event(LOG, logging.INFO, "Rendering output", step="render", phase="start", timers=timers, output_format=fmt)
        if cfg.no_agg:
            for env in succeeded:
                sys.stdout.write(f"\n=== {env} ===\n")
                sys.stdout.write(captures.raw(env))
            sys.stdout.flush()
        else:
            _emit(captures.render(fmt, only=succeeded), output_path)
            if output_path is not None:
                _status(cfg, f"Output written to {output_path}")
        _log_event(LOG, logging.INFO, "Rendered output", step="render", phase="complete", timers=timers)

    _report_summary(cfg, results)
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    try:
        cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        if cfg.log_file is not None:
            add_run_log_file(cfg.log_file)

        if cfg.init_config:
            code = cmd_init_config(cfg)
        elif cfg.show_config:
            code = cmd_show_config(cfg)
        elif cfg.list_groups:
            code = cmd_list_groups(cfg)
        elif cfg.cache_stats:
            code = cmd_cache_stats(cfg)
        elif cfg.clear_cache:
            code = cmd_clear_cache(cfg)
        else:
            code = cmd_run(cfg)

        sys.exit(code)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        sys.exit(130)
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        try:
            sys.exit(0)
        except SystemExit:
            raise
    except Exception as e:
        try:
            setup_logging(LogConfig())  # ensure something is configured
        except Exception:
            pass
        LOG.error("Execution failed: %s", e, extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
