from __future__ import annotations

import json
import threading

import pytest

import lsql.cli as cli
from lsql.config import load_run_config
from lsql.util.errors import ExitCode, SecretLookupError, SqlExecutionError

URL = "postgres://u:p@postgres-main.db:5432/app"
TABLE = " id | name \n----+------\n  1 | foo\n(1 row)\n"
UNALIGNED = "id\tname\n1\tfoo\n(1 row)\n"


class FakeLotus:
    def __init__(self, *, fail_for=()) -> None:
        self.fail_for = set(fail_for)
        self.lookups = []
        self.pings = []
        self.logins = 0

    def get_database_url(self, ctx):
        self.lookups.append(ctx.name)
        if ctx.name in self.fail_for:
            raise SecretLookupError(f"Failed to retrieve DATABASE_MAIN_URL for environment: {ctx.name}")
        return URL

    def ping(self, space, region):
        self.pings.append((space, region))
        return True

    def login(self):
        self.logins += 1
        return True


class FakePsql:
    def __init__(self, output: str = TABLE) -> None:
        self._lock = threading.Lock()
        self.output = output
        self.captures = []
        self.streams = []
        self.sessions = []

    def capture(self, url, source, output_path, *, flags=None, append=False):
        with self._lock:
            self.captures.append((output_path, list(flags or [])))
        output_path.write_text(self.output, encoding="utf-8")

    def stream(self, url, source, *, flags=None):
        self.streams.append((source.text, list(flags or [])))
        return 0

    def interactive(self, url, prompt):
        self.sessions.append(prompt)
        return 0


class FakeCache:
    def __init__(self) -> None:
        self.data = {}
        self.cleared = False
        self.backend = type("B", (), {"name": "File", "location": "/tmp/cache"})()

    def has_credential(self, ctx):
        return ctx.name in self.data

    def get_credential(self, ctx):
        return self.data.get(ctx.name)

    def set_credential(self, ctx, url):
        self.data[ctx.name] = url

    def clear(self):
        self.cleared = True

    def stats(self):
        return {
            "backend": "File",
            "prefix": "db_url",
            "total_entries": 3,
            "ttl_seconds": 600,
            "encryption": "Enabled",
            "location": "/tmp/cache",
        }


def _run(argv, **fakes) -> int:
    cfg = load_run_config(argv=argv)
    fakes.setdefault("lotus", FakeLotus())
    fakes.setdefault("psql", FakePsql())
    fakes.setdefault("cache", FakeCache())
    return cli.cmd_run(cfg, **fakes)


def test_single_env_streams_to_stdout_with_format_flags() -> None:
    psql = FakePsql()
    code = _run(["SELECT 1", "-e", "dev01", "-f", "csv"], psql=psql)

    assert code == 0
    assert psql.streams == [("SELECT 1", ["-t", "-A", "-F,"])]


def test_single_env_output_file_gets_trailer(tmp_path) -> None:
    psql = FakePsql(output="1,foo\n")
    code = _run(["SELECT 1", "-e", "dev01", "-o", str(tmp_path / "out.csv")], psql=psql)

    assert code == 0
    out = tmp_path / "out_dev01_0001.csv"
    assert out.read_text(encoding="utf-8") == "1,foo\n/* SQL command:\nSELECT 1\n*/\n"
    assert psql.captures[0][1] == ["-t", "-A", "-F,"]


def test_multi_env_aggregates_text_to_stdout(capsys) -> None:
    cache = FakeCache()
    lotus = FakeLotus()
    code = _run(["SELECT 1", "-e", "dev01,dev02"], cache=cache, lotus=lotus)

    captured = capsys.readouterr()
    assert code == 0
    assert captured.out.splitlines() == [
        "env   | id | name",
        "------+----+-----",
        "dev01 | 1  | foo",
        "dev02 | 1  | foo",
    ]
    assert "EXECUTION SUMMARY" in captured.err
    assert "✓ Successful: 2" in captured.err
    assert lotus.pings == [("dev", "use1")]
    assert lotus.logins == 1
    assert set(cache.data) == {"dev01", "dev02"}


def test_multi_env_json_uses_unaligned_capture(capsys) -> None:
    psql = FakePsql(output=UNALIGNED)
    code = _run(["SELECT 1", "-e", "dev01,dev02", "-f", "json"], psql=psql)

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {
        "dev01": [{"id": "1", "name": "foo"}],
        "dev02": [{"id": "1", "name": "foo"}],
    }
    assert all(flags == ["-A", "-F", "\t"] for _, flags in psql.captures)


def test_multi_env_failure_is_reported_and_excluded(capsys) -> None:
    lotus = FakeLotus(fail_for={"dev02"})
    code = _run(["SELECT 1", "-e", "dev01,dev02,dev03", "-f", "csv", "-P"], lotus=lotus)

    captured = capsys.readouterr()
    assert code == 0
    assert captured.out.splitlines() == ["env,id,name", "dev01,1,foo", "dev03,1,foo"]
    assert "✗ Failed: 1" in captured.err
    assert "dev02: Failed to retrieve DATABASE_MAIN_URL" in captured.err
    assert lotus.logins == 0


def test_multi_env_capture_files_are_removed() -> None:
    psql = FakePsql()
    _run(["SELECT 1", "-e", "dev01,dev02", "-q"], psql=psql)

    assert psql.captures
    assert not any(path.exists() for path, _ in psql.captures)


def test_multi_env_aggregate_to_output_file(tmp_path, capsys) -> None:
    code = _run(["SELECT 1", "-e", "dev01,dev02", "-o", str(tmp_path / "report.csv"), "-q"])

    assert code == 0
    out = tmp_path / "report_dev01-dev02_0001.csv"
    assert out.read_text(encoding="utf-8").splitlines() == ["env,id,name", "dev01,1,foo", "dev02,1,foo"]
    assert capsys.readouterr().out == ""


def test_no_agg_with_output_writes_file_per_env(tmp_path) -> None:
    psql = FakePsql(output="1,foo\n")
    code = _run(
        ["SELECT 1", "-e", "dev01,dev02", "-A", "-o", str(tmp_path / "r.csv"), "-q"],
        psql=psql,
    )

    assert code == 0
    for env in ("dev01", "dev02"):
        path = tmp_path / f"r_dev01-dev02_0001_{env}.csv"
        assert path.read_text(encoding="utf-8").startswith("1,foo\n/* SQL command:")


def test_no_agg_without_output_prints_blocks_in_order(capsys) -> None:
    code = _run(["SELECT 1", "-e", "dev02,dev01", "-A", "-q"])

    out = capsys.readouterr().out
    assert code == 0
    assert out.index("=== dev02 ===") < out.index("=== dev01 ===")


def test_interactive_single_env_uses_prompt(capsys) -> None:
    psql = FakePsql()
    code = _run(["-e", "prod", "-m", "ro"], psql=psql)

    assert code == 0
    assert psql.sessions and "prod[RO-PRIMARY]" in psql.sessions[0]
    assert "Connecting to: postgres-main-replica-primary.db" in capsys.readouterr().err


def test_single_env_lookup_failure_maps_exit_code() -> None:
    assert _run(["SELECT 1", "-e", "dev01"], lotus=FakeLotus(fail_for={"dev01"})) == int(ExitCode.LOOKUP_ERROR)


def test_single_env_sql_failure_maps_exit_code() -> None:
    class FailingPsql(FakePsql):
        def stream(self, url, source, *, flags=None):
            raise SqlExecutionError("syntax error")

    assert _run(["SELEC 1", "-e", "dev01"], psql=FailingPsql()) == int(ExitCode.SQL_ERROR)


def test_cache_stats_and_clear_commands(capsys) -> None:
    cache = FakeCache()
    cfg = load_run_config(argv=["--cache-stats"])

    assert cli.cmd_cache_stats(cfg, cache=cache) == 0
    assert cli.cmd_clear_cache(cfg, cache=cache) == 0

    out = capsys.readouterr().out
    assert "  Backend: File" in out
    assert "  TTL: 600 seconds (10 minutes)" in out
    assert "  Encryption: Enabled" in out
    assert "Cache cleared" in out
    assert cache.cleared


def test_main_interactive_with_many_envs_exits_config_error(fresh_logging) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["-e", "dev01,dev02"])
    assert exc.value.code == int(ExitCode.CONFIG_ERROR)


def test_main_unknown_group_exits_config_error(fresh_logging) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["SELECT 1", "-g", "does-not-exist"])
    assert exc.value.code == int(ExitCode.CONFIG_ERROR)


def test_main_init_config_and_list_groups(fresh_logging, isolated_home, capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--init-config"])
    assert exc.value.code == 0
    assert (isolated_home / "config.yml").exists()

    with pytest.raises(SystemExit):
        cli.main(["--list-groups"])
    out = capsys.readouterr().out
    assert "Available environment groups:" in out
    assert "all-prod:" in out


def test_main_cache_stats_uses_real_cache(fresh_logging, isolated_home, capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--cache-stats"])

    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "  Backend: File" in out
    assert f"  Location: {isolated_home / 'cache'}" in out


def test_main_cache_stats_honors_config_option(fresh_logging, tmp_path, capsys) -> None:
    config = tmp_path / "custom.yml"
    config.write_text("cache:\n  prefix: from_custom\n  ttl_minutes: 42\n", encoding="utf-8")

    with pytest.raises(SystemExit) as exc:
        cli.main(["--config", str(config), "--cache-stats"])

    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "  Prefix: from_custom" in out
    assert "  TTL: 2520 seconds (42 minutes)" in out
