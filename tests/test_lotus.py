from __future__ import annotations

import subprocess
import types

import pytest

from lsql.environments import EnvironmentContext
from lsql.lotus import LotusClient, parse_secret_output
from lsql.util.errors import SecretLookupError

URL = "postgres://u:p@postgres-main.db:5432/app"


def _ctx(**kw) -> EnvironmentContext:
    values = {"name": "prod-s2", "space": "prod", "region": "use1", "application": "greenhouse"}
    values.update(kw)
    return EnvironmentContext(**values)


class FakeRun:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "", exc: Exception = None) -> None:
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.exc = exc

    def __call__(self, argv, **kwargs):
        self.calls.append((argv, kwargs))
        if self.exc is not None:
            raise self.exc
        return types.SimpleNamespace(returncode=self.returncode, stdout=self.stdout, stderr=self.stderr)


@pytest.mark.parametrize(
    "stdout",
    [f"DATABASE_MAIN_URL={URL}\n", f"DATABASE_MAIN_URL: {URL}\n", f"{URL}\n", f"note: hi\nDATABASE_MAIN_URL={URL}\n"],
)
def test_parse_secret_output_variants(stdout: str) -> None:
    assert parse_secret_output("DATABASE_MAIN_URL", stdout) == URL


def test_parse_secret_output_empty() -> None:
    assert parse_secret_output("DATABASE_MAIN_URL", "") is None
    assert parse_secret_output("DATABASE_MAIN_URL", "DATABASE_MAIN_URL=\n") is None


def test_get_secret_builds_application_argv() -> None:
    run = FakeRun(stdout=f"DATABASE_MAIN_URL={URL}\n")
    client = LotusClient(run=run)

    assert client.get_database_url(_ctx()) == URL
    argv, kwargs = run.calls[0]
    assert argv == [
        "lotus", "secret", "get", "DATABASE_MAIN_URL",
        "-s", "prod", "-e", "prod-s2", "-r", "use1", "-a", "greenhouse",
    ]
    assert kwargs["capture_output"] is True


def test_get_secret_uses_cluster_when_set() -> None:
    run = FakeRun(stdout=f"DATABASE_MAIN_URL={URL}\n")
    LotusClient(run=run).get_database_url(_ctx(cluster="c7"))

    argv, _ = run.calls[0]
    assert argv[-2:] == ["-c", "c7"]
    assert "-a" not in argv


def test_get_secret_nonzero_exit_redacts_stderr() -> None:
    run = FakeRun(returncode=1, stderr=f"cannot reach {URL}")
    with pytest.raises(SecretLookupError) as exc:
        LotusClient(run=run).get_database_url(_ctx())
    assert ":p@" not in str(exc.value)


def test_get_secret_empty_value_raises() -> None:
    with pytest.raises(SecretLookupError):
        LotusClient(run=FakeRun(stdout="")).get_database_url(_ctx())


def test_get_secret_missing_binary() -> None:
    with pytest.raises(SecretLookupError, match="not found"):
        LotusClient(run=FakeRun(exc=FileNotFoundError("lotus"))).get_database_url(_ctx())


def test_ping_and_login_report_failure_without_raising(caplog) -> None:
    ok = FakeRun()
    client = LotusClient(run=ok)
    assert client.ping("prod", "euc1") is True
    assert ok.calls[0][0] == ["lotus", "ping", "-s", "prod", "-r", "euc1"]

    assert LotusClient(run=FakeRun(returncode=2, stderr="expired")).ping("prod", "euc1") is False
    assert LotusClient(run=FakeRun(exc=subprocess.TimeoutExpired("lotus", 5))).login() is False
    assert LotusClient(run=FakeRun(returncode=1)).login() is False
    assert "ping failed" in caplog.text
    assert "pre-authentication failed" in caplog.text
