from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    LOOKUP_ERROR = 3
    SQL_ERROR = 4
    RUNTIME_ERROR = 5


class LsqlError(Exception):
    """Base error for lsql."""


class ConfigError(LsqlError):
    """Raised for configuration or argument issues."""


class StructuralError(ConfigError):
    """
    Raised before any work starts when the requested targets cannot be run:
    unknown group, empty target list, interactive session against many environments.
    """


class SecretLookupError(LsqlError):
    """Raised when a database credential cannot be retrieved for one environment."""


class SqlExecutionError(LsqlError):
    """Raised when the SQL client exits non-zero for one environment."""


class CacheError(LsqlError):
    """Raised internally by cache backends; callers degrade instead of failing."""


class ExportError(LsqlError):
    """Raised when rendering or writing aggregated output fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, SecretLookupError):
        return int(ExitCode.LOOKUP_ERROR)
    if isinstance(exc, SqlExecutionError):
        return int(ExitCode.SQL_ERROR)
    if isinstance(exc, (ExportError, CacheError, LsqlError)):
        return int(ExitCode.RUNTIME_ERROR)
    return 1
