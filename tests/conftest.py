"""
Shared fixtures: a scripted in-memory database, a recording command runner
and a mocked ContainerManager. Nothing here talks to Docker or PostgreSQL.
"""

from unittest.mock import MagicMock

import pytest

from fusionpbx_ops.config import DatabaseSettings, FusionPBXSettings, Settings, reset_settings
from fusionpbx_ops.containers import ContainerManager
from fusionpbx_ops.shell import CommandLog


class Seq(list):
    """Successive answers for one query; the last answer repeats."""


class FakeDatabase:
    """Answers queries by the first registered SQL fragment they contain.

    An answer can be a value, an exception (raised), a Seq of answers, or a
    callable taking (sql, params).
    """

    def __init__(self, scalars=None, rows=None):
        self.scalars = dict(scalars or {})
        self.rows_map = dict(rows or {})
        self.executed = []
        self.queries = []

    def _answer(self, table, sql, params, default):
        self.queries.append((sql, dict(params or {})))
        for fragment, answer in table.items():
            if fragment in sql:
                if isinstance(answer, Seq):
                    answer = answer.pop(0) if len(answer) > 1 else answer[0]
                if isinstance(answer, Exception):
                    raise answer
                if callable(answer):
                    return answer(sql, params)
                return answer
        return default

    def scalar(self, sql, params=None):
        return self._answer(self.scalars, sql, params, None)

    def rows(self, sql, params=None):
        return self._answer(self.rows_map, sql, params, [])

    def row(self, sql, params=None):
        found = self.rows(sql, params)
        return found[0] if found else None

    def execute(self, sql, params=None):
        self.executed.append((sql, dict(params or {})))
        return 1


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch):
    """Keep host environment variables out of Settings."""
    for key in (
        "AUTO_INSTALL", "BUILD_IMAGE", "CLEAN_DEPLOY", "SKIP_PULL", "CONFIGURE_FIREWALL",
        "FUSIONPBX_ADMIN_USER", "FUSIONPBX_ADMIN_PASSWORD", "FUSIONPBX_DOMAIN", "FUSIONPBX_IMAGE",
        "DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD", "LOG_LEVEL", "ADMIN_API_TOKEN",
    ):
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings():
    return Settings(
        db=DatabaseSettings(host="localhost", name="fusionpbx", user="fusionpbx", password="secret"),
        fusionpbx=FusionPBXSettings(domain="pbx.example.com", admin_user="admin", admin_password="pw"),
    )


@pytest.fixture
def runner():
    return CommandLog()


@pytest.fixture
def containers():
    mock = MagicMock(spec=ContainerManager)
    mock.is_running.return_value = True
    mock.status_line.return_value = "fusionpbx\trunning"
    mock.ip_address.return_value = "172.18.0.2"
    return mock


@pytest.fixture
def sleep():
    return MagicMock()
