"""
Unit tests for the smoke tests and health reports.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest

from fusionpbx_ops.containers import ComposeProject
from fusionpbx_ops.shell import CommandResult
from fusionpbx_ops.smoke import FS_CLI, WEB_URL, check_web, health_report, run_smoke_tests, status_report

NETSTAT = """Active Internet connections (only servers)
tcp        0      0 0.0.0.0:80      0.0.0.0:*       LISTEN      41/nginx
tcp        0      0 0.0.0.0:8021    0.0.0.0:*       LISTEN      52/freeswitch
udp        0      0 0.0.0.0:5060    0.0.0.0:*                   52/freeswitch
tcp        0      0 127.0.0.1:5432  0.0.0.0:*       LISTEN      30/postgres
"""


def _compose(ps="fusionpbx   Up 2 minutes (healthy)", fs_status="UP 0 years, 0 days, 0 hours"):
    compose = MagicMock(spec=ComposeProject)
    compose.ps.return_value = CommandResult([], 0, ps)

    def exec_(service, cmd, check=False):
        outputs = {
            FS_CLI: fs_status,
            "netstat": NETSTAT,
            "supervisorctl": "nginx RUNNING\nfreeswitch RUNNING\n",
            "df": "overlay 40G 12G 28G 30% /\n",
            "free": "Mem: 3.8Gi 1.1Gi\n",
        }
        return CommandResult([service] + list(cmd), 0, outputs[cmd[0]])

    compose.exec.side_effect = exec_
    return compose


def _response(status):
    return SimpleNamespace(status_code=status)


class TestSmokeTests:
    """Checks run in order and stop at the first failure"""

    def test_all_pass(self):
        http_get = MagicMock(return_value=_response(302))

        checks = run_smoke_tests(_compose(), http_get)

        assert [(c.name, c.passed) for c in checks] == [("container", True), ("web", True), ("freeswitch", True)]
        http_get.assert_called_once_with(WEB_URL, verify=False, follow_redirects=False, timeout=10.0)

    def test_stops_when_container_down(self):
        http_get = MagicMock()

        checks = run_smoke_tests(_compose(ps="fusionpbx   Exit 1"), http_get)

        assert [(c.name, c.passed) for c in checks] == [("container", False)]
        http_get.assert_not_called()

    def test_freeswitch_down(self):
        checks = run_smoke_tests(_compose(fs_status="-ERR no reply"), MagicMock(return_value=_response(200)))
        assert checks[-1].name == "freeswitch"
        assert not checks[-1].passed

    @pytest.mark.parametrize("status", [404, 500, 502])
    def test_unexpected_status(self, status):
        check = check_web(MagicMock(return_value=_response(status)))
        assert not check.passed
        assert f"HTTP {status}" in check.detail

    def test_connection_error(self):
        check = check_web(MagicMock(side_effect=httpx.ConnectError("Connection refused")))
        assert not check.passed
        assert "Connection refused" in check.detail


class TestReports:
    def test_health_report_filters_ports(self):
        report = health_report(_compose())

        # same loose match as grep -E "(80|443|5060)", so 8021 is listed too
        assert report["ports"].splitlines() == NETSTAT.splitlines()[1:4]
        assert report["services"].startswith("nginx RUNNING")
        assert report["disk"].startswith("overlay")
        assert report["memory"].startswith("Mem:")

    def test_status_report(self):
        report = status_report(_compose())
        assert report == {
            "containers": "fusionpbx   Up 2 minutes (healthy)",
            "services": "nginx RUNNING\nfreeswitch RUNNING",
        }
