"""
Unit tests for firewall command generation, status and iptables restore.
"""

import socket
from types import SimpleNamespace
from unittest.mock import MagicMock

import psutil
import pytest

from fusionpbx_ops.errors import PreconditionError
from fusionpbx_ops.firewall import (
    BRIDGE_PORTS,
    HOST_PORTS,
    FirewallManager,
    FirewallStatus,
    firewalld_commands,
    iptables_baseline_commands,
    listening_sockets,
    render_status,
    ufw_commands,
)
from fusionpbx_ops.shell import CommandLog, CommandResult

DEBIAN = {
    "name": "Debian",
    "packages": {
        "check": ["dpkg", "-s", "{package}"],
        "install": [["apt-get", "update"], ["apt-get", "install", "-y", "{package}"]],
        "env": {"DEBIAN_FRONTEND": "noninteractive"},
    },
    "firewall": {
        "iptables": {
            "package": "iptables-persistent",
            "conflicting_service": "ufw",
            "service": "netfilter-persistent",
            "save_to": "/etc/iptables/rules.v4",
        },
    },
}


def _conn(port, kind, status=psutil.CONN_NONE):
    return SimpleNamespace(laddr=SimpleNamespace(ip="0.0.0.0", port=port), type=kind, status=status)


def _which(*available):
    return lambda name: f"/usr/sbin/{name}" if name in available else None


class TestCommandGeneration:
    def test_ufw_uses_colon_ranges(self):
        cmds = ufw_commands(BRIDGE_PORTS)
        assert cmds[0] == ["ufw", "allow", "8080/tcp"]
        assert cmds[-1] == ["ufw", "allow", "10000:10100/udp"]

    def test_firewalld_uses_dash_ranges_and_reloads(self):
        cmds = firewalld_commands(BRIDGE_PORTS)
        assert ["firewall-cmd", "--permanent", "--add-port=10000-10100/udp"] in cmds
        assert cmds[-1] == ["firewall-cmd", "--reload"]

    def test_iptables_baseline_keeps_ssh_before_fusionpbx_rules(self):
        cmds = iptables_baseline_commands(HOST_PORTS)
        assert cmds[0] == ["iptables", "-F"]
        assert ["iptables", "-t", "nat", "-F"] in cmds
        ssh = cmds.index(["iptables", "-A", "INPUT", "-p", "tcp", "--dport", "22", "-j", "ACCEPT"])
        http = cmds.index(["iptables", "-A", "INPUT", "-p", "tcp", "--dport", "80", "-j", "ACCEPT"])
        assert ssh < http
        assert cmds[-1] == ["iptables", "-A", "INPUT", "-p", "udp", "--dport", "10000:10100", "-j", "ACCEPT"]


class TestOpenPorts:
    def test_prefers_ufw(self, runner):
        assert FirewallManager(runner=runner, which=_which("ufw", "firewall-cmd")).open_ports() == "ufw"
        assert all(cmd[0] == "ufw" for cmd in runner.calls)
        assert len(runner.calls) == len(BRIDGE_PORTS)

    def test_falls_back_to_firewalld(self, runner):
        assert FirewallManager(runner=runner, which=_which("firewall-cmd")).open_ports() == "firewalld"
        assert runner.calls[-1] == ["firewall-cmd", "--reload"]

    def test_no_frontend(self, runner):
        assert FirewallManager(runner=runner, which=_which()).open_ports() is None
        assert runner.calls == []


class TestListeningSockets:
    def test_counts_tcp_listeners_and_rtp_sockets(self):
        conns = [
            _conn(80, socket.SOCK_STREAM, psutil.CONN_LISTEN),
            _conn(5060, socket.SOCK_STREAM, psutil.CONN_ESTABLISHED),
            _conn(10000, socket.SOCK_DGRAM),
            _conn(10100, socket.SOCK_DGRAM),
            _conn(10101, socket.SOCK_DGRAM),
            SimpleNamespace(laddr=(), type=socket.SOCK_DGRAM, status=psutil.CONN_NONE),
        ]

        tcp, rtp = listening_sockets(connections=lambda kind: conns)

        assert tcp == {80: True, 443: False, 5060: False, 5080: False, 8021: False}
        assert rtp == 2


class TestStatus:
    """Service detection and conflict reporting"""

    def test_conflicting_frontends(self):
        runner = CommandLog(results={
            "systemctl is-active --quiet iptables": CommandResult([], 3),
            "systemctl is-active --quiet netfilter-persistent": CommandResult([], 3),
            "iptables -L": CommandResult([], 0, "Chain INPUT (policy ACCEPT)\n"),
            "iptables -t nat": CommandResult([], 1),
        })
        containers = MagicMock()
        containers.is_running.return_value = True
        containers.network_mode.return_value = "host"

        st = FirewallManager(
            runner=runner,
            which=_which("ufw", "firewall-cmd", "iptables"),
            containers=containers,
            connections=lambda kind: [],
        ).status()

        assert st.ufw_active and st.firewalld_active
        assert not st.iptables_service_active
        assert st.conflicts == ["UFW and firewalld are both active - this may cause conflicts"]
        assert st.active_firewall == "ufw"
        assert st.details["filter"].startswith("Chain INPUT")
        assert st.details["nat"] == "NAT table not accessible"
        assert st.network_mode == "host"

        text = render_status(st)
        assert "Network mode: HOST (Direct port access)" in text
        assert "1 potential firewall conflicts detected" in text

    def test_without_rules_skips_listing(self):
        runner = CommandLog()
        st = FirewallManager(runner=runner, which=_which("iptables"), connections=lambda kind: []).status(
            include_rules=False
        )
        assert st.details == {}
        assert not any(cmd[0] == "iptables" for cmd in runner.calls)

    def test_access_denied_marks_ports_down(self):
        def denied(kind):
            raise psutil.AccessDenied()

        st = FirewallManager(runner=CommandLog(), which=_which(), connections=denied).status(include_rules=False)
        assert not any(st.listening.values())

    def test_no_firewall_summary(self):
        text = render_status(FirewallStatus())
        assert "No firewall conflicts detected" in text
        assert "No active firewall detected" in text
        assert "fusionpbx container: NOT RUNNING" in text
        assert "iptables command not found" in text

    def test_to_dict(self):
        data = FirewallStatus(ufw_installed=True, ufw_active=True, listening={80: True}).to_dict()
        assert data["services"]["ufw"] == {"installed": True, "active": True}
        assert data["listening"] == {"80": True}
        assert data["active_firewall"] == "ufw"


class TestRestoreIptables:
    def test_unsupported_platform(self, runner):
        with pytest.raises(PreconditionError):
            FirewallManager(runner=runner).restore_iptables(None)
        with pytest.raises(PreconditionError):
            FirewallManager(runner=runner).restore_iptables({"name": "Arch"})

    def test_debian_flow(self):
        runner = CommandLog(results={"dpkg -s iptables-persistent": CommandResult([], 1)})

        FirewallManager(runner=runner).restore_iptables(DEBIAN)

        calls = runner.calls
        assert calls[1:3] == [["apt-get", "update"], ["apt-get", "install", "-y", "iptables-persistent"]]
        assert ["systemctl", "stop", "ufw"] in calls
        assert ["systemctl", "disable", "ufw"] in calls
        assert ["systemctl", "enable", "netfilter-persistent"] in calls
        assert calls.index(["systemctl", "start", "netfilter-persistent"]) < calls.index(["iptables", "-F"])
        assert calls[-1] == ["iptables-save"]

    def test_installed_package_is_not_reinstalled(self):
        runner = CommandLog(results={"systemctl is-active --quiet ufw": CommandResult([], 3)})

        FirewallManager(runner=runner).restore_iptables(DEBIAN)

        assert not any(cmd[0] == "apt-get" for cmd in runner.calls)
        assert ["systemctl", "stop", "ufw"] not in runner.calls
