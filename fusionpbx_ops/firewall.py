"""
Host firewall handling for FusionPBX.

Three jobs:
- open the FusionPBX ports through whichever frontend the host uses (ufw or firewalld)
- report which firewall services are active, what is listening, and conflicts
- rebuild a plain iptables rule set and make it persistent
"""

import shutil
import socket
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from .containers import ContainerManager
from .errors import PreconditionError
from .logging_config import get_logger
from .shell import CommandResult, Runner, run

logger = get_logger(__name__)


@dataclass(frozen=True)
class PortRule:
    port: str
    protocol: str
    description: str = ""

    @property
    def is_range(self) -> bool:
        return ":" in self.port

    @property
    def ufw_spec(self) -> str:
        return f"{self.port}/{self.protocol}"

    @property
    def firewalld_spec(self) -> str:
        return f"{self.port.replace(':', '-')}/{self.protocol}"

    def iptables_args(self) -> List[str]:
        return ["-A", "INPUT", "-p", self.protocol, "--dport", self.port, "-j", "ACCEPT"]


RTP_RANGE = (10000, 10100)
_RTP = f"{RTP_RANGE[0]}:{RTP_RANGE[1]}"

# Bridge networking publishes the web UI on 8080/8443
BRIDGE_PORTS = (
    PortRule("8080", "tcp", "HTTP"),
    PortRule("8443", "tcp", "HTTPS"),
    PortRule("5060", "tcp", "SIP TCP"),
    PortRule("5060", "udp", "SIP UDP"),
    PortRule("5080", "tcp", "SIP Alt TCP"),
    PortRule("5080", "udp", "SIP Alt UDP"),
    PortRule("8021", "tcp", "FreeSWITCH Event Socket"),
    PortRule(_RTP, "udp", "RTP Media"),
)

HOST_PORTS = (
    PortRule("80", "tcp", "HTTP"),
    PortRule("443", "tcp", "HTTPS"),
    PortRule("5060", "tcp", "SIP TCP"),
    PortRule("5060", "udp", "SIP UDP"),
    PortRule("5080", "tcp", "SIP Alt TCP"),
    PortRule("5080", "udp", "SIP Alt UDP"),
    PortRule("8021", "tcp", "FreeSWITCH Event Socket"),
    PortRule(_RTP, "udp", "RTP Media"),
)

SSH_RULE = PortRule("22", "tcp", "SSH")

LISTEN_CHECK_PORTS = (80, 443, 5060, 5080, 8021)


def describe_ports(rules: Iterable[PortRule]) -> List[str]:
    return [f"{r.port.replace(':', '-')}/{r.protocol} ({r.description})" for r in rules]


def ufw_commands(rules: Iterable[PortRule]) -> List[List[str]]:
    return [["ufw", "allow", r.ufw_spec] for r in rules]


def firewalld_commands(rules: Iterable[PortRule]) -> List[List[str]]:
    cmds = [["firewall-cmd", "--permanent", f"--add-port={r.firewalld_spec}"] for r in rules]
    cmds.append(["firewall-cmd", "--reload"])
    return cmds


def iptables_baseline_commands(rules: Iterable[PortRule] = HOST_PORTS) -> List[List[str]]:
    """Flush everything, accept by default, then allow loopback, established, SSH and FusionPBX."""
    cmds: List[List[str]] = []
    for table in ("filter", "nat", "mangle"):
        prefix = ["iptables"] if table == "filter" else ["iptables", "-t", table]
        cmds.append(prefix + ["-F"])
        cmds.append(prefix + ["-X"])
    for chain in ("INPUT", "FORWARD", "OUTPUT"):
        cmds.append(["iptables", "-P", chain, "ACCEPT"])
    cmds.append(["iptables", "-A", "INPUT", "-i", "lo", "-j", "ACCEPT"])
    cmds.append(["iptables", "-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT"])
    cmds.append(["iptables", "-A", "INPUT", "-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT"])
    cmds.append(["iptables"] + SSH_RULE.iptables_args())
    for rule in rules:
        cmds.append(["iptables"] + rule.iptables_args())
    return cmds


@dataclass
class FirewallStatus:
    iptables_active: bool = False
    netfilter_active: bool = False
    ufw_installed: bool = False
    ufw_active: bool = False
    firewalld_installed: bool = False
    firewalld_active: bool = False
    iptables_installed: bool = False
    listening: Dict[int, bool] = field(default_factory=dict)
    rtp_listening: int = 0
    container_running: bool = False
    network_mode: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def iptables_service_active(self) -> bool:
        return self.iptables_active or self.netfilter_active

    @property
    def conflicts(self) -> List[str]:
        found = []
        if self.ufw_active and self.firewalld_active:
            found.append("UFW and firewalld are both active - this may cause conflicts")
        if self.ufw_active and self.iptables_service_active:
            found.append("UFW and iptables service are both active - this may cause conflicts")
        if self.firewalld_active and self.iptables_service_active:
            found.append("firewalld and iptables service are both active - this may cause conflicts")
        return found

    @property
    def active_firewall(self) -> Optional[str]:
        if self.iptables_service_active:
            return "iptables"
        if self.ufw_active:
            return "ufw"
        if self.firewalld_active:
            return "firewalld"
        return None

    def to_dict(self) -> dict:
        return {
            "services": {
                "iptables": self.iptables_active,
                "netfilter-persistent": self.netfilter_active,
                "ufw": {"installed": self.ufw_installed, "active": self.ufw_active},
                "firewalld": {"installed": self.firewalld_installed, "active": self.firewalld_active},
            },
            "listening": {str(p): v for p, v in self.listening.items()},
            "rtp_listening": self.rtp_listening,
            "container": {"running": self.container_running, "network_mode": self.network_mode},
            "conflicts": self.conflicts,
            "active_firewall": self.active_firewall,
        }


def listening_sockets(
    tcp_ports: Sequence[int] = LISTEN_CHECK_PORTS,
    udp_range: Tuple[int, int] = RTP_RANGE,
    connections: Optional[Callable[..., list]] = None,
) -> Tuple[Dict[int, bool], int]:
    """TCP LISTEN state per port and number of UDP sockets bound inside udp_range."""
    connections = connections or psutil.net_connections
    tcp = {port: False for port in tcp_ports}
    udp_count = 0
    for conn in connections(kind="inet"):
        if not conn.laddr:
            continue
        port = conn.laddr.port
        if conn.type == socket.SOCK_STREAM and conn.status == psutil.CONN_LISTEN and port in tcp:
            tcp[port] = True
        elif conn.type == socket.SOCK_DGRAM and udp_range[0] <= port <= udp_range[1]:
            udp_count += 1
    return tcp, udp_count


class FirewallManager:
    def __init__(
        self,
        runner: Runner = run,
        which: Callable[[str], Optional[str]] = shutil.which,
        containers: Optional[ContainerManager] = None,
        connections: Optional[Callable[..., list]] = None,
    ):
        self.runner = runner
        self.which = which
        self.containers = containers
        self.connections = connections

    def service_active(self, name: str) -> bool:
        return self.runner(["systemctl", "is-active", "--quiet", name]).ok

    def open_ports(self, rules: Sequence[PortRule] = BRIDGE_PORTS) -> Optional[str]:
        """Allow `rules` through ufw or firewalld. Returns the frontend used, None if neither exists."""
        if self.which("ufw"):
            logger.info("Configuring UFW firewall")
            for cmd in ufw_commands(rules):
                self.runner(cmd, check=True)
            return "ufw"
        if self.which("firewall-cmd"):
            logger.info("Configuring firewalld")
            for cmd in firewalld_commands(rules):
                self.runner(cmd, check=True)
            return "firewalld"
        logger.warning(
            "No supported firewall found. Please configure manually",
            ports=describe_ports(rules),
        )
        return None

    def status(self, container_name: str = "fusionpbx", include_rules: bool = True) -> FirewallStatus:
        st = FirewallStatus()
        st.iptables_active = self.service_active("iptables")
        st.netfilter_active = self.service_active("netfilter-persistent")

        st.ufw_installed = self.which("ufw") is not None
        if st.ufw_installed:
            st.ufw_active = self.service_active("ufw")
            if st.ufw_active and include_rules:
                st.details["ufw"] = self.runner(["ufw", "status", "verbose"]).output

        st.firewalld_installed = self.which("firewall-cmd") is not None
        if st.firewalld_installed:
            st.firewalld_active = self.service_active("firewalld")
            if st.firewalld_active and include_rules:
                st.details["firewalld"] = self.runner(["firewall-cmd", "--list-all"]).output

        st.iptables_installed = self.which("iptables") is not None
        if st.iptables_installed and include_rules:
            st.details["filter"] = self.runner(["iptables", "-L", "-n", "--line-numbers"]).output
            nat = self.runner(["iptables", "-t", "nat", "-L", "-n", "--line-numbers"])
            st.details["nat"] = nat.output if nat.ok else "NAT table not accessible"

        try:
            st.listening, st.rtp_listening = listening_sockets(connections=self.connections)
        except psutil.AccessDenied:
            logger.warning("Not allowed to list sockets, run as root for port status")
            st.listening = {port: False for port in LISTEN_CHECK_PORTS}

        if self.containers is not None:
            st.container_running = self.containers.is_running(container_name)
            if st.container_running:
                st.network_mode = self.containers.network_mode(container_name)

        for conflict in st.conflicts:
            logger.warning(conflict)
        return st

    def _install_package(self, platform: dict, package: str) -> None:
        pkg = platform.get("packages") or {}
        check = [part.format(package=package) for part in pkg.get("check") or []]
        if check and self.runner(check).ok:
            return
        logger.info("Installing package", package=package)
        env = pkg.get("env") or None
        for cmd in pkg.get("install") or []:
            self.runner([part.format(package=package) for part in cmd], env=env, check=True)

    def restore_iptables(self, platform: Optional[dict], rules: Sequence[PortRule] = HOST_PORTS) -> List[CommandResult]:
        """Replace the host firewall with a persistent iptables rule set for FusionPBX."""
        cfg = ((platform or {}).get("firewall") or {}).get("iptables")
        if not cfg:
            raise PreconditionError("Unsupported OS. Please configure iptables manually.")

        logger.info("Restoring iptables", platform=platform.get("name"))
        self._install_package(platform, cfg["package"])

        conflicting = cfg.get("conflicting_service")
        if conflicting and self.service_active(conflicting):
            logger.info("Stopping conflicting firewall service", service=conflicting)
            self.runner(["systemctl", "stop", conflicting], check=True)
            self.runner(["systemctl", "disable", conflicting], check=True)

        service = cfg["service"]
        logger.info("Enabling iptables services", service=service)
        self.runner(["systemctl", "enable", service], check=True)
        self.runner(["systemctl", "start", service], check=True)

        logger.info("Creating iptables rules for FusionPBX")
        results = [self.runner(cmd, check=True) for cmd in iptables_baseline_commands(rules)]

        logger.info("Saving iptables rules")
        if cfg.get("save_to"):
            self.runner(["iptables-save"], stdout_path=cfg["save_to"], check=True)
        elif cfg.get("save_command"):
            self.runner(list(cfg["save_command"]), check=True)

        logger.info(
            "iptables service restoration completed",
            ports=describe_ports(rules),
        )
        logger.warning("Make sure SSH port 22 is accessible before disconnecting")
        return results


def render_status(st: FirewallStatus, container_name: str = "fusionpbx") -> str:
    def mark(flag: bool) -> str:
        return "ACTIVE" if flag else "INACTIVE"

    lines = ["=== Firewall Status Check ===", ""]
    if st.iptables_active:
        lines.append("iptables service: ACTIVE")
    elif st.netfilter_active:
        lines.append("netfilter-persistent service: ACTIVE")
    else:
        lines.append("iptables service: INACTIVE")
    lines.append(f"UFW: {mark(st.ufw_active) if st.ufw_installed else 'NOT INSTALLED'}")
    lines.append(f"firewalld: {mark(st.firewalld_active) if st.firewalld_installed else 'NOT INSTALLED'}")

    for key, title in (("ufw", "UFW rules"), ("firewalld", "firewalld rules"), ("filter", "Filter table"), ("nat", "NAT table")):
        if st.details.get(key):
            lines += ["", f"--- {title} ---", st.details[key]]
    if not st.iptables_installed:
        lines += ["", "iptables command not found"]

    lines += ["", "=== FusionPBX Port Status ==="]
    for port, up in st.listening.items():
        lines.append(f"Port {port}: {'LISTENING' if up else 'NOT LISTENING'}")
    if st.rtp_listening:
        lines.append(f"RTP ports ({RTP_RANGE[0]}-{RTP_RANGE[1]}): {st.rtp_listening} ports listening")
    else:
        lines.append(f"RTP ports ({RTP_RANGE[0]}-{RTP_RANGE[1]}): NO ports listening")

    lines += ["", "=== Docker Network Status ==="]
    if st.container_running:
        lines.append(f"{container_name} container: RUNNING")
        if st.network_mode == "host":
            lines.append("Network mode: HOST (Direct port access)")
        else:
            lines.append(f"Network mode: {st.network_mode}")
    else:
        lines.append(f"{container_name} container: NOT RUNNING")

    lines += ["", "=== Recommendations ==="]
    conflicts = st.conflicts
    if not conflicts:
        lines.append("No firewall conflicts detected")
    else:
        lines += conflicts
        lines += [
            f"{len(conflicts)} potential firewall conflicts detected",
            "Consider using only one firewall solution:",
            "  - For iptables: sudo fusionpbx-ops firewall restore-iptables",
            "  - For UFW: sudo ufw enable && sudo fusionpbx-ops firewall open-ports",
            "  - For firewalld: sudo systemctl enable firewalld && sudo fusionpbx-ops firewall open-ports",
        ]

    lines += ["", "=== Summary ==="]
    active = st.active_firewall
    if active:
        lines.append(f"{active}: ACTIVE")
    else:
        lines.append("No active firewall detected")
        lines.append("Run: sudo fusionpbx-ops firewall restore-iptables to restore iptables")
    return "\n".join(lines) + "\n"
