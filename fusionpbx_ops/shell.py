"""
Thin subprocess layer.

All external tools (docker CLI, compose, psql, iptables, ufw, firewall-cmd,
systemctl, openssl) go through `run()`, which takes an argv list, never a
shell string. Tests replace the runner instead of patching subprocess.
"""

import os
import platform
import shutil
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

import psutil

from .errors import CommandError, PreconditionError
from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout or "").strip()


@dataclass
class CommandLog:
    """Records commands instead of running them (dry runs and tests)."""

    results: Mapping[str, CommandResult] = field(default_factory=dict)
    calls: List[List[str]] = field(default_factory=list)

    def __call__(self, cmd: Sequence[str], **kwargs) -> CommandResult:
        argv = [str(c) for c in cmd]
        self.calls.append(argv)
        key = " ".join(argv)
        for prefix, result in self.results.items():
            if key.startswith(prefix):
                return result
        return CommandResult(argv, 0)


Runner = Callable[..., CommandResult]


def run(
    cmd: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    input_text: Optional[str] = None,
    stdin_path: Optional[Path] = None,
    stdout_path: Optional[Path] = None,
    timeout: Optional[float] = None,
    check: bool = False,
    capture: bool = True,
) -> CommandResult:
    """Run an external command.

    Args:
        cmd: argv list
        cwd: working directory
        env: extra environment variables layered over os.environ
        input_text: text fed to stdin
        stdin_path: file streamed to stdin (e.g. a SQL dump)
        stdout_path: file receiving stdout (e.g. pg_dumpall output)
        timeout: seconds before the command is killed
        check: raise CommandError on non-zero exit
        capture: capture stdout/stderr; False lets the command talk to the terminal

    Returns:
        CommandResult
    """
    argv = [str(c) for c in cmd]
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update({k: str(v) for k, v in env.items()})

    logger.debug("Running command", cmd=argv, cwd=str(cwd) if cwd else None)

    stdin_fh = open(stdin_path, "rb") if stdin_path else None
    stdout_fh = open(stdout_path, "wb") if stdout_path else None
    try:
        kwargs = {
            "cwd": str(cwd) if cwd else None,
            "env": full_env,
            "timeout": timeout,
        }
        if stdin_fh is not None:
            kwargs["stdin"] = stdin_fh
        elif input_text is not None:
            kwargs["input"] = input_text.encode()
        if stdout_fh is not None:
            kwargs["stdout"] = stdout_fh
            kwargs["stderr"] = subprocess.PIPE
        elif capture:
            kwargs["stdout"] = subprocess.PIPE
            kwargs["stderr"] = subprocess.PIPE

        proc = subprocess.run(argv, **kwargs)
    except FileNotFoundError as exc:
        raise CommandError(f"Command not found: {argv[0]}", argv, 127, "", str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(f"Command timed out after {timeout}s: {' '.join(argv)}", argv) from exc
    finally:
        if stdin_fh is not None:
            stdin_fh.close()
        if stdout_fh is not None:
            stdout_fh.close()

    result = CommandResult(
        argv,
        proc.returncode,
        _decode(proc.stdout),
        _decode(proc.stderr),
    )
    if check and not result.ok:
        raise CommandError(
            f"Command failed with exit code {result.returncode}: {' '.join(argv)}",
            argv,
            result.returncode,
            result.stdout,
            result.stderr,
        )
    return result


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def get_docker_compose_cmd(runner: Runner = run) -> List[str]:
    """
    Find the compose command.
    Returns ['docker-compose'] (standalone) or ['docker', 'compose'] (v2 plugin).
    """
    compose_path = shutil.which("docker-compose")
    if compose_path:
        return [compose_path]

    docker_path = shutil.which("docker")
    if docker_path:
        try:
            if runner([docker_path, "compose", "version"], timeout=5).ok:
                return [docker_path, "compose"]
        except CommandError as exc:
            logger.debug("docker compose detection failed", error=str(exc))

    raise PreconditionError("Docker Compose is not installed")


def require_docker() -> str:
    docker_path = shutil.which("docker")
    if not docker_path:
        raise PreconditionError("Docker is not installed. Please install Docker first.")
    return docker_path


def require_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("This command must be run as root (use sudo)")


def host_os() -> str:
    """'linux', 'macos' or 'unknown'."""
    system = platform.system()
    if system == "Linux":
        return "linux"
    if system == "Darwin":
        return "macos"
    return "unknown"


def primary_ip() -> str:
    """First non-loopback IPv4 address of this host."""
    for _iface, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return "127.0.0.1"
