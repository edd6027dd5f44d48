"""
Post-deploy smoke tests and health reports against the compose service.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List

import httpx

from .containers import ComposeProject
from .logging_config import get_logger

logger = get_logger(__name__)

SERVICE = "fusionpbx"
WEB_URL = "https://localhost/"
FS_CLI = "/usr/local/freeswitch/bin/fs_cli"
HEALTH_PORTS = re.compile(r"(80|443|5060)")


@dataclass
class SmokeCheck:
    name: str
    passed: bool
    detail: str = ""


def check_container_up(compose: ComposeProject) -> SmokeCheck:
    ps = compose.ps()
    if "Up" in ps.stdout:
        return SmokeCheck("container", True)
    return SmokeCheck("container", False, "Container not running")


def check_web(http_get: Callable[..., httpx.Response] = httpx.get, url: str = WEB_URL) -> SmokeCheck:
    try:
        response = http_get(url, verify=False, follow_redirects=False, timeout=10.0)
    except httpx.HTTPError as exc:
        return SmokeCheck("web", False, f"Web interface not responding: {exc}")
    if response.status_code in (200, 302):
        return SmokeCheck("web", True, str(response.status_code))
    return SmokeCheck("web", False, f"Web interface not responding (HTTP {response.status_code})")


def check_freeswitch(compose: ComposeProject, service: str = SERVICE) -> SmokeCheck:
    result = compose.exec(service, [FS_CLI, "-x", "status"])
    if "UP" in result.stdout:
        return SmokeCheck("freeswitch", True)
    return SmokeCheck("freeswitch", False, "FreeSWITCH not running")


def run_smoke_tests(
    compose: ComposeProject,
    http_get: Callable[..., httpx.Response] = httpx.get,
    service: str = SERVICE,
) -> List[SmokeCheck]:
    """Run the checks in order, stopping at the first failure."""
    steps = (
        ("Checking if container is running", lambda: check_container_up(compose)),
        ("Checking web interface", lambda: check_web(http_get)),
        ("Checking FreeSWITCH", lambda: check_freeswitch(compose, service)),
    )
    checks = []
    for number, (title, step) in enumerate(steps, start=1):
        logger.info(f"{number}. {title}")
        check = step()
        checks.append(check)
        if not check.passed:
            logger.error("Smoke test failed", check=check.name, detail=check.detail)
            return checks
    logger.info("All tests passed")
    return checks


def health_report(compose: ComposeProject, service: str = SERVICE) -> Dict[str, str]:
    netstat = compose.exec(service, ["netstat", "-tulpn"]).stdout
    return {
        "services": compose.exec(service, ["supervisorctl", "status"]).output,
        "ports": "\n".join(line for line in netstat.splitlines() if HEALTH_PORTS.search(line)),
        "disk": compose.exec(service, ["df", "-h"]).output,
        "memory": compose.exec(service, ["free", "-h"]).output,
    }


def status_report(compose: ComposeProject, service: str = SERVICE) -> Dict[str, str]:
    return {
        "containers": compose.ps().output,
        "services": compose.exec(service, ["supervisorctl", "status"]).output,
    }
