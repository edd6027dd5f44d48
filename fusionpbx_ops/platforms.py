"""
Host OS detection and the platforms.yaml lookup table.

The table ships inside the package; `<project>/config/platforms.yaml` replaces
it when present.
"""

import os
from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .logging_config import get_logger

logger = get_logger(__name__)

PLATFORMS_FILE = "platforms.yaml"

_PLATFORMS_CACHE: Optional[dict] = None
_PLATFORMS_CACHE_KEY: Optional[tuple] = None

DEBIAN_IDS = ("ubuntu", "debian", "linuxmint", "pop")
RHEL_IDS = ("centos", "rhel", "rocky", "almalinux", "fedora", "ol")


def project_platforms_path(project_dir: Optional[Path] = None) -> Optional[Path]:
    """The project's own config/platforms.yaml, if it has one."""
    if project_dir is None:
        return None
    candidate = Path(project_dir) / "config" / PLATFORMS_FILE
    return candidate if candidate.is_file() else None


def _read_cached(key: tuple, read) -> dict:
    global _PLATFORMS_CACHE, _PLATFORMS_CACHE_KEY

    if _PLATFORMS_CACHE is None or _PLATFORMS_CACHE_KEY != key:
        _PLATFORMS_CACHE = yaml.safe_load(read()) or {}
        _PLATFORMS_CACHE_KEY = key
    return _PLATFORMS_CACHE


def load_platforms(path: Optional[Path] = None) -> Optional[dict]:
    """Load a platforms file, or the packaged table when `path` is None.

    Files are cached until their mtime changes.
    """
    if path is None:
        packaged = resources.files(__package__).joinpath(PLATFORMS_FILE)
        return _read_cached(("package", PLATFORMS_FILE), packaged.read_text)

    path = Path(path)
    if not path.exists():
        logger.warning("Platforms file not found", path=str(path))
        return None
    return _read_cached((str(path), path.stat().st_mtime), path.read_text)


def deep_merge(base: dict, override: dict) -> dict:
    """Nested merge with `override` winning. `inherit` keys are dropped."""
    merged = {k: v for k, v in (base or {}).items() if k != "inherit"}
    for key, value in (override or {}).items():
        if key == "inherit":
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def inheritance_chain(platforms: dict, platform_key: str) -> List[str]:
    """`platform_key` followed by its ancestors. A missing parent or a loop ends the chain."""
    chain: List[str] = []
    key = platform_key
    while key and isinstance(platforms.get(key), dict):
        if key in chain:
            logger.warning("Platform inherit loop", chain=chain + [key])
            break
        chain.append(key)
        key = platforms[key].get("inherit")
    return chain


def resolve_platform(platforms: dict, platform_key: str) -> Optional[dict]:
    chain = inheritance_chain(platforms or {}, platform_key)
    if not chain:
        return None
    resolved: dict = {}
    for key in reversed(chain):
        resolved = deep_merge(resolved, platforms[key])
    return resolved


def select_platform_key(platforms: Optional[dict], os_id: str, os_family: str) -> Optional[str]:
    """Exact id, then an entry listing the id in `os_ids`, then the family entry."""
    if not platforms:
        return None

    entries = {k: v for k, v in platforms.items() if isinstance(v, dict)}
    if os_id in entries:
        return os_id
    for key, node in entries.items():
        if os_id in (node.get("os_ids") or []):
            return key
    if os_family in entries:
        return os_family
    return None


def read_os_release(path: Path) -> Dict[str, str]:
    values = {}
    for line in path.read_text().splitlines():
        key, sep, value = line.partition("=")
        if sep and key and not key.startswith("#"):
            values[key.strip()] = value.strip().strip('"')
    return values


def detect_os(root: str = "/") -> Dict[str, object]:
    """Detect the host OS from os-release, falling back to distro marker files.

    Inside the admin container the host's /etc is mounted at /host/etc and wins.
    """
    root_path = Path(root)
    os_info: Dict[str, object] = {
        "id": "unknown",
        "version": "unknown",
        "name": "unknown",
        "family": "unknown",
        "arch": os.uname().machine,
        "in_container": (root_path / ".dockerenv").exists(),
    }

    for rel in ("host/etc/os-release", "etc/os-release"):
        path = root_path / rel
        if path.exists():
            release = read_os_release(path)
            os_info["id"] = release.get("ID", "unknown")
            os_info["version"] = release.get("VERSION_ID", "unknown")
            os_info["name"] = release.get("PRETTY_NAME", release.get("NAME", "unknown"))
            break

    os_id = os_info["id"]
    if os_id in DEBIAN_IDS:
        os_info["family"] = "debian"
    elif os_id in RHEL_IDS:
        os_info["family"] = "rhel"
    elif (root_path / "etc/debian_version").exists():
        os_info["family"] = "debian"
    elif (root_path / "etc/redhat-release").exists():
        os_info["family"] = "rhel"

    return os_info


def platform_for_host(project_dir: Optional[Path] = None, os_info: Optional[dict] = None) -> Optional[dict]:
    """Resolved platforms.yaml entry for this host, or None when unknown."""
    os_info = os_info or detect_os()
    platforms = load_platforms(project_platforms_path(project_dir))
    key = select_platform_key(platforms, str(os_info["id"]), str(os_info["family"]))
    if key is None:
        return None
    resolved = resolve_platform(platforms, key)
    if resolved is not None:
        resolved["key"] = key
    return resolved
