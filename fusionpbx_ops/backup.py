"""
Backup and restore of a FusionPBX host deployment.

A backup is a single `fusionpbx_backup_<YYYYmmdd_HHMMSS>.tar.gz` holding one
top-level directory of the same name with:

    database.sql      pg_dumpall of the container's cluster
    config/ recordings/ sounds/ storage/   copies of the bind-mounted dirs
    backup_info.txt   human-readable summary

Restore refuses archives that do not have that shape.
"""

import os
import shutil
import socket
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional

from .containers import ComposeProject, ContainerManager
from .errors import BackupError, PreconditionError
from .logging_config import get_logger
from .shell import primary_ip

logger = get_logger(__name__)

BACKUP_PREFIX = "fusionpbx_backup_"
ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

DEFAULT_BASE_DIR = Path("/opt/fusionpbx")
FILE_DIRS = ("config", "recordings", "sounds", "storage")
POSTGRES_UID = 999
POSTGRES_GID = 999

_DIR_LABELS = {
    "config": "Config directory",
    "recordings": "Recordings directory",
    "sounds": "Custom sounds directory",
    "storage": "Storage directory",
}


@dataclass
class BackupResult:
    name: str
    archive: Path
    size_bytes: int
    included: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    pruned: List[Path] = field(default_factory=list)


@dataclass
class RestoreResult:
    archive: Path
    cancelled: bool = False
    safety_backup: Optional[Path] = None
    database_restored: bool = False
    restored_dirs: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    info: str = ""


def human_size(num: float) -> str:
    for unit in ("B", "K", "M", "G"):
        if num < 1024:
            return f"{num:.0f}{unit}" if unit == "B" else f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}T"


def _is_within(base: Path, candidate: Path) -> bool:
    base = Path(os.path.abspath(base))
    cand = Path(os.path.abspath(candidate))
    return cand == base or base in cand.parents


def safe_extract_tar(tar_path: Path, dest_dir: Path) -> List[str]:
    """Extract `tar_path` into `dest_dir`, refusing members that would land outside it.

    Symlinks are allowed only when they are relative and resolve inside the archive.
    Returns the top-level entry names.
    """
    dest_dir = Path(dest_dir)
    try:
        with tarfile.open(tar_path, "r:*") as tf:
            members = tf.getmembers()
            _check_members(members, dest_dir)
            if hasattr(tarfile, "tar_filter"):
                # keeps ownership and modes; paths were vetted above
                tf.extractall(dest_dir, members=members, filter="tar")
            else:
                tf.extractall(dest_dir, members=members)
    except (tarfile.TarError, EOFError) as e:
        raise BackupError(f"Cannot read backup archive {tar_path}: {e}") from e
    return sorted({PurePosixPath(m.name).parts[0] for m in members if PurePosixPath(m.name).parts})


def _check_members(members: List[tarfile.TarInfo], dest_dir: Path) -> None:
    for member in members:
        pp = PurePosixPath(member.name)
        if pp.is_absolute() or ".." in pp.parts:
            raise BackupError(f"Unsafe archive member path: {member.name}")
        if member.islnk():
            raise BackupError(f"Unsafe archive member (hard link): {member.name}")
        if member.issym():
            target = PurePosixPath(member.linkname)
            resolved = dest_dir.joinpath(*pp.parent.parts, *target.parts)
            if target.is_absolute() or not _is_within(dest_dir, resolved):
                raise BackupError(f"Unsafe archive member (symlink): {member.name}")
        elif not (member.isfile() or member.isdir()):
            raise BackupError(f"Unsupported archive member type: {member.name}")
        if not _is_within(dest_dir, dest_dir.joinpath(*pp.parts)):
            raise BackupError(f"Unsafe extraction path: {member.name}")


def clear_dir(path: Path) -> None:
    if not path.exists():
        path.mkdir(parents=True)
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def _copy_contents(src: Path, dst: Path) -> None:
    dst.mkdir(parents=True, exist_ok=True)
    for child in src.iterdir():
        target = dst / child.name
        if child.is_dir() and not child.is_symlink():
            shutil.copytree(child, target, symlinks=True)
        else:
            shutil.copy2(child, target, follow_symlinks=False)


def chown_recursive(path: Path, uid: int, gid: int) -> None:
    os.chown(path, uid, gid)
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            os.chown(os.path.join(root, name), uid, gid, follow_symlinks=False)


class BackupManager:
    def __init__(
        self,
        containers: ContainerManager,
        compose: ComposeProject,
        base_dir: Path = DEFAULT_BASE_DIR,
        backup_dir: Optional[Path] = None,
        container_name: str = "fusionpbx",
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        postgres_wait: float = 30,
        startup_wait: float = 60,
        health_attempts: int = 12,
        health_interval: float = 10,
    ):
        self.containers = containers
        self.compose = compose
        self.base_dir = Path(base_dir)
        self.backup_dir = Path(backup_dir) if backup_dir else self.base_dir / "backups"
        self.container_name = container_name
        self.clock = clock
        self.sleep = sleep
        self.postgres_wait = postgres_wait
        self.startup_wait = startup_wait
        self.health_attempts = health_attempts
        self.health_interval = health_interval

    def list_backups(self) -> List[Path]:
        if not self.backup_dir.is_dir():
            return []
        return sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*{ARCHIVE_SUFFIX}"))

    def prune(self, retention_days: int) -> List[Path]:
        """Delete archives older than `retention_days` whole days (find -mtime +N)."""
        now = self.clock().timestamp()
        removed = []
        for archive in self.list_backups():
            age_days = int((now - archive.stat().st_mtime) // 86400)
            if age_days > retention_days:
                archive.unlink()
                removed.append(archive)
                logger.info("Removed old backup", archive=archive.name, age_days=age_days)
        return removed

    def _backup_info(self, name: str, when: datetime) -> str:
        return "\n".join([
            "FusionPBX Backup Information",
            "===========================",
            f"Backup Date: {when.strftime('%a %b %d %H:%M:%S %Y')}",
            f"Backup Name: {name}",
            f"Server: {socket.gethostname()}",
            f"Server IP: {primary_ip()}",
            f"Container Status: {self.containers.status_line(self.container_name)}",
            "",
            "Backup Contents:",
            "- Database dump (database.sql)",
            "- Configuration files (config/)",
            "- Recordings (recordings/)",
            "- Custom sounds (sounds/)",
            "- Storage files (storage/)",
            "",
            "Restore Instructions:",
            f"1. fusionpbx-ops backup restore {self.backup_dir / (name + ARCHIVE_SUFFIX)}",
            "   or by hand:",
            "2. Stop FusionPBX container",
            f"3. Restore database: docker exec -i {self.container_name} psql -U postgres < database.sql",
            f"4. Restore files to {self.base_dir}/",
            "5. Start FusionPBX container",
            "",
        ])

    def create(self, retention_days: int = 30) -> BackupResult:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        if not self.containers.is_running(self.container_name):
            raise PreconditionError("FusionPBX container is not running")

        when = self.clock()
        name = f"{BACKUP_PREFIX}{when.strftime(TIMESTAMP_FORMAT)}"
        staging = self.backup_dir / name
        archive = self.backup_dir / f"{name}{ARCHIVE_SUFFIX}"
        if archive.exists():
            raise BackupError(f"Backup {archive.name} already exists")
        try:
            staging.mkdir(parents=True)
        except FileExistsError:
            raise BackupError(f"Backup {name} is already in progress") from None
        logger.info("Starting FusionPBX backup", name=name)

        included, skipped = [], []
        try:
            logger.info("Backing up PostgreSQL database")
            self.containers.exec_to_file(
                self.container_name, ["pg_dumpall", "-U", "postgres"], staging / "database.sql"
            )
            included.append("database.sql")

            for dirname in FILE_DIRS:
                src = self.base_dir / dirname
                if src.is_dir() and any(src.iterdir()):
                    logger.info("Backing up directory", directory=dirname)
                    shutil.copytree(src, staging / dirname, symlinks=True)
                    included.append(dirname)
                else:
                    logger.warning(f"{_DIR_LABELS[dirname]} not found or empty")
                    skipped.append(dirname)

            (staging / "backup_info.txt").write_text(self._backup_info(name, when))

            logger.info("Compressing backup")
            try:
                with tarfile.open(archive, "w:gz") as tf:
                    tf.add(staging, arcname=name)
            except (OSError, tarfile.TarError) as e:
                archive.unlink(missing_ok=True)
                raise BackupError(f"Failed to compress backup: {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        os.chmod(archive, 0o600)
        size = archive.stat().st_size
        logger.info("Backup completed successfully", archive=str(archive), size=human_size(size))

        logger.info("Cleaning up old backups", retention_days=retention_days)
        pruned = self.prune(retention_days)
        return BackupResult(name, archive, size, included, skipped, pruned)

    def restore(self, archive: Path, confirm: Callable[[str], bool]) -> RestoreResult:
        archive = Path(archive)
        if not archive.is_file():
            raise BackupError(f"Backup file not found: {archive}")

        name = archive.name[: -len(ARCHIVE_SUFFIX)] if archive.name.endswith(ARCHIVE_SUFFIX) else archive.stem
        result = RestoreResult(archive=archive)
        logger.info("Starting FusionPBX restore", archive=str(archive))

        restore_dir = Path(tempfile.mkdtemp(prefix="fusionpbx_restore_"))
        try:
            logger.info("Extracting backup")
            safe_extract_tar(archive, restore_dir)
            content = restore_dir / name
            if not content.is_dir():
                raise BackupError("Invalid backup structure")

            info_file = content / "backup_info.txt"
            if info_file.is_file():
                result.info = info_file.read_text()

            if not confirm(result.info):
                logger.info("Restore cancelled")
                result.cancelled = True
                return result

            self._restore_from(content, result)
        finally:
            logger.info("Cleaning up temporary files")
            shutil.rmtree(restore_dir, ignore_errors=True)

        logger.info(
            "FusionPBX restore completed successfully",
            url=f"http://{primary_ip()}/",
            safety_backup=str(result.safety_backup),
        )
        return result

    def _restore_from(self, content: Path, result: RestoreResult) -> None:
        logger.info("Stopping FusionPBX container")
        if self.containers.is_running(self.container_name):
            self.compose.down()

        safety = self.backup_dir / f"pre_restore_{self.clock().strftime(TIMESTAMP_FORMAT)}"
        logger.info("Creating safety backup", path=str(safety))
        safety.mkdir(parents=True, exist_ok=True)
        for dirname in ("data", "config"):
            src = self.base_dir / dirname
            if src.is_dir():
                shutil.copytree(src, safety / dirname, symlinks=True, dirs_exist_ok=True)
        result.safety_backup = safety

        dump = content / "database.sql"
        if dump.is_file():
            logger.info("Restoring database")
            clear_dir(self.base_dir / "data")
            self.compose.up()
            logger.info("Waiting for PostgreSQL to be ready", seconds=self.postgres_wait)
            self.sleep(self.postgres_wait)
            self.containers.exec_with_stdin(self.container_name, ["psql", "-U", "postgres"], dump)
            self.compose.down()
            result.database_restored = True
        else:
            logger.warning("Database backup not found in backup file")

        for dirname in FILE_DIRS:
            src = content / dirname
            if src.is_dir():
                logger.info("Restoring directory", directory=dirname)
                target = self.base_dir / dirname
                clear_dir(target)
                _copy_contents(src, target)
                result.restored_dirs.append(dirname)
            else:
                logger.warning("Directory not found in backup file", directory=dirname)
                result.missing.append(dirname)

        self.fix_permissions()

        logger.info("Starting FusionPBX container")
        self.compose.up()
        logger.info("Waiting for services to initialize", seconds=self.startup_wait)
        self.sleep(self.startup_wait)
        self.containers.wait_until_healthy(self.container_name, self.health_attempts, self.health_interval)

    def fix_permissions(self) -> None:
        logger.info("Fixing permissions")
        data = self.base_dir / "data"
        data.mkdir(parents=True, exist_ok=True)
        os.chmod(data, 0o700)
        chown_recursive(data, POSTGRES_UID, POSTGRES_GID)
        for dirname in FILE_DIRS:
            path = self.base_dir / dirname
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, 0o755)


class DatabaseDumper:
    """Single-database dump/load through compose (`db dump` / `db load`)."""

    def __init__(
        self,
        compose: ComposeProject,
        output_dir: Path,
        service: str = "fusionpbx",
        db_user: str = "fusionpbx",
        db_name: str = "fusionpbx",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.compose = compose
        self.output_dir = Path(output_dir)
        self.service = service
        self.db_user = db_user
        self.db_name = db_name
        self.clock = clock

    def dump(self) -> Path:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"fusionpbx-{self.clock().strftime('%Y%m%d-%H%M%S')}.sql"
        self.compose.runner(
            self.compose.base_cmd + ["exec", "-T", self.service, "pg_dump", "-U", self.db_user, self.db_name],
            cwd=self.compose.project_dir,
            stdout_path=path,
            check=True,
        )
        logger.info("Database backup created", path=str(path))
        return path

    def load(self, path: Path) -> None:
        path = Path(path)
        if not path.is_file():
            raise BackupError(f"SQL file not found: {path}")
        self.compose.runner(
            self.compose.base_cmd + ["exec", "-T", self.service, "psql", "-U", self.db_user, "-d", self.db_name],
            cwd=self.compose.project_dir,
            stdin_path=path,
            check=True,
        )
        logger.info("Database restored", path=str(path))
