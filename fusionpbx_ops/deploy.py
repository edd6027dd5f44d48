"""
Deploy the FusionPBX stack with docker compose.

Three profiles share one flow:

- ``host``: production host with data under /opt/fusionpbx, firewall step,
  long install wait (schema then admin check).
- ``dev``: developer machine, data under ./dev-data, docker-compose.dev.yml,
  clean rebuild by default, works on macOS.
- ``prod``: bridge-network production compose file, install confirmed via the
  web installer page.

Switches (build, clean, auto-install, pull, firewall) come from `Settings`;
an unset switch falls back to the profile default.
"""

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import httpx

from .backup import POSTGRES_GID, POSTGRES_UID, chown_recursive, clear_dir
from .config import DEFAULT_IMAGE, LOCAL_IMAGE_TAG, Settings, get_settings, load_env_file
from .containers import ComposeProject, ContainerManager
from .database import ContainerPsql, Database, as_int, is_installed
from .errors import DatabaseError, PreconditionError
from .firewall import BRIDGE_PORTS, FirewallManager, describe_ports
from .logging_config import get_logger
from .shell import Runner, get_docker_compose_cmd, host_os, primary_ip, require_docker, require_root, run

logger = get_logger(__name__)

DATA_SUBDIRS = ("data", "config", "recordings", "logs", "sounds", "storage")
PG_VERSION_DIR = "15"
INSTALL_PAGE = "/core/install/install.php"

ADMIN_ENABLED_SQL = (
    "SELECT count(*) FROM v_users "
    "WHERE username = %(username)s AND user_enabled = 'true'"
)
ADMIN_EXISTS_SQL = "SELECT username FROM v_users WHERE username = %(username)s"

PORT_MAPPING = (
    "HTTP: {http} → 80 (Web Interface)",
    "HTTPS: {https} → 443 (Secure Web Interface)",
    "SIP: 5060 → 5060 (TCP/UDP)",
    "SIP Alt: 5080 → 5080 (TCP/UDP)",
    "Event Socket: {esl} → 8021",
    "RTP: 10000-10100 → 10000-10100 (UDP)",
)


@dataclass(frozen=True)
class DeployProfile:
    name: str
    title: str
    container_name: str
    compose_file: Optional[str]
    env_files: Tuple[str, ...]
    # Absolute, or relative to the project dir; None leaves storage to compose volumes.
    data_root: Optional[str]
    require_root: bool = False
    allow_macos: bool = True
    build_default: bool = False
    clean_default: bool = False
    auto_install_default: bool = True
    firewall_step: bool = False
    build_tag: str = LOCAL_IMAGE_TAG
    tag_pulled: bool = False
    fallback_admin_password: Optional[str] = None
    clean_volumes: Tuple[str, ...] = ()
    clean_network: Optional[str] = None
    initial_wait: int = 30
    health_attempts: int = 12
    health_interval: int = 10
    install_check: str = "admin_row"
    install_wait: int = 20
    install_attempts: int = 10
    install_interval: int = 10
    http_port: int = 8080
    https_port: int = 8443
    esl_port: int = 8021
    features: Tuple[str, ...] = ()


PROFILES = {
    "host": DeployProfile(
        name="host",
        title="FusionPBX Production Deployment",
        container_name="fusionpbx",
        compose_file=None,
        env_files=(".env.production", ".env"),
        data_root="/opt/fusionpbx",
        require_root=True,
        allow_macos=False,
        firewall_step=True,
        initial_wait=60,
        health_attempts=20,
        health_interval=15,
        install_check="schema",
        install_wait=0,
        install_attempts=15,
        install_interval=60,
        features=(
            "Bridge Network (Compatible with existing services)",
            "Auto-Installation: {auto_install}",
            "HTTPS: {enable_https}",
            "Fail2Ban: {enable_fail2ban}",
            "Persistent Data Storage: /opt/fusionpbx/",
        ),
    ),
    "dev": DeployProfile(
        name="dev",
        title="FusionPBX Development Deployment",
        container_name="fusionpbx-dev",
        compose_file="docker-compose.dev.yml",
        env_files=(".env",),
        data_root="dev-data",
        build_default=True,
        clean_default=True,
        tag_pulled=True,
        fallback_admin_password="admin123",
        clean_volumes=tuple(f"test_fusionpbx-{sub}" for sub in DATA_SUBDIRS),
        clean_network="test_fusionpbx-network",
        esl_port=8022,
        features=(
            "Bridge Network (MacOS Compatible)",
            "Local Data Storage: ./dev-data/",
            "Debug Mode: Enabled",
            "Fail2Ban: Disabled",
            "Development Credentials",
        ),
    ),
    "prod": DeployProfile(
        name="prod",
        title="FusionPBX Production Deployment",
        container_name="fusionpbx-prod",
        compose_file="docker-compose.yml",
        env_files=(".env.prod", ".env"),
        data_root=None,
        allow_macos=False,
        clean_default=True,
        build_tag=DEFAULT_IMAGE,
        install_check="web",
        http_port=80,
        https_port=443,
    ),
}


def get_profile(name: str) -> DeployProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise PreconditionError(
            f"Unknown deploy profile '{name}' (expected one of: {', '.join(sorted(PROFILES))})"
        ) from None


def _switch(value: Optional[bool], default: bool) -> bool:
    return default if value is None else value


@dataclass
class DeploySummary:
    profile: DeployProfile
    container_status: str
    container_ip: str
    server_ip: str
    admin_user: str
    admin_password: str
    db_name: str
    db_user: str
    compose_cmd: str
    auto_install: bool
    installed: Optional[bool] = None
    enable_https: bool = True
    enable_fail2ban: bool = True

    def lines(self) -> List[str]:
        p = self.profile
        http = f"http://{self.server_ip}:{p.http_port}"
        https = f"https://{self.server_ip}:{p.https_port}"
        values = {
            "auto_install": str(self.auto_install).lower(),
            "enable_https": str(self.enable_https).lower(),
            "enable_fail2ban": str(self.enable_fail2ban).lower(),
        }
        out = [
            f"=== {p.title} Status ===",
            f"Container Status: {self.container_status}",
            "Network Mode: Bridge Network (Port Mapping)",
            f"Container IP: {self.container_ip}",
            f"HTTP Interface: {http}",
            f"HTTPS Interface: {https}",
            f"Admin Login: {self.admin_user} / {self.admin_password}",
            f"Database: {self.db_name} ({self.db_user})",
            f"SIP Server: {self.server_ip}:5060",
            f"Logs: docker logs {p.container_name}",
            "",
            "Port Mapping:",
        ]
        out += ["• " + line.format(http=p.http_port, https=p.https_port, esl=p.esl_port) for line in PORT_MAPPING]
        if p.features:
            out += ["", "Features:"]
            out += ["• " + feature.format(**values) for feature in p.features]
        out += [
            "",
            "Next Steps:",
            f"1. Access {http} or {https}",
            f"2. Login with {self.admin_user} / {self.admin_password}",
            "3. Configure extensions and dial plans",
            f"4. Test SIP connectivity on {self.server_ip}:5060",
            f"5. Check logs: docker logs {p.container_name} -f",
            "",
            "Useful Commands:",
            f"• View logs: docker logs {p.container_name} -f",
            f"• Stop: {self.compose_cmd} down",
            f"• Restart: {self.compose_cmd} restart",
            f"• Shell access: docker exec -it {p.container_name} bash",
        ]
        return out

    def render(self) -> str:
        return "\n".join(self.lines())


class Deployer:
    """Runs one deploy profile end to end."""

    def __init__(
        self,
        profile: DeployProfile,
        project_dir: Path,
        settings: Optional[Settings] = None,
        containers: Optional[ContainerManager] = None,
        compose: Optional[ComposeProject] = None,
        firewall: Optional[FirewallManager] = None,
        db: Optional[Database] = None,
        runner: Runner = run,
        sleep: Callable[[float], None] = time.sleep,
        http_get: Callable[..., httpx.Response] = httpx.get,
        os_name: Optional[str] = None,
        is_root: Optional[Callable[[], None]] = None,
    ):
        self.profile = profile
        self.project_dir = Path(project_dir)
        self._settings = settings
        self.runner = runner
        self.sleep = sleep
        self.http_get = http_get
        self.os_name = os_name or host_os()
        self.is_root = is_root or require_root
        self.containers = containers or ContainerManager(runner=runner, sleep=sleep)
        self.compose = compose
        self.firewall = firewall or FirewallManager(runner=runner)
        self._db = db

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = ContainerPsql(self.profile.container_name, self.settings.db, runner=self.runner)
        return self._db

    @property
    def data_root(self) -> Optional[Path]:
        if self.profile.data_root is None:
            return None
        root = Path(self.profile.data_root)
        return root if root.is_absolute() else self.project_dir / root

    @property
    def admin_password(self) -> str:
        if self.profile.fallback_admin_password and "FUSIONPBX_ADMIN_PASSWORD" not in os.environ:
            return self.profile.fallback_admin_password
        return self.settings.fusionpbx.admin_password

    def check_host(self) -> None:
        if self.profile.require_root:
            self.is_root()
        logger.info("Detected OS", os=self.os_name, profile=self.profile.name)
        if self.os_name == "macos" and not self.profile.allow_macos:
            raise PreconditionError(
                f"The {self.profile.name} profile only supports Linux servers; use the dev profile on macOS"
            )

    def load_environment(self) -> None:
        loaded = load_env_file(self.project_dir, self.profile.env_files)
        if loaded is None and self.profile.fallback_admin_password:
            os.environ.setdefault("FUSIONPBX_ADMIN_USER", "admin")
            os.environ.setdefault("FUSIONPBX_ADMIN_PASSWORD", self.profile.fallback_admin_password)
        self._settings = None
        logger.info(
            "Admin credentials",
            user=self.settings.fusionpbx.admin_user,
            password=self.admin_password,
        )

    def prepare_directories(self) -> None:
        root = self.data_root
        if root is None:
            return
        logger.info("Creating data directories", root=str(root))
        for sub in DATA_SUBDIRS:
            (root / sub).mkdir(parents=True, exist_ok=True)

        os.chmod(root, 0o755)
        for sub in DATA_SUBDIRS:
            os.chmod(root / sub, 0o700 if sub == "data" else 0o755)

        if self.profile.name == "dev":
            chown_recursive(root, os.getuid(), os.getgid())
            if self.os_name == "macos":
                # PostgreSQL in the container runs as uid 999; the entrypoint takes over from here
                os.chmod(root / "data", 0o777)
            return

        pg_dir = root / "data" / PG_VERSION_DIR
        for path in (pg_dir, pg_dir / "main"):
            if path.is_dir():
                logger.info("Fixing PostgreSQL directory permissions", path=str(path))
                os.chmod(path, 0o700)

    def prepare_image(self) -> None:
        s = self.settings
        if _switch(s.build_image, self.profile.build_default):
            logger.info("Building FusionPBX image locally", tag=self.profile.build_tag)
            self.containers.build(self.project_dir, self.profile.build_tag)
            if self.profile.name == "host":
                self.compose.env["FUSIONPBX_IMAGE"] = self.profile.build_tag
            return
        if s.skip_pull:
            logger.info("Skipping image pull/build as requested")
            return
        image = s.fusionpbx.image
        self.containers.pull(image)
        if self.profile.tag_pulled:
            self.containers.tag(image, LOCAL_IMAGE_TAG)
        logger.info("Image ready", image=image)

    def stop_existing(self, clean: bool) -> None:
        p = self.profile
        if p.name == "dev":
            self.compose.down(ignore_errors=True)
            if not clean:
                logger.info("Performing incremental deployment")
                return
            logger.info("Performing clean deployment")
            self.compose.down(volumes=True, ignore_errors=True)
            self.containers.remove(p.container_name)
            if p.clean_network:
                self.containers.remove_network(p.clean_network)
            root = self.data_root
            if root is not None and root.exists():
                clear_dir(root)
                root.rmdir()
                logger.info("Local data directories cleaned", path=str(root))
            for volume in p.clean_volumes:
                self.containers.remove_volume(volume)
            self.prepare_directories()
            return

        if p.name == "prod" and clean:
            logger.info("Performing clean deployment")
            self.compose.down(volumes=True, ignore_errors=True)
            self.containers.remove(p.container_name)
            return

        if self.containers.is_running(p.container_name):
            logger.info("Stopping existing FusionPBX container", container=p.container_name)
            self.compose.down()

        if p.name != "host":
            logger.info("Performing incremental deployment")
            return

        self.containers.remove(p.container_name)
        if clean:
            logger.info("Performing clean deployment, removing data and config")
            clear_dir(self.data_root / "data")
            clear_dir(self.data_root / "config")
            self.containers.prune_volumes()

    def reset_data_permissions(self) -> None:
        root = self.data_root
        if root is None or not (root / "data").is_dir():
            return
        data = root / "data"
        logger.info("Preparing data directory for container", path=str(data))

        if self.profile.name == "dev":
            if self.os_name == "macos":
                os.chmod(data, 0o777)
                (data / ".dev-setup").touch()
                return
            os.chmod(data, 0o700)
            result = self.runner(["sudo", "-n", "chown", "-R", f"{POSTGRES_UID}:{POSTGRES_GID}", str(data)])
            if not result.ok:
                logger.warning("Could not hand data directory to the postgres user", path=str(data))
            return

        os.chmod(data, 0o700)
        chown_recursive(data, POSTGRES_UID, POSTGRES_GID)
        main = data / PG_VERSION_DIR / "main"
        for path in (data / PG_VERSION_DIR, main):
            if path.is_dir():
                os.chmod(path, 0o700)
        if main.is_dir():
            for dirpath, dirnames, _files in os.walk(main):
                for name in dirnames:
                    os.chmod(os.path.join(dirpath, name), 0o700)

    def configure_firewall(self) -> None:
        if not self.profile.firewall_step:
            return
        if self.settings.configure_firewall:
            self.firewall.open_ports(BRIDGE_PORTS)
            return
        logger.warning("Firewall configuration skipped. Configure manually if needed")
        logger.warning("Required ports", ports=describe_ports(BRIDGE_PORTS))

    def start(self) -> None:
        p = self.profile
        self.compose.up()
        logger.info("Waiting for services to initialize", seconds=p.initial_wait)
        self.sleep(p.initial_wait)
        self.containers.wait_until_healthy(p.container_name, p.health_attempts, p.health_interval)

    def _admin_enabled(self) -> bool:
        return as_int(self.db.scalar(ADMIN_ENABLED_SQL, {"username": self.settings.fusionpbx.admin_user})) == 1

    def _check_schema(self) -> bool:
        if not is_installed(self.db):
            return False
        try:
            enabled = self._admin_enabled()
        except DatabaseError as exc:
            logger.debug("Admin check failed", error=str(exc))
            enabled = False
        if enabled:
            logger.info("Admin user is ready", user=self.settings.fusionpbx.admin_user)
        else:
            logger.warning("Admin user may need manual verification", user=self.settings.fusionpbx.admin_user)
        return True

    def _check_admin_row(self) -> bool:
        try:
            found = self.db.scalar(ADMIN_EXISTS_SQL, {"username": self.settings.fusionpbx.admin_user})
        except DatabaseError as exc:
            logger.debug("Admin lookup failed", error=str(exc))
            return False
        if found:
            logger.info("Admin user is ready", user=found)
        return bool(found)

    def _check_web(self) -> bool:
        try:
            response = self.http_get(f"https://localhost{INSTALL_PAGE}", verify=False, timeout=10.0)
        except httpx.HTTPError as exc:
            logger.debug("Install page not reachable", error=str(exc))
            return False
        return "already installed" in response.text.lower()

    def wait_for_install(self) -> bool:
        p = self.profile
        check = {
            "schema": self._check_schema,
            "admin_row": self._check_admin_row,
            "web": self._check_web,
        }[p.install_check]

        logger.info("Checking FusionPBX installation status")
        if p.install_wait:
            self.sleep(p.install_wait)
        for attempt in range(1, p.install_attempts + 1):
            if check():
                logger.info("FusionPBX auto-installation completed successfully")
                return True
            logger.info("Waiting for auto-installation", attempt=attempt, attempts=p.install_attempts)
            if attempt < p.install_attempts:
                self.sleep(p.install_interval)

        logger.warning(
            "FusionPBX auto-installation may need manual completion",
            url=f"https://{primary_ip()}:{p.https_port}{INSTALL_PAGE}",
        )
        return False

    def summary(self, installed: Optional[bool]) -> DeploySummary:
        s = self.settings
        return DeploySummary(
            profile=self.profile,
            container_status=self.containers.status_line(self.profile.container_name),
            container_ip=self.containers.ip_address(self.profile.container_name),
            server_ip=primary_ip() if self.profile.name == "host" else "localhost",
            admin_user=s.fusionpbx.admin_user,
            admin_password=self.admin_password,
            db_name=s.db.name,
            db_user=s.db.user,
            compose_cmd=" ".join(self.compose.base_cmd),
            auto_install=_switch(s.auto_install, self.profile.auto_install_default),
            installed=installed,
            enable_https=s.enable_https,
            enable_fail2ban=s.enable_fail2ban,
        )

    def run(self) -> DeploySummary:
        p = self.profile
        logger.info("Starting FusionPBX deployment", profile=p.name)
        self.check_host()
        self.load_environment()
        self.prepare_directories()

        require_docker()
        if self.compose is None:
            self.compose = ComposeProject(
                self.project_dir,
                p.compose_file,
                runner=self.runner,
                compose_cmd=get_docker_compose_cmd(self.runner),
            )
        logger.info("Using Docker Compose command", cmd=" ".join(self.compose.base_cmd))

        self.prepare_image()
        clean = _switch(self.settings.clean_deploy, p.clean_default)
        self.stop_existing(clean)
        self.reset_data_permissions()
        self.configure_firewall()
        self.start()

        installed = None
        if _switch(self.settings.auto_install, p.auto_install_default):
            installed = self.wait_for_install()
        else:
            logger.info("Auto-installation disabled, manual setup required")

        summary = self.summary(installed)
        logger.info("FusionPBX deployment completed", profile=p.name, container=p.container_name)
        return summary
