"""
Container entrypoint for the FusionPBX image.

Brings up PostgreSQL, hands the service directories to their users, starts
supervisord, creates the application database and config.conf, then either
leaves the web setup wizard to the operator or runs the unattended install
(upgrade.php steps plus admin provisioning). Exits with supervisord's code.
"""

import shlex
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

from .admin import AdminProvisioner
from .config import Settings, get_settings
from .database import Database, connect_with_retry, is_installed
from .diagnostics import collect_report, render_report
from .errors import OpsError, PreconditionError
from .logging_config import configure_logging, get_logger
from .shell import Runner, run
from .upgrade import INSTALL_STEPS, upgrade_argv

logger = get_logger(__name__)

PG_BIN = "/usr/lib/postgresql/15/bin"
PG_DATA = Path("/var/lib/postgresql/15/main")
SUPERVISORD = ["/usr/bin/supervisord", "-c", "/etc/supervisor/conf.d/supervisord.conf"]
CONFIG_TEMPLATE = Path("/fusionpbx-config.conf")
CONFIG_PATH = Path("/etc/fusionpbx/config.conf")

OWNERSHIP = (
    ("postgres:postgres", "/var/lib/postgresql"),
    ("www-data:www-data", "/var/www/fusionpbx"),
    ("fusionpbx:fusionpbx", "/usr/local/freeswitch"),
)

FREESWITCH_DIRS = (
    "/etc/freeswitch/autoload_configs",
    "/etc/freeswitch/sip_profiles",
    "/var/lib/freeswitch/db",
    "/var/lib/freeswitch/storage",
    "/usr/share/freeswitch/scripts",
)

LOG_DIRS = (
    "/var/log/supervisor",
    "/var/log/nginx",
    "/var/log/postgresql",
    "/var/log/fusionpbx",
    "/var/log/freeswitch",
)

# /var/log is a volume; services running as their own user need their log dirs
LOG_OWNERSHIP = (
    ("www-data:www-data", "/var/log/fusionpbx"),
    ("fusionpbx:fusionpbx", "/var/log/freeswitch"),
    ("postgres:postgres", "/var/log/postgresql"),
)


def should_use_setup_wizard(auto_install: Optional[bool]) -> bool:
    """Unattended install only when AUTO_INSTALL is explicitly on; otherwise the wizard."""
    return not auto_install


def render_config(template: str, host: str, name: str, user: str, password: str) -> str:
    return (
        template.replace("{database_host}", host)
        .replace("{database_name}", name)
        .replace("{database_username}", user)
        .replace("{database_password}", password)
    )


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _sql_ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class ContainerInitializer:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        runner: Runner = run,
        sleep: Callable[[float], None] = time.sleep,
        spawn: Callable[[List[str]], subprocess.Popen] = subprocess.Popen,
        connect_db: Optional[Callable[[], Database]] = None,
        root: Path = Path("/"),
        startup_wait: float = 10,
        postgres_attempts: int = 30,
        postgres_interval: float = 2,
    ):
        self.settings = settings or get_settings()
        self.runner = runner
        self.sleep = sleep
        self.spawn = spawn
        self._connect_db = connect_db
        self.root = Path(root)
        self.startup_wait = startup_wait
        self.postgres_attempts = postgres_attempts
        self.postgres_interval = postgres_interval
        self._db: Optional[Database] = None

    def _path(self, path) -> Path:
        return self.root / str(path).lstrip("/")

    def _as_postgres(self, command: str, check: bool = False):
        return self.runner(["su", "-", "postgres", "-c", command], check=check)

    @property
    def db(self) -> Database:
        if self._db is None:
            if self._connect_db is not None:
                self._db = self._connect_db()
            else:
                self._db = connect_with_retry(self.settings.db, sleep=self.sleep)
        return self._db

    def init_postgresql(self) -> bool:
        if self._path(PG_DATA).is_dir():
            logger.info("PostgreSQL already initialized")
            return False
        logger.info("Initializing PostgreSQL database cluster")
        self._as_postgres(
            f"{PG_BIN}/initdb -D {PG_DATA} --encoding=UTF-8 --lc-collate=C --lc-ctype=C",
            check=True,
        )
        logger.info("PostgreSQL initialized successfully")
        return True

    def setup_permissions(self) -> None:
        logger.info("Setting up basic permissions")
        for owner, path in OWNERSHIP:
            self.runner(["chown", "-R", owner, str(self._path(path))], check=True)

        for path in FREESWITCH_DIRS:
            self._path(path).mkdir(parents=True, exist_ok=True)
        self.runner(["chown", "-R", "www-data:www-data", str(self._path("/etc/freeswitch"))], check=True)
        self.runner(["chmod", "-R", "775", str(self._path("/etc/freeswitch"))], check=True)

        fusionpbx_etc = self._path("/etc/fusionpbx")
        fusionpbx_etc.mkdir(parents=True, exist_ok=True)
        self.runner(["chown", "-R", "www-data:www-data", str(fusionpbx_etc)], check=True)
        fusionpbx_etc.chmod(0o755)

        cache = self._path("/var/cache/fusionpbx")
        cache.mkdir(parents=True, exist_ok=True)
        self.runner(["chown", "-R", "www-data:www-data", str(cache)], check=True)

        for path in LOG_DIRS:
            self._path(path).mkdir(parents=True, exist_ok=True)
        for owner, path in LOG_OWNERSHIP:
            self.runner(["chown", "-R", owner, str(self._path(path))], check=True)
        logger.info("Basic permissions set successfully")

    def start_services(self) -> subprocess.Popen:
        logger.info("Starting services", cmd=" ".join(SUPERVISORD))
        proc = self.spawn(SUPERVISORD)
        self.sleep(self.startup_wait)
        return proc

    def wait_for_postgres(self) -> int:
        logger.info("Waiting for PostgreSQL to be ready")
        for attempt in range(1, self.postgres_attempts + 1):
            if self._as_postgres("psql -c 'SELECT 1;'").ok:
                logger.info("PostgreSQL is ready", attempt=attempt)
                return attempt
            if attempt < self.postgres_attempts:
                self.sleep(self.postgres_interval)
        raise PreconditionError("PostgreSQL failed to start")

    def setup_database(self) -> Path:
        db = self.settings.db
        logger.info("Setting up database", database=db.name, user=db.user)
        statements = (
            (None, f"CREATE DATABASE {_sql_ident(db.name)};"),
            (None, f"CREATE USER {_sql_ident(db.user)} WITH PASSWORD {_sql_literal(db.password)};"),
            (None, f"GRANT ALL PRIVILEGES ON DATABASE {_sql_ident(db.name)} TO {_sql_ident(db.user)};"),
            (db.name, f"GRANT CREATE ON SCHEMA public TO {_sql_ident(db.user)};"),
        )
        for database, sql in statements:
            cmd = "psql"
            if database:
                cmd += f" -d {shlex.quote(database)}"
            result = self._as_postgres(f"{cmd} -c {shlex.quote(sql)}")
            if not result.ok:
                # already exists on every restart after the first
                logger.debug("Database setup statement skipped", sql=sql.split(" WITH ")[0], error=result.stderr.strip())

        logger.info("Creating FusionPBX configuration", path=str(CONFIG_PATH))
        target = self._path(CONFIG_PATH)
        target.parent.mkdir(parents=True, exist_ok=True)
        template = self._path(CONFIG_TEMPLATE).read_text()
        target.write_text(render_config(template, db.host, db.name, db.user, db.password))
        logger.info("Database setup completed")
        return target

    def _upgrade(self, step: str) -> None:
        self.runner(upgrade_argv(step), check=True, capture=False)

    def provision_admin(self):
        fp = self.settings.fusionpbx
        return AdminProvisioner(self.db, sleep=self.sleep).run(fp.domain, fp.admin_user, fp.admin_password)

    def auto_install(self) -> None:
        fp = self.settings.fusionpbx
        schema, defaults, permissions = INSTALL_STEPS
        logger.info("Auto-install mode, following the official installation order")

        logger.info("Creating database schema")
        self._upgrade(schema)

        logger.info("Creating domain and admin user")
        self.provision_admin()

        logger.info("Setting up application defaults")
        self._upgrade(defaults)

        logger.info("Updating permissions")
        self._upgrade(permissions)

        logger.info("Checking user groups")
        report = collect_report(self.db, fp.domain, fp.admin_user)
        for line in render_report(report, self.settings.db.name).splitlines():
            logger.debug(line)

        logger.info("Ensuring admin user has superadmin group")
        self.provision_admin()

        logger.info(
            "Auto-install completed",
            url="http://localhost/",
            login=f"{fp.admin_user}@{fp.domain}",
            password=fp.admin_password,
        )

    def log_setup_wizard(self) -> None:
        db = self.settings.db
        logger.info("Setup wizard mode, manual configuration required")
        logger.info("Access setup wizard", url="http://localhost/core/install/install.php")
        logger.info(
            "Database credentials",
            host=db.host,
            port=db.port,
            database=db.name,
            username=db.user,
            password=db.password,
        )

    def initialize(self) -> None:
        """Everything after supervisord is up: database, config and install."""
        self.wait_for_postgres()
        self.setup_database()

        if is_installed(self.db):
            logger.info("FusionPBX already installed", url="http://localhost/")
        elif should_use_setup_wizard(self.settings.auto_install):
            self.log_setup_wizard()
        else:
            self.auto_install()
        logger.info("Initialization complete")

    def main(self) -> int:
        logger.info("Starting FusionPBX container initialization")
        self.init_postgresql()
        self.setup_permissions()
        supervisor = self.start_services()
        try:
            self.initialize()
        except OpsError:
            supervisor.terminate()
            supervisor.wait()
            raise
        return supervisor.wait()


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, component="entrypoint")
    try:
        return ContainerInitializer(settings).main()
    except OpsError as exc:
        logger.error("Container initialization failed", error=str(exc))
        return exc.exit_code


if __name__ == "__main__":
    sys.exit(main())
