"""
Repair for an admin user that can log in but sees no menu.

Usually caused by the installer leaving the admin without a superadmin
membership, or by missing permissions/menu rows. Re-runs FusionPBX's upgrade
steps, re-provisions the admin, forces the membership if still missing, then
clears the PHP caches.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from .admin import SUPERADMIN_GROUP, AdminProvisioner, AdminSetupResult
from .config import Settings
from .containers import ContainerManager
from .database import Database, as_int
from .diagnostics import UserGroupReport, collect_report, render_report
from .errors import OpsError, PreconditionError
from .logging_config import get_logger
from .upgrade import upgrade_argv

logger = get_logger(__name__)

CACHE_DIRS = ("/var/cache/fusionpbx", "/tmp/fusionpbx_cache")
PHP_FPM_BINARY = "/usr/sbin/php-fpm8.2"
PHP_FPM_STOP_WAIT = 2


@dataclass
class RepairResult:
    user_uuid: Optional[str] = None
    manually_assigned: bool = False
    provisioning: Optional[AdminSetupResult] = None
    before: Optional[UserGroupReport] = None
    after: Optional[UserGroupReport] = None


class AdminGroupRepair:
    def __init__(
        self,
        containers: ContainerManager,
        db: Database,
        settings: Settings,
        container_name: str = "fusionpbx",
        provisioner: Optional[AdminProvisioner] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.containers = containers
        self.db = db
        self.settings = settings
        self.container_name = container_name
        self.provisioner = provisioner or AdminProvisioner(db)
        self.sleep = sleep

    @property
    def domain(self) -> str:
        return self.settings.fusionpbx.domain

    @property
    def username(self) -> str:
        return self.settings.fusionpbx.admin_user

    def _report(self) -> UserGroupReport:
        report = collect_report(self.db, self.domain, self.username)
        for line in render_report(report, self.settings.db.name).splitlines():
            logger.debug(line)
        logger.info(
            "User groups report",
            users=len(report.users),
            memberships=len(report.user_groups),
            admin_groups=[g["group_name"] for g in report.admin_groups],
            problems=len(report.recommendations),
        )
        return report

    def _upgrade(self, step: str) -> None:
        self.containers.exec(self.container_name, upgrade_argv(step), check=True)

    def find_admin_uuid(self) -> Optional[str]:
        value = self.db.scalar(
            "SELECT u.user_uuid FROM v_users u "
            "JOIN v_domains d ON u.domain_uuid = d.domain_uuid "
            "WHERE u.username = %(username)s AND d.domain_name = %(domain)s",
            {"username": self.username, "domain": self.domain},
        )
        return str(value) if value else None

    def ensure_membership(self, user_uuid: str) -> bool:
        """Insert the superadmin membership if the user has none. Returns True when inserted."""
        count = as_int(self.db.scalar(
            "SELECT COUNT(*) FROM v_user_groups "
            "WHERE user_uuid = %(user_uuid)s AND group_name = %(group_name)s",
            {"user_uuid": user_uuid, "group_name": SUPERADMIN_GROUP},
        ))
        logger.info("Current superadmin assignments", count=count)
        if count:
            logger.info("Admin user already has superadmin group")
            return False

        logger.warning("Admin user has no superadmin group, assigning manually")
        domain_uuid = self.db.scalar(
            "SELECT domain_uuid FROM v_domains WHERE domain_name = %(domain)s",
            {"domain": self.domain},
        )
        group_uuid = self.provisioner.superadmin_group_uuid()
        if not group_uuid:
            raise OpsError("Could not find superadmin group UUID")

        self.db.execute(
            "INSERT INTO v_user_groups (user_group_uuid, domain_uuid, group_name, group_uuid, user_uuid) "
            "VALUES (%(user_group_uuid)s, %(domain_uuid)s, %(group_name)s, %(group_uuid)s, %(user_uuid)s) "
            "ON CONFLICT DO NOTHING",
            {
                "user_group_uuid": str(self.provisioner.uuid_factory()),
                "domain_uuid": domain_uuid,
                "group_name": SUPERADMIN_GROUP,
                "group_uuid": group_uuid,
                "user_uuid": user_uuid,
            },
        )
        logger.info("Superadmin group assigned manually")
        return True

    def clear_cache(self) -> None:
        script = "; ".join(f"rm -rf {d}/* 2>/dev/null || true" for d in CACHE_DIRS)
        self.containers.exec(self.container_name, ["bash", "-c", script])

    def restart_php_fpm(self) -> None:
        # No wrapping shell: its own command line would match `pkill -f php-fpm`.
        self.containers.exec(self.container_name, ["pkill", "-f", "php-fpm"])
        self.sleep(PHP_FPM_STOP_WAIT)
        if self.containers.exec(self.container_name, ["pgrep", "php-fpm"]).ok:
            logger.info("PHP-FPM restarted by supervisord")
            return
        self.containers.exec(self.container_name, [PHP_FPM_BINARY, "-D"], check=True)

    def run(self) -> RepairResult:
        logger.info("Fixing admin user groups", login=f"{self.username}@{self.domain}")
        if not self.containers.is_running(self.container_name):
            raise PreconditionError("FusionPBX container is not running")

        result = RepairResult()

        logger.info("Step 1: Debugging current user groups")
        result.before = self._report()

        logger.info("Step 2: Running upgrade permissions")
        self._upgrade("--permissions")

        logger.info("Step 3: Running upgrade menu")
        self._upgrade("--menu")

        logger.info("Step 4: Provisioning admin user and groups")
        fpbx = self.settings.fusionpbx
        result.provisioning = self.provisioner.run(fpbx.domain, fpbx.admin_user, fpbx.admin_password)

        logger.info("Step 5: Manual group assignment check")
        result.user_uuid = self.find_admin_uuid()
        if not result.user_uuid:
            raise OpsError("Could not find admin user UUID")
        logger.info("Admin user UUID", user_uuid=result.user_uuid)
        result.manually_assigned = self.ensure_membership(result.user_uuid)

        logger.info("Step 6: Final verification")
        result.after = self._report()

        logger.info("Step 7: Clearing cache")
        self.clear_cache()

        logger.info("Step 8: Restarting PHP-FPM")
        self.restart_php_fpm()

        logger.info("Admin user groups fix completed", login=f"{self.username}@{self.domain}")
        return result
