"""
Admin user provisioning.

Converges the FusionPBX database on "domain exists, admin user exists, admin
user is a member of the superadmin group". Mirrors what the upstream installer
(finish.sh) does, for the cases where the installer leaves the admin without
a group and the web UI shows an empty menu.

Every step is check-then-insert, so running it repeatedly is safe.
"""

import hashlib
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .database import Database, as_int
from .errors import DatabaseError
from .logging_config import get_logger

logger = get_logger(__name__)

SUPERADMIN_GROUP = "superadmin"


def hash_password(salt: str, password: str) -> str:
    """FusionPBX legacy hash: md5(salt + password) as hex."""
    return hashlib.md5((salt + password).encode("utf-8")).hexdigest()


@dataclass
class AdminSetupResult:
    domain_uuid: str
    user_uuid: Optional[str] = None
    domain_created: bool = False
    user_created: bool = False
    group_created: bool = False
    group_assigned: bool = False
    already_member: bool = False
    groups: List[Dict[str, str]] = field(default_factory=list)

    @property
    def is_superadmin(self) -> bool:
        return self.already_member or self.group_assigned


class AdminProvisioner:
    """Creates the domain, the admin user and the superadmin membership when missing."""

    def __init__(
        self,
        db: Database,
        group_attempts: int = 10,
        group_delay: float = 3,
        sleep: Callable[[float], None] = time.sleep,
        uuid_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ):
        self.db = db
        self.group_attempts = group_attempts
        self.group_delay = group_delay
        self.sleep = sleep
        self.uuid_factory = uuid_factory

    def _new_uuid(self) -> str:
        return str(self.uuid_factory())

    def ensure_domain(self, domain_name: str) -> Tuple[str, bool]:
        domain_uuid = self.db.scalar(
            "SELECT domain_uuid FROM v_domains WHERE domain_name = %(domain_name)s",
            {"domain_name": domain_name},
        )
        if domain_uuid:
            return str(domain_uuid), False

        domain_uuid = self._new_uuid()
        logger.info("Creating domain", domain=domain_name)
        self.db.execute(
            "INSERT INTO v_domains (domain_uuid, domain_name, domain_enabled) "
            "VALUES (%(domain_uuid)s, %(domain_name)s, 'true')",
            {"domain_uuid": domain_uuid, "domain_name": domain_name},
        )
        return domain_uuid, True

    def find_user(self, domain_uuid: str, username: str) -> Optional[str]:
        user_uuid = self.db.scalar(
            "SELECT user_uuid FROM v_users "
            "WHERE username = %(username)s AND domain_uuid = %(domain_uuid)s",
            {"username": username, "domain_uuid": domain_uuid},
        )
        return str(user_uuid) if user_uuid else None

    def ensure_user(self, domain_uuid: str, username: str, password: str) -> Tuple[str, bool]:
        user_uuid = self.find_user(domain_uuid, username)
        if user_uuid:
            logger.info("Admin user already exists", username=username)
            return user_uuid, False

        user_uuid = self._new_uuid()
        salt = self._new_uuid()
        logger.info("Creating admin user", username=username)
        self.db.execute(
            "INSERT INTO v_users (user_uuid, domain_uuid, username, password, salt, user_enabled) "
            "VALUES (%(user_uuid)s, %(domain_uuid)s, %(username)s, %(password)s, %(salt)s, 'true')",
            {
                "user_uuid": user_uuid,
                "domain_uuid": domain_uuid,
                "username": username,
                "password": hash_password(salt, password),
                "salt": salt,
            },
        )
        return user_uuid, True

    def wait_for_superadmin_group(self) -> bool:
        """Wait for the upgrade step to seed the superadmin group."""
        for attempt in range(1, self.group_attempts + 1):
            try:
                count = as_int(self.db.scalar(
                    "SELECT COUNT(*) FROM v_groups WHERE group_name = %(group_name)s",
                    {"group_name": SUPERADMIN_GROUP},
                ))
                if count > 0:
                    logger.info("Groups table ready", superadmin_groups=count)
                    return True
                logger.warning(
                    "Groups table not ready, waiting",
                    attempt=attempt,
                    attempts=self.group_attempts,
                )
            except DatabaseError as exc:
                logger.warning("Groups table error", attempt=attempt, error=str(exc))
            if attempt < self.group_attempts:
                self.sleep(self.group_delay)
        return False

    def create_superadmin_group(self, domain_uuid: str) -> bool:
        try:
            self.db.execute(
                "INSERT INTO v_groups "
                "(group_uuid, domain_uuid, group_name, group_level, group_description, group_protected) "
                "VALUES (%(group_uuid)s, %(domain_uuid)s, %(group_name)s, '10', 'Super Administrator', 'true') "
                "ON CONFLICT (group_name, domain_uuid) DO NOTHING",
                {
                    "group_uuid": self._new_uuid(),
                    "domain_uuid": domain_uuid,
                    "group_name": SUPERADMIN_GROUP,
                },
            )
        except DatabaseError as exc:
            logger.error("Failed to create superadmin group", error=str(exc))
            return False
        logger.info("Superadmin group created or already present")
        return True

    def superadmin_count(self, user_uuid: str) -> int:
        return as_int(self.db.scalar(
            "SELECT COUNT(*) FROM v_user_groups "
            "WHERE user_uuid = %(user_uuid)s AND group_name = %(group_name)s",
            {"user_uuid": user_uuid, "group_name": SUPERADMIN_GROUP},
        ))

    def superadmin_group_uuid(self) -> Optional[str]:
        group_uuid = self.db.scalar(
            "SELECT group_uuid FROM v_groups WHERE group_name = %(group_name)s LIMIT 1",
            {"group_name": SUPERADMIN_GROUP},
        )
        return str(group_uuid) if group_uuid else None

    def user_groups(self, user_uuid: str) -> List[Dict[str, str]]:
        return self.db.rows(
            "SELECT ug.group_name, g.group_level FROM v_user_groups ug "
            "JOIN v_groups g ON ug.group_uuid = g.group_uuid "
            "WHERE ug.user_uuid = %(user_uuid)s",
            {"user_uuid": user_uuid},
        )

    def assign_superadmin(self, domain_uuid: str, user_uuid: str) -> bool:
        group_uuid = self.superadmin_group_uuid()
        if not group_uuid:
            logger.warning("Superadmin group UUID not found")
            return False

        logger.info("Assigning superadmin group", group_uuid=group_uuid, user_uuid=user_uuid)
        try:
            self.db.execute(
                "INSERT INTO v_user_groups (user_group_uuid, domain_uuid, group_name, group_uuid, user_uuid) "
                "VALUES (%(user_group_uuid)s, %(domain_uuid)s, %(group_name)s, %(group_uuid)s, %(user_uuid)s)",
                {
                    "user_group_uuid": self._new_uuid(),
                    "domain_uuid": domain_uuid,
                    "group_name": SUPERADMIN_GROUP,
                    "group_uuid": group_uuid,
                    "user_uuid": user_uuid,
                },
            )
        except DatabaseError as exc:
            logger.error("Error assigning superadmin group", error=str(exc))
            return False

        verified = self.superadmin_count(user_uuid)
        if verified <= 0:
            logger.error("Failed to verify superadmin group assignment")
            return False
        logger.info("Superadmin group assignment verified", count=verified)
        return True

    def run(self, domain_name: str, username: str, password: str) -> AdminSetupResult:
        logger.info("Provisioning FusionPBX admin user", domain=domain_name, username=username)

        domain_uuid, domain_created = self.ensure_domain(domain_name)
        result = AdminSetupResult(domain_uuid=domain_uuid, domain_created=domain_created)

        result.user_uuid, result.user_created = self.ensure_user(domain_uuid, username, password)
        if result.user_created:
            logger.info("Admin user created", login=f"{username}@{domain_name}")

        groups_ready = self.wait_for_superadmin_group()
        if not groups_ready:
            logger.error(
                "Groups table not ready, forcing group creation",
                attempts=self.group_attempts,
            )
            groups_ready = result.group_created = self.create_superadmin_group(domain_uuid)

        if groups_ready:
            current = self.superadmin_count(result.user_uuid)
            if current:
                result.already_member = True
                logger.info("User already has superadmin permissions", count=current)
            else:
                result.group_assigned = self.assign_superadmin(domain_uuid, result.user_uuid)
            result.groups = self.user_groups(result.user_uuid)
            logger.info("User groups", groups=result.groups)

        logger.info("Admin user setup completed", superadmin=result.is_superadmin)
        return result
