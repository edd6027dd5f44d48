"""User / group diagnostics report for a FusionPBX database."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .admin import SUPERADMIN_GROUP
from .database import Database, as_int
from .logging_config import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]


@dataclass
class UserGroupReport:
    domain: str
    username: str
    domains: List[Row] = field(default_factory=list)
    users: List[Row] = field(default_factory=list)
    groups: List[Row] = field(default_factory=list)
    user_groups: List[Row] = field(default_factory=list)
    admin_user: Optional[Row] = None
    admin_groups: List[Row] = field(default_factory=list)
    superadmin_permissions: List[str] = field(default_factory=list)
    superadmin_permission_total: int = 0
    menu_item_count: int = 0

    @property
    def recommendations(self) -> List[str]:
        out = []
        if not self.user_groups:
            out.append("CRITICAL: No user groups assigned. Run upgrade.php --permissions")
        if self.admin_user and not self.admin_groups:
            out.append("CRITICAL: Admin user has no groups. Need to assign superadmin group.")
        if not self.superadmin_permissions:
            out.append("CRITICAL: No permissions found. Run upgrade.php --permissions")
        if self.menu_item_count == 0:
            out.append("CRITICAL: No menu items. Run upgrade.php --menu")
        return out

    @property
    def healthy(self) -> bool:
        return not self.recommendations

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["recommendations"] = self.recommendations
        return data


def collect_report(db: Database, domain: str, username: str) -> UserGroupReport:
    report = UserGroupReport(domain=domain, username=username)

    report.domains = db.rows(
        "SELECT domain_uuid, domain_name, domain_enabled FROM v_domains ORDER BY domain_name"
    )
    report.users = db.rows(
        "SELECT u.user_uuid, u.username, u.user_enabled, d.domain_name "
        "FROM v_users u JOIN v_domains d ON u.domain_uuid = d.domain_uuid "
        "ORDER BY u.username"
    )
    report.groups = db.rows(
        "SELECT group_uuid, group_name, group_level, group_description, domain_uuid "
        "FROM v_groups ORDER BY group_level DESC, group_name"
    )
    report.user_groups = db.rows(
        "SELECT u.username, d.domain_name, ug.group_name, g.group_level, g.group_description "
        "FROM v_user_groups ug "
        "JOIN v_users u ON ug.user_uuid = u.user_uuid "
        "JOIN v_domains d ON u.domain_uuid = d.domain_uuid "
        "JOIN v_groups g ON ug.group_uuid = g.group_uuid "
        "ORDER BY u.username, g.group_level DESC"
    )
    report.admin_user = db.row(
        "SELECT u.user_uuid, u.username, u.user_enabled, d.domain_name, d.domain_uuid "
        "FROM v_users u JOIN v_domains d ON u.domain_uuid = d.domain_uuid "
        "WHERE u.username = %(username)s AND d.domain_name = %(domain)s",
        {"username": username, "domain": domain},
    )
    if report.admin_user:
        report.admin_groups = db.rows(
            "SELECT ug.group_name, g.group_level, g.group_description, ug.user_group_uuid "
            "FROM v_user_groups ug JOIN v_groups g ON ug.group_uuid = g.group_uuid "
            "WHERE ug.user_uuid = %(user_uuid)s ORDER BY g.group_level DESC",
            {"user_uuid": report.admin_user["user_uuid"]},
        )

    permissions = db.rows(
        "SELECT group_name, permission_name FROM v_group_permissions "
        "WHERE group_name = %(group_name)s LIMIT 10",
        {"group_name": SUPERADMIN_GROUP},
    )
    report.superadmin_permissions = [p["permission_name"] for p in permissions]
    if permissions:
        report.superadmin_permission_total = as_int(db.scalar(
            "SELECT COUNT(*) FROM v_group_permissions WHERE group_name = %(group_name)s",
            {"group_name": SUPERADMIN_GROUP},
        ))

    report.menu_item_count = as_int(db.scalar("SELECT COUNT(*) FROM v_menu_items"))

    for line in report.recommendations:
        logger.warning("User group check", recommendation=line)
    return report


def render_report(report: UserGroupReport, database_name: str = "") -> str:
    lines = [
        "=== FusionPBX User Groups Debug ===",
        f"Domain: {report.domain}",
        f"Admin User: {report.username}",
    ]
    if database_name:
        lines.append(f"Database: {database_name}")
    lines.append("")

    lines.append("=== DOMAINS ===")
    for d in report.domains:
        lines.append(f"Domain: {d['domain_name']} (UUID: {d['domain_uuid']}, Enabled: {d['domain_enabled']})")
    lines.append("")

    lines.append("=== USERS ===")
    for u in report.users:
        lines.append(f"User: {u['username']}@{u['domain_name']} (UUID: {u['user_uuid']}, Enabled: {u['user_enabled']})")
    lines.append("")

    lines.append("=== GROUPS ===")
    for g in report.groups:
        lines.append(f"Group: {g['group_name']} (Level: {g['group_level']}, UUID: {g['group_uuid']})")
        lines.append(f"  Description: {g['group_description']}")
    lines.append("")

    lines.append("=== USER GROUPS ===")
    if not report.user_groups:
        lines.append("NO USER GROUPS FOUND!")
    for ug in report.user_groups:
        lines.append(
            f"User: {ug['username']}@{ug['domain_name']} -> Group: {ug['group_name']} (Level: {ug['group_level']})"
        )
    lines.append("")

    lines.append("=== ADMIN USER DETAILS ===")
    admin = report.admin_user
    if admin:
        lines += [
            "Admin User Found:",
            f"  Username: {admin['username']}",
            f"  Domain: {admin['domain_name']}",
            f"  User UUID: {admin['user_uuid']}",
            f"  Domain UUID: {admin['domain_uuid']}",
            f"  Enabled: {admin['user_enabled']}",
            "",
            "Admin User Groups:",
        ]
        if not report.admin_groups:
            lines.append("  NO GROUPS ASSIGNED TO ADMIN USER!")
        for g in report.admin_groups:
            lines.append(f"  {g['group_name']} (Level: {g['group_level']})")
    else:
        lines.append(f"Admin user not found: {report.username}@{report.domain}")
    lines.append("")

    lines.append("=== GROUP PERMISSIONS ===")
    if not report.superadmin_permissions:
        lines.append("NO PERMISSIONS FOUND FOR SUPERADMIN GROUP!")
    else:
        lines.append("Superadmin permissions (first 10):")
        lines += [f"  - {name}" for name in report.superadmin_permissions]
        lines.append(f"  Total superadmin permissions: {report.superadmin_permission_total}")
    lines.append("")

    lines.append("=== MENU ITEMS ===")
    lines.append(f"Total menu items: {report.menu_item_count}")
    if report.menu_item_count == 0:
        lines.append("NO MENU ITEMS FOUND!")
    lines.append("")

    lines.append("=== RECOMMENDATIONS ===")
    lines += report.recommendations or ["No problems found"]
    return "\n".join(lines) + "\n"
