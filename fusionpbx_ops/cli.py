"""
fusionpbx-ops command line.

    fusionpbx-ops deploy --profile dev
    fusionpbx-ops backup create
    fusionpbx-ops firewall check
    fusionpbx-ops users fix-groups

Reports go to stdout, logs to stderr.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .admin import AdminProvisioner
from .backup import DEFAULT_BASE_DIR, BackupManager, DatabaseDumper, human_size
from .certs import CertificateManager
from .config import get_settings, load_env_file
from .containers import ComposeProject, ContainerManager
from .database import ContainerPsql
from .deploy import PROFILES, Deployer, get_profile
from .diagnostics import collect_report, render_report
from .errors import OpsError
from .firewall import BRIDGE_PORTS, FirewallManager, firewalld_commands, render_status, ufw_commands
from .images import BuildOptions, MultiArchBuilder
from .logging_config import configure_logging, get_logger
from .platforms import detect_os, platform_for_host
from .repair import AdminGroupRepair
from .shell import CommandLog, require_root
from .smoke import health_report, run_smoke_tests, status_report

logger = get_logger(__name__)

ENV_FILES = (".env.production", ".env.prod", ".env")


def _compose(args) -> ComposeProject:
    return ComposeProject(args.project_dir, args.compose_file)


def _psql(args) -> ContainerPsql:
    return ContainerPsql(args.container, get_settings().db)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_deploy(args) -> int:
    summary = Deployer(get_profile(args.profile), args.project_dir).run()
    print(summary.render())
    return 0


def _backup_manager(args) -> BackupManager:
    return BackupManager(
        ContainerManager(),
        _compose(args),
        base_dir=args.base_dir,
        backup_dir=args.backup_dir,
        container_name=args.container,
    )


def cmd_backup_create(args) -> int:
    require_root()
    retention = args.retention_days
    if retention is None:
        retention = get_settings().backup_retention_days
    result = _backup_manager(args).create(retention)
    print(f"Backup file: {result.archive}")
    print(f"Backup size: {human_size(result.size_bytes)}")
    if result.skipped:
        print(f"Skipped (missing or empty): {', '.join(result.skipped)}")
    if result.pruned:
        print(f"Removed {len(result.pruned)} old backup(s)")
    return 0


def cmd_backup_list(args) -> int:
    backups = _backup_manager(args).list_backups()
    if not backups:
        print("No backups found")
        return 0
    for path in backups:
        print(f"{path.name}\t{human_size(path.stat().st_size)}")
    return 0


def _confirm_restore(info: str) -> bool:
    if info:
        print(info)
    print("WARNING: This will replace the current FusionPBX data!")
    answer = input("Are you sure you want to continue? (yes/no): ")
    return answer.strip() == "yes"


def cmd_backup_restore(args) -> int:
    require_root()
    confirm = (lambda _info: True) if args.yes else _confirm_restore
    result = _backup_manager(args).restore(args.archive, confirm)
    if result.cancelled:
        print("Restore cancelled")
        return 0
    if result.safety_backup:
        print(f"Safety backup: {result.safety_backup}")
    if result.missing:
        print(f"Not in archive: {', '.join(result.missing)}")
    return 0


def _dumper(args) -> DatabaseDumper:
    db = get_settings().db
    output_dir = args.output_dir if getattr(args, "output_dir", None) else args.project_dir / "backups"
    return DatabaseDumper(_compose(args), output_dir, service=args.service, db_user=db.user, db_name=db.name)


def cmd_db_dump(args) -> int:
    print(_dumper(args).dump())
    return 0


def cmd_db_load(args) -> int:
    _dumper(args).load(args.path)
    return 0


def cmd_firewall_check(args) -> int:
    st = FirewallManager(containers=ContainerManager()).status(args.container, include_rules=not args.json)
    if args.json:
        _print_json(st.to_dict())
    else:
        print(render_status(st, args.container))
    return 0


def cmd_firewall_open_ports(args) -> int:
    if args.dry_run:
        # show what would run, as the frontend on this host would see it
        log = CommandLog()
        frontend = FirewallManager(runner=log).open_ports(BRIDGE_PORTS)
        commands = log.calls or ufw_commands(BRIDGE_PORTS) + firewalld_commands(BRIDGE_PORTS)
        print(f"# frontend: {frontend or 'none detected'}")
        for cmd in commands:
            print(" ".join(cmd))
        return 0
    require_root()
    frontend = FirewallManager().open_ports(BRIDGE_PORTS)
    return 0 if frontend else 1


def cmd_firewall_restore_iptables(args) -> int:
    require_root()
    platform = platform_for_host(args.project_dir)
    FirewallManager().restore_iptables(platform)
    return 0


def cmd_platform(args) -> int:
    os_info = detect_os()
    platform = platform_for_host(args.project_dir, os_info)
    _print_json({"os": os_info, "platform": platform})
    return 0


def cmd_users_debug(args) -> int:
    settings = get_settings()
    report = collect_report(_psql(args), settings.fusionpbx.domain, settings.fusionpbx.admin_user)
    if args.json:
        _print_json(report.to_dict())
    else:
        print(render_report(report, settings.db.name))
    return 0 if report.healthy else 2


def cmd_users_ensure_admin(args) -> int:
    fp = get_settings().fusionpbx
    result = AdminProvisioner(_psql(args)).run(fp.domain, fp.admin_user, fp.admin_password)
    print(f"Admin user: {fp.admin_user}@{fp.domain} ({result.user_uuid})")
    print(f"Superadmin: {'yes' if result.is_superadmin else 'NO'}")
    return 0 if result.is_superadmin else 1


def cmd_users_fix_groups(args) -> int:
    settings = get_settings()
    repair = AdminGroupRepair(ContainerManager(), _psql(args), settings, container_name=args.container)
    result = repair.run()
    print(render_report(result.after, settings.db.name))
    print("")
    print("Next steps:")
    print("1. Clear browser cache and cookies")
    print(f"2. Logout and login again with {settings.fusionpbx.admin_user}@{settings.fusionpbx.domain}")
    print("3. Check if menu appears")
    return 0


def cmd_image_build(args) -> int:
    options = BuildOptions(
        username=args.username,
        repo=args.repo,
        version=args.version,
        platforms=args.platforms,
        no_cache=args.no_cache,
        build_only=args.build_only,
        push_only=args.push_only,
        builder_name=args.builder,
        context=args.context,
    )
    results = MultiArchBuilder(results_dir=args.project_dir).run(options)
    if results:
        print(results.read_text())
    return 0


def cmd_smoke_test(args) -> int:
    checks = run_smoke_tests(_compose(args), service=args.service)
    for check in checks:
        print(f"{'PASS' if check.passed else 'FAIL'}\t{check.name}\t{check.detail}")
    return 0 if all(c.passed for c in checks) else 1


def _print_sections(sections: dict) -> None:
    for title, body in sections.items():
        print(f"{title.capitalize()}:")
        print(body)
        print("")


def cmd_health(args) -> int:
    _print_sections(health_report(_compose(args), args.service))
    return 0


def cmd_status(args) -> int:
    _print_sections(status_report(_compose(args), args.service))
    return 0


def cmd_ssl_generate(args) -> int:
    path = CertificateManager(args.project_dir, compose=_compose(args)).generate(days=args.days)
    print(path)
    return 0


def cmd_ssl_info(args) -> int:
    for line in CertificateManager(args.project_dir).info():
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fusionpbx-ops",
        description="Deploy, back up and repair a Docker-based FusionPBX installation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Directory holding the compose files and .env (default: current directory)",
    )
    parser.add_argument("--compose-file", default=None, help="Compose file passed to docker compose -f")
    parser.add_argument("--container", default="fusionpbx", help="FusionPBX container name (default: fusionpbx)")
    parser.add_argument("--service", default="fusionpbx", help="Compose service name (default: fusionpbx)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default: LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("deploy", help="Deploy the FusionPBX stack")
    p.add_argument("--profile", choices=sorted(PROFILES), default="host", help="Deploy profile (default: host)")
    p.set_defaults(func=cmd_deploy)

    backup = sub.add_parser("backup", help="Full backup and restore").add_subparsers(dest="action", metavar="ACTION")
    backup.required = True
    for name, func, text in (
        ("create", cmd_backup_create, "Create a backup archive"),
        ("list", cmd_backup_list, "List backup archives"),
        ("restore", cmd_backup_restore, "Restore from a backup archive"),
    ):
        p = backup.add_parser(name, help=text)
        p.add_argument("--base-dir", type=Path, default=DEFAULT_BASE_DIR, help="Deployment data root")
        p.add_argument("--backup-dir", type=Path, default=None, help="Archive directory (default: BASE_DIR/backups)")
        p.set_defaults(func=func)
        if name == "create":
            p.add_argument("--retention-days", type=int, default=None, help="Delete archives older than this")
        if name == "restore":
            p.add_argument("archive", type=Path, help="fusionpbx_backup_*.tar.gz to restore")
            p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    db = sub.add_parser("db", help="Single database dump/load").add_subparsers(dest="action", metavar="ACTION")
    db.required = True
    p = db.add_parser("dump", help="pg_dump the FusionPBX database")
    p.add_argument("--output-dir", type=Path, default=None, help="Directory for the dump (default: ./backups)")
    p.set_defaults(func=cmd_db_dump)
    p = db.add_parser("load", help="Load a SQL file into the FusionPBX database")
    p.add_argument("path", type=Path)
    p.set_defaults(func=cmd_db_load)

    fw = sub.add_parser("firewall", help="Host firewall").add_subparsers(dest="action", metavar="ACTION")
    fw.required = True
    p = fw.add_parser("check", help="Report firewall state and conflicts")
    p.add_argument("--json", action="store_true", help="Machine readable output")
    p.set_defaults(func=cmd_firewall_check)
    p = fw.add_parser("open-ports", help="Open the FusionPBX ports with ufw or firewalld")
    p.add_argument("--dry-run", action="store_true", help="Print the commands instead of running them")
    p.set_defaults(func=cmd_firewall_open_ports)
    p = fw.add_parser("restore-iptables", help="Replace the host firewall with persistent iptables rules")
    p.set_defaults(func=cmd_firewall_restore_iptables)

    p = sub.add_parser("platform", help="Show detected host OS and platform entry")
    p.set_defaults(func=cmd_platform)

    users = sub.add_parser("users", help="Admin user and group tools").add_subparsers(dest="action", metavar="ACTION")
    users.required = True
    p = users.add_parser("debug", help="User/group diagnostics report")
    p.add_argument("--json", action="store_true", help="Machine readable output")
    p.set_defaults(func=cmd_users_debug)
    p = users.add_parser("ensure-admin", help="Create the admin user and superadmin membership if missing")
    p.set_defaults(func=cmd_users_ensure_admin)
    p = users.add_parser("fix-groups", help="Repair an admin user that sees no menu")
    p.set_defaults(func=cmd_users_fix_groups)

    image = sub.add_parser("image", help="Image builds").add_subparsers(dest="action", metavar="ACTION")
    image.required = True
    p = image.add_parser("build", help="Multi-architecture build and push with buildx")
    p.add_argument("-u", "--username", required=True, help="Docker Hub username")
    p.add_argument("-r", "--repo", default="fusionpbx", help="Repository name (default: fusionpbx)")
    p.add_argument("-v", "--version", dest="version", default="5.4", help="Version tag (default: 5.4)")
    p.add_argument("-p", "--platforms", default="linux/amd64,linux/arm64", help="Target platforms")
    p.add_argument("--no-cache", action="store_true", help="Build without cache")
    p.add_argument("--build-only", action="store_true", help="Build without pushing")
    p.add_argument("--push-only", action="store_true", help="Push existing local images")
    p.add_argument("--builder", default="fusionpbx-multiarch", help="buildx builder name")
    p.add_argument("--context", default=".", help="Build context (default: .)")
    p.set_defaults(func=cmd_image_build)

    sub.add_parser("smoke-test", help="Container, web and FreeSWITCH checks").set_defaults(func=cmd_smoke_test)
    sub.add_parser("health", help="Service, port, disk and memory report").set_defaults(func=cmd_health)
    sub.add_parser("status", help="Compose and supervisord status").set_defaults(func=cmd_status)

    ssl = sub.add_parser("ssl", help="Self-signed certificate").add_subparsers(dest="action", metavar="ACTION")
    ssl.required = True
    p = ssl.add_parser("generate", help="Generate a self-signed certificate and restart the stack")
    p.add_argument("--days", type=int, default=365)
    p.set_defaults(func=cmd_ssl_generate)
    p = ssl.add_parser("info", help="Show certificate subject and validity")
    p.set_defaults(func=cmd_ssl_info)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.project_dir = args.project_dir.resolve()

    configure_logging(args.log_level or os.environ.get("LOG_LEVEL", "INFO"), json_logs=args.json_logs, component="cli")
    if args.command != "deploy":
        # deploy profiles pick their own env file
        load_env_file(args.project_dir, ENV_FILES)

    try:
        return args.func(args)
    except OpsError as exc:
        logger.error("Command failed", command=args.command, error=str(exc))
        return exc.exit_code
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
