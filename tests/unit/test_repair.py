"""
Unit tests for the admin group repair flow.
"""

from unittest.mock import call

import pytest
from conftest import FakeDatabase

from fusionpbx_ops.admin import AdminProvisioner
from fusionpbx_ops.errors import OpsError, PreconditionError
from fusionpbx_ops.repair import PHP_FPM_BINARY, PHP_FPM_STOP_WAIT, AdminGroupRepair
from fusionpbx_ops.shell import CommandLog, CommandResult
from fusionpbx_ops.upgrade import upgrade_argv


def _repair(containers, settings, sleep, db):
    provisioner = AdminProvisioner(db, group_attempts=1, sleep=sleep)
    return AdminGroupRepair(containers, db, settings, provisioner=provisioner, sleep=sleep)


class TestAdminGroupRepair:
    """Upgrade steps, provisioning and the forced membership"""

    def test_requires_running_container(self, containers, settings, sleep):
        containers.is_running.return_value = False
        db = FakeDatabase()

        with pytest.raises(PreconditionError):
            _repair(containers, settings, sleep, db).run()
        assert db.queries == []

    def test_missing_membership_is_inserted(self, containers, settings, sleep):
        db = FakeDatabase(scalars={
            "SELECT domain_uuid FROM v_domains": "domain-1",
            "SELECT user_uuid FROM v_users": "user-1",
            "SELECT u.user_uuid FROM v_users": "user-1",
            "COUNT(*) FROM v_groups": 1,
            "COUNT(*) FROM v_user_groups": 0,
            "SELECT group_uuid FROM v_groups": "group-1",
        })

        result = _repair(containers, settings, sleep, db).run()

        assert result.user_uuid == "user-1"
        assert result.manually_assigned
        assert result.before is not None and result.after is not None
        forced = db.executed[-1]
        assert "ON CONFLICT DO NOTHING" in forced[0]
        assert forced[1]["group_uuid"] == "group-1"
        assert forced[1]["domain_uuid"] == "domain-1"

        exec_calls = containers.exec.call_args_list
        assert exec_calls[0] == call("fusionpbx", upgrade_argv("--permissions"), check=True)
        assert exec_calls[1] == call("fusionpbx", upgrade_argv("--menu"), check=True)
        assert "/var/cache/fusionpbx" in exec_calls[2].args[1][2]
        assert exec_calls[3] == call("fusionpbx", ["pkill", "-f", "php-fpm"])

    def test_existing_membership_is_kept(self, containers, settings, sleep):
        db = FakeDatabase(scalars={
            "SELECT domain_uuid FROM v_domains": "domain-1",
            "SELECT user_uuid FROM v_users": "user-1",
            "SELECT u.user_uuid FROM v_users": "user-1",
            "COUNT(*) FROM v_groups": 1,
            "COUNT(*) FROM v_user_groups": 1,
        })

        result = _repair(containers, settings, sleep, db).run()

        assert not result.manually_assigned
        assert result.provisioning.already_member
        assert db.executed == []

    def test_missing_admin_uuid(self, containers, settings, sleep):
        db = FakeDatabase(scalars={
            "SELECT domain_uuid FROM v_domains": "domain-1",
            "SELECT user_uuid FROM v_users": "user-1",
            "COUNT(*) FROM v_groups": 1,
            "COUNT(*) FROM v_user_groups": 1,
        })

        with pytest.raises(OpsError, match="admin user UUID"):
            _repair(containers, settings, sleep, db).run()

    def test_missing_group_uuid(self, containers, settings, sleep):
        db = FakeDatabase(scalars={"COUNT(*) FROM v_user_groups": 0})

        with pytest.raises(OpsError, match="superadmin group UUID"):
            _repair(containers, settings, sleep, db).ensure_membership("user-1")


class TestRestartPhpFpm:
    """pkill, wait, then start only if supervisord did not bring it back"""

    def _exec_log(self, containers, results):
        log = CommandLog(results=results)
        containers.exec.side_effect = lambda name, cmd, check=False, **kwargs: log(cmd)
        return log

    def test_starts_daemon_when_nothing_restarted_it(self, containers, settings, sleep):
        log = self._exec_log(containers, {"pgrep": CommandResult([], 1)})

        _repair(containers, settings, sleep, FakeDatabase()).restart_php_fpm()

        assert log.calls == [
            ["pkill", "-f", "php-fpm"],
            ["pgrep", "php-fpm"],
            [PHP_FPM_BINARY, "-D"],
        ]
        sleep.assert_called_once_with(PHP_FPM_STOP_WAIT)
        assert containers.exec.call_args_list[-1].kwargs == {"check": True}

    def test_no_shell_carries_the_pkill_pattern(self, containers, settings, sleep):
        log = self._exec_log(containers, {"pgrep": CommandResult([], 1)})

        _repair(containers, settings, sleep, FakeDatabase()).restart_php_fpm()

        for argv in log.calls:
            assert argv[0] not in ("bash", "sh")
            if argv[0] != "pkill":
                assert "pkill" not in " ".join(argv)

    def test_pkill_finding_nothing_is_not_an_error(self, containers, settings, sleep):
        log = self._exec_log(containers, {"pkill": CommandResult([], 1), "pgrep": CommandResult([], 1)})

        _repair(containers, settings, sleep, FakeDatabase()).restart_php_fpm()

        assert log.calls[-1] == [PHP_FPM_BINARY, "-D"]
        assert containers.exec.call_args_list[0].kwargs == {}

    def test_supervisord_already_restarted_it(self, containers, settings, sleep):
        log = self._exec_log(containers, {})

        _repair(containers, settings, sleep, FakeDatabase()).restart_php_fpm()

        assert log.calls == [["pkill", "-f", "php-fpm"], ["pgrep", "php-fpm"]]
