"""
Unit tests for the deploy profiles and the Deployer steps.

Docker, compose and the firewall are mocks; data directories live in tmp_path.
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest
from conftest import FakeDatabase, Seq

from fusionpbx_ops.config import DEFAULT_IMAGE, LOCAL_IMAGE_TAG, Settings
from fusionpbx_ops.containers import ComposeProject
from fusionpbx_ops.deploy import PROFILES, DATA_SUBDIRS, Deployer, get_profile
from fusionpbx_ops.errors import PreconditionError
from fusionpbx_ops.firewall import BRIDGE_PORTS
from fusionpbx_ops.shell import CommandLog, CommandResult


@pytest.fixture(autouse=True)
def _no_host_calls():
    with patch("fusionpbx_ops.deploy.chown_recursive") as chown, \
            patch("fusionpbx_ops.deploy.primary_ip", return_value="10.0.0.5"):
        yield chown


@pytest.fixture
def compose():
    mock = MagicMock(spec=ComposeProject)
    mock.env = {}
    mock.base_cmd = ["docker", "compose", "-f", "docker-compose.dev.yml"]
    return mock


def _host_profile(tmp_path):
    return dataclasses.replace(PROFILES["host"], data_root=str(tmp_path / "opt"))


def _deployer(profile, tmp_path, settings, containers, compose=None, **kwargs):
    kwargs.setdefault("sleep", MagicMock())
    kwargs.setdefault("os_name", "linux")
    kwargs.setdefault("is_root", MagicMock())
    kwargs.setdefault("firewall", MagicMock())
    return Deployer(profile, tmp_path, settings=settings, containers=containers, compose=compose, **kwargs)


class TestProfiles:
    def test_known_profiles(self):
        assert get_profile("dev").compose_file == "docker-compose.dev.yml"
        assert get_profile("prod").build_tag == DEFAULT_IMAGE
        assert get_profile("host").data_root == "/opt/fusionpbx"
        assert len(get_profile("dev").clean_volumes) == len(DATA_SUBDIRS)

    def test_unknown_profile(self):
        with pytest.raises(PreconditionError, match="expected one of: dev, host, prod"):
            get_profile("staging")


class TestHostChecks:
    def test_host_profile_requires_root(self, tmp_path, settings, containers):
        is_root = MagicMock(side_effect=PreconditionError("This script must be run as root"))
        with pytest.raises(PreconditionError):
            _deployer(PROFILES["host"], tmp_path, settings, containers, is_root=is_root).check_host()

    @pytest.mark.parametrize("name,allowed", [("host", False), ("prod", False), ("dev", True)])
    def test_macos(self, tmp_path, settings, containers, name, allowed):
        deployer = _deployer(PROFILES[name], tmp_path, settings, containers, os_name="macos")
        if allowed:
            deployer.check_host()
        else:
            with pytest.raises(PreconditionError, match="dev profile"):
                deployer.check_host()

    def test_dev_password_fallback(self, tmp_path, settings, containers, monkeypatch):
        deployer = _deployer(PROFILES["dev"], tmp_path, settings, containers)
        assert deployer.admin_password == "admin123"
        monkeypatch.setenv("FUSIONPBX_ADMIN_PASSWORD", "pw")
        assert deployer.admin_password == "pw"

    def test_relative_data_root(self, tmp_path, settings, containers):
        assert _deployer(PROFILES["dev"], tmp_path, settings, containers).data_root == tmp_path / "dev-data"
        assert _deployer(PROFILES["prod"], tmp_path, settings, containers).data_root is None


class TestPrepareImage:
    """Build, skip or pull, by switch then profile default"""

    def test_dev_builds_by_default(self, tmp_path, settings, containers, compose):
        _deployer(PROFILES["dev"], tmp_path, settings, containers, compose).prepare_image()
        containers.build.assert_called_once_with(tmp_path, LOCAL_IMAGE_TAG)
        containers.pull.assert_not_called()

    def test_host_build_points_compose_at_local_tag(self, tmp_path, containers, compose):
        settings = Settings(build_image=True)
        _deployer(_host_profile(tmp_path), tmp_path, settings, containers, compose).prepare_image()
        assert compose.env["FUSIONPBX_IMAGE"] == LOCAL_IMAGE_TAG

    def test_skip_pull(self, tmp_path, containers, compose):
        _deployer(PROFILES["prod"], tmp_path, Settings(skip_pull=True), containers, compose).prepare_image()
        containers.pull.assert_not_called()
        containers.build.assert_not_called()

    def test_dev_pull_is_tagged_locally(self, tmp_path, containers, compose):
        _deployer(PROFILES["dev"], tmp_path, Settings(build_image=False), containers, compose).prepare_image()
        containers.pull.assert_called_once_with(DEFAULT_IMAGE)
        containers.tag.assert_called_once_with(DEFAULT_IMAGE, LOCAL_IMAGE_TAG)

    def test_prod_pull_is_not_tagged(self, tmp_path, settings, containers, compose):
        _deployer(PROFILES["prod"], tmp_path, settings, containers, compose).prepare_image()
        containers.pull.assert_called_once_with(DEFAULT_IMAGE)
        containers.tag.assert_not_called()


class TestStopExisting:
    def test_dev_clean_removes_everything(self, tmp_path, settings, containers, compose):
        deployer = _deployer(PROFILES["dev"], tmp_path, settings, containers, compose)
        deployer.prepare_directories()
        (tmp_path / "dev-data" / "config" / "old.conf").write_text("x")

        deployer.stop_existing(clean=True)

        assert compose.down.call_args_list[0].kwargs == {"ignore_errors": True}
        assert compose.down.call_args_list[1].kwargs == {"volumes": True, "ignore_errors": True}
        containers.remove.assert_called_once_with("fusionpbx-dev")
        containers.remove_network.assert_called_once_with("test_fusionpbx-network")
        assert containers.remove_volume.call_count == len(DATA_SUBDIRS)
        assert not (tmp_path / "dev-data" / "config" / "old.conf").exists()
        assert all((tmp_path / "dev-data" / sub).is_dir() for sub in DATA_SUBDIRS)

    def test_dev_incremental(self, tmp_path, settings, containers, compose):
        _deployer(PROFILES["dev"], tmp_path, settings, containers, compose).stop_existing(clean=False)
        compose.down.assert_called_once_with(ignore_errors=True)
        containers.remove.assert_not_called()

    def test_prod_clean(self, tmp_path, settings, containers, compose):
        _deployer(PROFILES["prod"], tmp_path, settings, containers, compose).stop_existing(clean=True)
        compose.down.assert_called_once_with(volumes=True, ignore_errors=True)
        containers.remove.assert_called_once_with("fusionpbx-prod")

    def test_prod_incremental_stops_running_stack(self, tmp_path, settings, containers, compose):
        _deployer(PROFILES["prod"], tmp_path, settings, containers, compose).stop_existing(clean=False)
        compose.down.assert_called_once_with()
        containers.remove.assert_not_called()

    def test_host_clean_wipes_data_and_config(self, tmp_path, settings, containers, compose):
        deployer = _deployer(_host_profile(tmp_path), tmp_path, settings, containers, compose)
        deployer.prepare_directories()
        (tmp_path / "opt" / "data" / "PG_VERSION").write_text("15")
        (tmp_path / "opt" / "recordings" / "call.wav").write_bytes(b"RIFF")

        deployer.stop_existing(clean=True)

        assert list((tmp_path / "opt" / "data").iterdir()) == []
        assert (tmp_path / "opt" / "recordings" / "call.wav").exists()
        containers.remove.assert_called_once_with("fusionpbx")
        containers.prune_volumes.assert_called_once_with()


class TestPermissions:
    def test_dev_linux_hands_data_to_postgres(self, tmp_path, settings, containers):
        runner = CommandLog(results={"sudo": CommandResult([], 1)})
        deployer = _deployer(PROFILES["dev"], tmp_path, settings, containers, runner=runner)
        deployer.prepare_directories()

        deployer.reset_data_permissions()

        data = tmp_path / "dev-data" / "data"
        assert runner.calls == [["sudo", "-n", "chown", "-R", "999:999", str(data)]]
        assert data.stat().st_mode & 0o777 == 0o700

    def test_dev_macos_opens_data_dir(self, tmp_path, settings, containers):
        deployer = _deployer(PROFILES["dev"], tmp_path, settings, containers, os_name="macos")
        deployer.prepare_directories()

        deployer.reset_data_permissions()

        data = tmp_path / "dev-data" / "data"
        assert data.stat().st_mode & 0o777 == 0o777
        assert (data / ".dev-setup").exists()

    def test_host_tightens_cluster_dirs(self, tmp_path, settings, containers, _no_host_calls):
        deployer = _deployer(_host_profile(tmp_path), tmp_path, settings, containers)
        deployer.prepare_directories()
        base = tmp_path / "opt" / "data" / "15" / "main" / "base"
        base.mkdir(parents=True)
        base.chmod(0o755)

        deployer.reset_data_permissions()

        _no_host_calls.assert_called_with(tmp_path / "opt" / "data", 999, 999)
        assert base.stat().st_mode & 0o777 == 0o700
        assert (tmp_path / "opt" / "config").stat().st_mode & 0o777 == 0o755


class TestFirewallStep:
    def test_opens_bridge_ports_when_enabled(self, tmp_path, containers):
        deployer = _deployer(PROFILES["host"], tmp_path, Settings(configure_firewall=True), containers)
        deployer.configure_firewall()
        deployer.firewall.open_ports.assert_called_once_with(BRIDGE_PORTS)

    def test_skipped_when_disabled(self, tmp_path, settings, containers):
        deployer = _deployer(PROFILES["host"], tmp_path, settings, containers)
        deployer.configure_firewall()
        deployer.firewall.open_ports.assert_not_called()

    def test_not_part_of_dev(self, tmp_path, containers):
        deployer = _deployer(PROFILES["dev"], tmp_path, Settings(configure_firewall=True), containers)
        deployer.configure_firewall()
        deployer.firewall.open_ports.assert_not_called()


class TestWaitForInstall:
    """Install detection per profile"""

    def test_admin_row(self, tmp_path, settings, containers, sleep):
        db = FakeDatabase(scalars={"SELECT username FROM v_users": Seq([None, None, "admin"])})
        deployer = _deployer(PROFILES["dev"], tmp_path, settings, containers, db=db, sleep=sleep)

        assert deployer.wait_for_install()
        assert [c.args[0] for c in sleep.call_args_list] == [20, 10, 10]
        assert db.queries[0][1] == {"username": "admin"}

    def test_schema_counts_as_installed_without_enabled_admin(self, tmp_path, settings, containers, sleep):
        db = FakeDatabase(scalars={"information_schema.tables": "3", "user_enabled": "0"})
        deployer = _deployer(_host_profile(tmp_path), tmp_path, settings, containers, db=db, sleep=sleep)

        assert deployer.wait_for_install()
        sleep.assert_not_called()

    def test_web_page(self, tmp_path, settings, containers, sleep):
        http_get = MagicMock(side_effect=[
            httpx.ConnectError("refused"),
            SimpleNamespace(text="<h1>FusionPBX is Already Installed</h1>"),
        ])
        deployer = _deployer(PROFILES["prod"], tmp_path, settings, containers, http_get=http_get, sleep=sleep)

        assert deployer.wait_for_install()
        http_get.assert_called_with("https://localhost/core/install/install.php", verify=False, timeout=10.0)

    def test_timeout_has_no_trailing_sleep(self, tmp_path, settings, containers, sleep):
        profile = dataclasses.replace(PROFILES["dev"], install_wait=0, install_attempts=3)
        deployer = _deployer(profile, tmp_path, settings, containers, db=FakeDatabase(), sleep=sleep)

        assert deployer.wait_for_install() is False
        assert sleep.call_count == 2


class TestSummary:
    def test_dev_summary(self, tmp_path, settings, containers, compose):
        summary = _deployer(PROFILES["dev"], tmp_path, settings, containers, compose).summary(True)
        lines = summary.lines()

        assert lines[0] == "=== FusionPBX Development Deployment Status ==="
        assert "Container Status: fusionpbx\trunning" in lines
        assert "HTTP Interface: http://localhost:8080" in lines
        assert "Admin Login: admin / admin123" in lines
        assert "• Event Socket: 8022 → 8021" in lines
        assert "• Stop: docker compose -f docker-compose.dev.yml down" in lines
        assert summary.auto_install is True

    def test_host_summary_uses_server_ip(self, tmp_path, containers, compose):
        settings = Settings(auto_install=False, enable_fail2ban=False)
        text = _deployer(_host_profile(tmp_path), tmp_path, settings, containers, compose).summary(None).render()

        assert "SIP Server: 10.0.0.5:5060" in text
        assert "• Auto-Installation: false" in text
        assert "• Fail2Ban: false" in text


class TestRun:
    def test_dev_end_to_end(self, tmp_path, containers, sleep):
        runner = CommandLog()
        db = FakeDatabase(scalars={"SELECT username FROM v_users": "admin"})
        deployer = Deployer(
            PROFILES["dev"], tmp_path, containers=containers, firewall=MagicMock(), db=db,
            runner=runner, sleep=sleep, os_name="linux", is_root=MagicMock(),
        )

        with patch("fusionpbx_ops.deploy.load_env_file", return_value=tmp_path / ".env"), \
                patch("fusionpbx_ops.deploy.require_docker") as require_docker, \
                patch("fusionpbx_ops.deploy.get_docker_compose_cmd", return_value=["docker", "compose"]):
            summary = deployer.run()

        require_docker.assert_called_once_with()
        base = ["docker", "compose", "-f", "docker-compose.dev.yml"]
        assert base + ["down"] in runner.calls
        assert base + ["down", "-v"] in runner.calls
        assert runner.calls[-1] == base + ["up", "-d"]
        containers.build.assert_called_once_with(tmp_path, LOCAL_IMAGE_TAG)
        containers.wait_until_healthy.assert_called_once_with("fusionpbx-dev", 12, 10)
        assert summary.installed is True
        assert summary.compose_cmd == "docker compose -f docker-compose.dev.yml"

    def test_macos_host_stops_before_docker(self, tmp_path, containers):
        deployer = _deployer(PROFILES["host"], tmp_path, None, containers, os_name="macos")
        with patch("fusionpbx_ops.deploy.require_docker") as require_docker:
            with pytest.raises(PreconditionError):
                deployer.run()
        require_docker.assert_not_called()
