"""Tests for container_host.cli module."""

from __future__ import annotations

import dataclasses
import json
from unittest.mock import MagicMock, patch

import pytest

from container_host import cli
from container_host.exceptions import AcquisitionError, OperationCancelled
from container_host.models import InstancePorts

pytestmark = pytest.mark.usefixtures("clean_env")


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write_config(root, data):
    (root / "container-host.config.json").write_text(json.dumps(data))


class TestShowConfig:
    def test_masks_password(self, host_config, capsys):
        cfg = dataclasses.replace(host_config, core_password="secret1")
        cli.show_config(cfg)
        out = capsys.readouterr().out
        assert "core_password: ********" in out
        assert "secret1" not in out

    def test_flag_prints_and_exits(self, workdir, capsys):
        _write_config(workdir, {"vm": {"cpus": 3}})
        assert cli.main(["--show-config", "--arch", "amd64"]) == 0
        out = capsys.readouterr().out
        assert "cpus: 3" in out
        assert "arch: x86_64" in out


class TestConnectionDetails:
    def test_one_block_per_instance(self, capsys):
        plan = [
            InstancePorts(ssh=2222, vnc=5900, http=80, docker=2377, kubernetes=6443, k0s=9443),
            InstancePorts(ssh=2223, vnc=5901, http=81, docker=2378, kubernetes=6444, k0s=9444),
        ]
        cli.print_connection_details(plan)
        out = capsys.readouterr().out
        assert "ssh -p 2222 core@localhost" in out
        assert "ssh -p 2223 core@localhost" in out
        assert "export DOCKER_HOST=tcp://localhost:2378" in out
        assert "Instance 2" in out


class TestDryRun:
    def test_spawns_nothing(self, workdir, capsys):
        _write_config(workdir, {"vm": {"architecture": "x86_64", "instances": 2}})
        with patch("container_host.cli.InstanceLauncher.launch") as mock_launch, patch(
            "container_host.cli.shutil.which", return_value=None
        ):
            assert cli.main(["--dry-run"]) == 0
        mock_launch.assert_not_called()
        out = capsys.readouterr().out
        assert "NOT FOUND" in out
        assert "will download" in out
        assert "ssh -p 2223 core@localhost" in out
        assert not (workdir / "vms").exists()


class TestCleanVm:
    def test_removes_images_and_keys_but_keeps_cache(self, workdir):
        for rel in ("images/disk.qcow2", "images/instances/disk-1.qcow2", "ssh_keys/coreos_rsa", "vms/coreos.xz"):
            path = workdir / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"x")
        assert cli.main(["--clean-vm"]) == 0
        assert list((workdir / "images").iterdir()) == []
        assert list((workdir / "ssh_keys").iterdir()) == []
        assert (workdir / "vms" / "coreos.xz").exists()


class TestMain:
    @pytest.fixture(autouse=True)
    def no_signal_handlers(self):
        with patch("container_host.cli.install_signal_handlers"):
            yield

    def test_port_conflict_fails_before_any_work(self, workdir):
        _write_config(workdir, {"vm": {"instances": 2}, "network": {"sshPort": 2222, "dockerPort": 2223}})
        with patch("container_host.cli.InstanceLauncher") as mock_launcher:
            assert cli.main([]) == 1
        mock_launcher.assert_not_called()

    def test_bad_config_returns_one(self, workdir):
        _write_config(workdir, {"vm": {"memory": "lots"}})
        assert cli.main([]) == 1

    def test_successful_run(self, workdir, capsys):
        _write_config(workdir, {"debug": {"printIgnitionConfig": True}})
        launcher = MagicMock()
        launcher.render_config.return_value = b'{"ignition":{"version":"3.4.0"}}'
        launcher.write_canonical_config.return_value = workdir / "configs" / "ignition.json"
        with patch("container_host.cli.InstanceLauncher", return_value=launcher):
            assert cli.main([]) == 0
        launcher.prepare.assert_called_once()
        launcher.launch.assert_called_once()
        launcher.report_started.assert_not_called()
        out = capsys.readouterr().out
        assert '{"ignition":{"version":"3.4.0"}}' in out
        assert "validation passed" in out
        assert "ssh -p 2222 core@localhost" in out

    def test_manager_error_returns_one(self, workdir):
        launcher = MagicMock()
        launcher.prepare.side_effect = AcquisitionError("HTTP error downloading")
        with patch("container_host.cli.InstanceLauncher", return_value=launcher), patch(
            "container_host.cli.log"
        ) as mock_log:
            assert cli.main([]) == 1
        mock_log.assert_any_call("ERROR", "HTTP error downloading")

    def test_cancellation_returns_130(self, workdir):
        launcher = MagicMock()
        launcher.render_config.return_value = b"{}"
        launcher.launch.side_effect = OperationCancelled("Instance 1 interrupted (SIGINT)")
        with patch("container_host.cli.InstanceLauncher", return_value=launcher):
            assert cli.main([]) == 130

    def test_unexpected_error_returns_one(self, workdir, capsys):
        launcher = MagicMock()
        launcher.prepare.side_effect = ValueError("boom")
        with patch("container_host.cli.InstanceLauncher", return_value=launcher):
            assert cli.main([]) == 1
        assert "Unexpected error: boom" in capsys.readouterr().out

    def test_background_instances_are_reported(self, workdir):
        _write_config(workdir, {"vm": {"instances": 2}})
        launcher = MagicMock()
        launcher.render_config.return_value = b"{}"
        with patch("container_host.cli.InstanceLauncher", return_value=launcher):
            assert cli.main([]) == 0
        launcher.report_started.assert_called_once()
