"""Shared test fixtures."""

from __future__ import annotations

import pytest

from container_host.models import HostConfig


@pytest.fixture
def host_config(tmp_path) -> HostConfig:
    """Return a single-instance x86_64 HostConfig rooted in a temp directory."""
    return HostConfig(
        arch="x86_64",
        version="40.20240416.3.1",
        memory_mb=2048,
        cpus=2,
        instances=1,
        ssh_port="2222",
        vnc_port="5900",
        docker_port="2377",
        http_port="8080",
        kubernetes_port="6443",
        k0s_port="9443",
        public_key_path="ssh_keys/coreos_rsa.pub",
        private_key_path="ssh_keys/coreos_rsa",
        enable_acceleration=False,
        print_ignition_config=False,
        root_dir=tmp_path,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Clear environment variables that change config loading and logging."""
    for key in ("CONTAINER_HOST_CONFIG", "LOG_VERBOSE"):
        monkeypatch.delenv(key, raising=False)
