"""Ignition (first-boot) configuration generation for Fedora CoreOS guests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from container_host.constants import (
    CANONICAL_IGNITION_NAME,
    CONFIGS_DIR_NAME,
    CORE_USER,
    IGNITION_VERSION,
    INSTANCE_IGNITION_PREFIX,
)
from container_host.exceptions import FilesystemError, SerializationError
from container_host.utils import ensure_directory, log

DOCKER_SETUP_UNIT = """[Unit]
Description=Enable and start Docker engine
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/usr/bin/systemctl enable docker.service
ExecStart=/usr/bin/systemctl start docker.service

[Install]
WantedBy=multi-user.target"""

DOCKER_TCP_PROXY_UNIT = """[Unit]
Description=Forward Docker socket over TCP
After=docker.service
Requires=docker.service

[Service]
Type=simple
Restart=always
RestartSec=5
ExecStart=/usr/bin/socat TCP-LISTEN:{port},bind=0.0.0.0,fork,reuseaddr UNIX-CONNECT:/var/run/docker.sock

[Install]
WantedBy=multi-user.target"""

DISABLE_ZINCATI_UNIT = """[Unit]
Description=Disable Zincati automatic updates
DefaultDependencies=no

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/usr/bin/systemctl mask zincati.service

[Install]
WantedBy=multi-user.target"""

LINGER_UNIT = f"""[Unit]
Description=Enable linger for user '{CORE_USER}' (start user manager at boot)
After=network.target

[Service]
Type=oneshot
ExecStart=/usr/bin/loginctl enable-linger {CORE_USER}

[Install]
WantedBy=multi-user.target
"""


@dataclass
class IgnitionUser:
    name: str
    ssh_authorized_keys: List[str]
    password_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "sshAuthorizedKeys": list(self.ssh_authorized_keys)}
        if self.password_hash:
            data["passwordHash"] = self.password_hash
        return data


@dataclass
class SystemdUnit:
    name: str
    enabled: bool
    contents: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "enabled": self.enabled, "contents": self.contents}


@dataclass
class IgnitionConfig:
    version: str = IGNITION_VERSION
    users: List[IgnitionUser] = field(default_factory=list)
    units: List[SystemdUnit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ignition": {"version": self.version},
            "passwd": {"users": [user.to_dict() for user in self.users]},
            "systemd": {"units": [unit.to_dict() for unit in self.units]},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IgnitionConfig":
        try:
            version = data["ignition"]["version"]
            users = [
                IgnitionUser(
                    name=raw["name"],
                    ssh_authorized_keys=list(raw.get("sshAuthorizedKeys", [])),
                    password_hash=raw.get("passwordHash"),
                )
                for raw in data["passwd"]["users"]
            ]
            units = [
                SystemdUnit(name=raw["name"], enabled=bool(raw.get("enabled", False)), contents=raw.get("contents", ""))
                for raw in data["systemd"]["units"]
            ]
        except (KeyError, TypeError) as exc:
            raise SerializationError(f"Ignition document is missing required field: {exc}") from exc
        return cls(version=version, users=users, units=units)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash usable as an Ignition ``passwordHash``."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def build_config(public_key: str, docker_port: int, password_hash: Optional[str] = None) -> IgnitionConfig:
    """Ignition config with the SSH key for ``core`` and the Docker engine units."""
    return IgnitionConfig(
        version=IGNITION_VERSION,
        users=[
            IgnitionUser(
                name=CORE_USER,
                ssh_authorized_keys=[public_key.strip()],
                password_hash=password_hash,
            )
        ],
        units=[
            SystemdUnit("docker-setup.service", True, DOCKER_SETUP_UNIT),
            SystemdUnit("docker-tcp-proxy.service", True, DOCKER_TCP_PROXY_UNIT.format(port=docker_port)),
            SystemdUnit("disable-zincati.service", True, DISABLE_ZINCATI_UNIT),
            SystemdUnit(f"setup-linger-{CORE_USER}.service", True, LINGER_UNIT),
        ],
    )


def serialize(config: IgnitionConfig) -> bytes:
    return json.dumps(config.to_dict(), separators=(",", ":")).encode("utf-8")


def parse(data: bytes) -> IgnitionConfig:
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise SerializationError(f"Generated Ignition JSON is invalid: {exc}") from exc
    if not isinstance(raw, dict):
        raise SerializationError("Generated Ignition JSON is not an object")
    return IgnitionConfig.from_dict(raw)


def synthesize(public_key: str, docker_port: int, password_hash: Optional[str] = None) -> bytes:
    """Serialize the Ignition document and verify it parses back to the same structure."""
    config = build_config(public_key, docker_port, password_hash)
    data = serialize(config)
    if parse(data) != config:
        raise SerializationError("Ignition document changed across serialize/parse round trip")
    return data


def canonical_config_path(root: Path) -> Path:
    return root / CONFIGS_DIR_NAME / CANONICAL_IGNITION_NAME


def instance_config_path(root: Path, number: int) -> Path:
    return root / CONFIGS_DIR_NAME / f"{INSTANCE_IGNITION_PREFIX}-{number}.json"


def write_config(data: bytes, path: Path) -> Path:
    ensure_directory(path.parent)
    try:
        path.write_bytes(data)
        path.chmod(0o644)
    except OSError as exc:
        raise FilesystemError(f"Error writing ignition config file {path}: {exc}") from exc
    log("INFO", f"Ignition config written to {path} ({len(data)} bytes)")
    return path
