"""Data models for container-host."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from container_host.constants import (
    CACHE_DIR_NAME,
    COREOS_URL_TEMPLATE,
    IMAGES_DIR_NAME,
)


@dataclass(frozen=True)
class HostConfig:
    """Resolved configuration record, built once and passed explicitly."""

    arch: str
    version: str
    memory_mb: int
    cpus: int
    instances: int
    ssh_port: str
    vnc_port: str
    docker_port: str
    http_port: str
    kubernetes_port: str
    k0s_port: str
    public_key_path: str
    private_key_path: str
    enable_acceleration: bool
    custom_args: Tuple[str, ...] = ()
    print_ignition_config: bool = True
    verbose: bool = False
    core_password: Optional[str] = None
    download_retries: int = 3
    download_timeout: int = 60
    stage_compressed: bool = True
    root_dir: Path = field(default_factory=Path.cwd)

    def resolve(self, raw: str) -> Path:
        """Return ``raw`` as an absolute path, relative paths anchored at root_dir."""
        path = Path(raw).expanduser()
        if path.is_absolute():
            return path
        return self.root_dir / path

    @property
    def image_spec(self) -> "ImageSpec":
        return ImageSpec(version=self.version, arch=self.arch)

    @property
    def key_pair(self) -> "KeyPair":
        return KeyPair(
            private_key_path=self.resolve(self.private_key_path),
            public_key_path=self.resolve(self.public_key_path),
        )


@dataclass(frozen=True)
class ImageSpec:
    version: str
    arch: str

    @property
    def url(self) -> str:
        return COREOS_URL_TEMPLATE.format(version=self.version, arch=self.arch)

    @property
    def compressed_name(self) -> str:
        return f"coreos-{self.version}-{self.arch}.xz"

    @property
    def disk_name(self) -> str:
        return f"coreos-{self.version}-qemu.{self.arch}.qcow2"

    def cache_entry(self, root: Path) -> "CacheEntry":
        return CacheEntry(
            compressed_path=root / CACHE_DIR_NAME / self.compressed_name,
            staged_path=root / IMAGES_DIR_NAME / self.compressed_name,
            decompressed_path=root / IMAGES_DIR_NAME / self.disk_name,
        )


@dataclass(frozen=True)
class CacheEntry:
    compressed_path: Path
    staged_path: Path
    decompressed_path: Path


@dataclass(frozen=True)
class KeyPair:
    private_key_path: Path
    public_key_path: Path


@dataclass(frozen=True)
class InstanceProfile:
    arch: str
    binary: str
    machine: str
    cpu: str
    firmware_candidates: Tuple[Path, ...] = ()
    extra_args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InstancePorts:
    ssh: int
    vnc: int
    http: int
    docker: int
    kubernetes: int
    k0s: int

    def labelled(self) -> List[Tuple[str, int]]:
        return [
            ("SSH", self.ssh),
            ("VNC", self.vnc),
            ("HTTP", self.http),
            ("Docker", self.docker),
            ("Kubernetes", self.kubernetes),
            ("K0s", self.k0s),
        ]


@dataclass
class InstanceProcess:
    index: int
    argv: List[str]
    run_mode: str  # "foreground" or "background"
    config_path: Path
    pid: Optional[int] = None
    returncode: Optional[int] = None

    @property
    def number(self) -> int:
        """1-based instance number used in file names and messages."""
        return self.index + 1
