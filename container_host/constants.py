"""Global constants and path configuration for container-host."""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_NAME = "container-host.config.json"

# Directory layout relative to the project root (the working directory).
CACHE_DIR_NAME = "vms"
IMAGES_DIR_NAME = "images"
OVERLAYS_DIR_NAME = "instances"
CONFIGS_DIR_NAME = "configs"
SSH_KEYS_DIR_NAME = "ssh_keys"

CANONICAL_IGNITION_NAME = "ignition.json"
INSTANCE_IGNITION_PREFIX = "ignition-instance"

COREOS_URL_TEMPLATE = (
    "https://builds.coreos.fedoraproject.org/prod/streams/stable/builds/"
    "{version}/{arch}/fedora-coreos-{version}-qemu.{arch}.qcow2.xz"
)
USER_AGENT = "container-host/1.0"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MiB
EXTRACT_BUFFER_SIZE = 1024 * 1024  # 1 MiB

# External decompressors, tried in order before the in-process fallback.
XZ_DECOMPRESSORS = ("xz", "unxz")

IGNITION_VERSION = "3.4.0"
CORE_USER = "core"
SSH_KEY_BITS = 2048
SSH_KEY_COMMENT = "coreos@container-host"

TRUTHY = {"1", "true", "yes", "on"}

# Guest ports forwarded from the host (the Docker port is forwarded 1:1).
GUEST_SSH_PORT = 22
GUEST_HTTP_PORT = 80
GUEST_KUBERNETES_PORT = 6443
GUEST_K0S_PORT = 9443
VNC_BASE_PORT = 5900

DEFAULTS = {
    "arch": "aarch64",
    "version": "42.20250803.3.0",
    "memory_mb": 4096,
    "cpus": 4,
    "instances": 1,
    "ssh_port": "2222",
    "vnc_port": "5900",
    "docker_port": "2377",
    "http_port": "80",
    "kubernetes_port": "6443",
    "k0s_port": "9443",
    "public_key_path": f"{SSH_KEYS_DIR_NAME}/coreos_rsa.pub",
    "private_key_path": f"{SSH_KEYS_DIR_NAME}/coreos_rsa",
    "enable_acceleration": True,
    "print_ignition_config": True,
    "verbose": False,
    "download_retries": 3,
    "download_timeout": 60,
    "stage_compressed": True,
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}

SUPPORTED_ARCHES = {
    "aarch64": {
        "binary": "qemu-system-aarch64",
        "machine": "virt",
        "cpu": "max",
        "firmware": (
            Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
            Path("/usr/share/edk2/aarch64/QEMU_EFI.fd"),
            Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
            Path("/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
        ),
        "extra_args": (),
    },
    "x86_64": {
        "binary": "qemu-system-x86_64",
        "machine": "q35",
        "cpu": "max",
        "firmware": (
            Path("/opt/homebrew/share/qemu/edk2-x86_64-code.fd"),
            Path("/usr/share/OVMF/OVMF_CODE.fd"),
            Path("/usr/share/edk2/ovmf/OVMF_CODE.fd"),
        ),
        "extra_args": ("-global", "kvm-pit.lost_tick_policy=discard"),
    },
}

# Unknown architectures: qemu-system-<arch> with QEMU's own firmware default.
FALLBACK_PROFILE = {
    "binary": "qemu-system-{arch}",
    "machine": "virt",
    "cpu": "host",
    "firmware": (),
    "extra_args": (),
}

# Host OS (platform.system()) -> accelerator backend.
ACCELERATORS = {
    "Darwin": "hvf",
    "Linux": "kvm",
    "Windows": "whpx",
}
HYPERV_CPU = "host,hv_relaxed,hv_spinlocks=0x1fff,hv_vapic,hv_time"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
