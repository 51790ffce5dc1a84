"""QEMU invocation profiles, port derivation and argument assembly."""

from __future__ import annotations

import platform
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from container_host.constants import (
    ACCELERATORS,
    ARCH_ALIASES,
    FALLBACK_PROFILE,
    GUEST_HTTP_PORT,
    GUEST_K0S_PORT,
    GUEST_KUBERNETES_PORT,
    GUEST_SSH_PORT,
    HYPERV_CPU,
    SUPPORTED_ARCHES,
    VNC_BASE_PORT,
)
from container_host.exceptions import ConfigurationError
from container_host.models import HostConfig, InstancePorts, InstanceProfile
from container_host.utils import kvm_available, log


def profile_for_arch(arch: str) -> InstanceProfile:
    key = ARCH_ALIASES.get(arch.lower(), arch.lower())
    entry = SUPPORTED_ARCHES.get(key)
    if entry is None:
        # QEMU naming usually matches qemu-system-<arch>; let QEMU pick firmware.
        return InstanceProfile(
            arch=arch,
            binary=FALLBACK_PROFILE["binary"].format(arch=arch),
            machine=FALLBACK_PROFILE["machine"],
            cpu=FALLBACK_PROFILE["cpu"],
            firmware_candidates=tuple(FALLBACK_PROFILE["firmware"]),
            extra_args=tuple(FALLBACK_PROFILE["extra_args"]),
        )
    return InstanceProfile(
        arch=key,
        binary=entry["binary"],
        machine=entry["machine"],
        cpu=entry["cpu"],
        firmware_candidates=tuple(entry["firmware"]),
        extra_args=tuple(entry["extra_args"]),
    )


def select_firmware(candidates: Iterable[Path]) -> Optional[Path]:
    """Return the first existing firmware image, or None to use QEMU's default."""
    for candidate in candidates:
        if Path(candidate).exists():
            return Path(candidate)
    return None


def host_os() -> str:
    return platform.system()


def acceleration_args(system: str, enabled: bool) -> Tuple[List[str], bool]:
    """Return (accelerator args, suppress_profile_cpu) for the host OS."""
    if not enabled:
        return [], False
    backend = ACCELERATORS.get(system)
    if backend is None:
        log("WARN", f"No hardware accelerator known for host OS '{system}'; using TCG")
        return [], False
    if backend == "kvm" and not kvm_available():
        log("WARN", "/dev/kvm not available; running in software emulation mode (TCG)")
        return [], False
    args = ["-accel", backend]
    if backend == "whpx":
        # Hyper-V enlightenments replace the profile CPU model.
        args += ["-cpu", HYPERV_CPU]
        return args, True
    return args, False


def calculate_port(base: str, offset: int, name: str = "port") -> int:
    """Add an instance offset to a configured base port."""
    try:
        port = int(str(base).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid {name} number '{base}': not an integer")
    port += offset
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"{name} {base} + {offset} = {port} is outside 1-65535")
    return port


def compute_ports(cfg: HostConfig, index: int) -> InstancePorts:
    return InstancePorts(
        ssh=calculate_port(cfg.ssh_port, index, "SSH port"),
        vnc=calculate_port(cfg.vnc_port, index, "VNC port"),
        http=calculate_port(cfg.http_port, index, "HTTP port"),
        docker=calculate_port(cfg.docker_port, index, "Docker port"),
        kubernetes=calculate_port(cfg.kubernetes_port, index, "Kubernetes port"),
        k0s=calculate_port(cfg.k0s_port, index, "K0s port"),
    )


def validate_port_plan(cfg: HostConfig) -> List[InstancePorts]:
    """Derive every instance's ports and reject any host port used twice."""
    plan = [compute_ports(cfg, index) for index in range(cfg.instances)]
    seen: Dict[int, str] = {}
    for index, ports in enumerate(plan):
        for label, port in ports.labelled():
            owner = f"instance {index + 1} {label}"
            if port in seen:
                raise ConfigurationError(
                    f"Port conflict: {owner}={port} collides with {seen[port]}={port}. "
                    "Space base ports at least the instance count apart."
                )
            seen[port] = owner
        vnc_display(ports.vnc)
    return plan


def vnc_display(port: int) -> int:
    if port < VNC_BASE_PORT:
        raise ConfigurationError(f"VNC port {port} must be >= {VNC_BASE_PORT} (display = port - {VNC_BASE_PORT})")
    return port - VNC_BASE_PORT


def hostfwd_spec(ports: InstancePorts) -> str:
    forwards = [
        (ports.ssh, GUEST_SSH_PORT),
        (ports.docker, ports.docker),
        (ports.http, GUEST_HTTP_PORT),
        (ports.kubernetes, GUEST_KUBERNETES_PORT),
        (ports.k0s, GUEST_K0S_PORT),
    ]
    rules = ",".join(f"hostfwd=tcp::{host}-:{guest}" for host, guest in forwards)
    return f"user,id=net0,{rules}"


def build_qemu_args(
    cfg: HostConfig,
    profile: InstanceProfile,
    ports: InstancePorts,
    disk_image: Path,
    ignition_path: Path,
    foreground: bool,
    system: str,
    firmware: Optional[Path] = None,
) -> List[str]:
    """Assemble the QEMU argument vector (without the binary).

    Order matters for QEMU's override semantics: the profile ``-cpu`` comes
    first, accelerator flags after the machine definition, then ``-bios`` and
    finally user passthrough arguments.
    """
    args = [
        "-M", profile.machine,
        "-smp", str(cfg.cpus),
        "-m", str(cfg.memory_mb),
        "-drive", f"file={disk_image.resolve()},format=qcow2,if=virtio",
        "-netdev", hostfwd_spec(ports),
        "-device", "virtio-net-pci,netdev=net0",
        "-device", "virtio-rng-pci",
        "-vnc", f":{vnc_display(ports.vnc)}",
        "-fw_cfg", f"name=opt/com.coreos/config,file={ignition_path}",
    ]
    args += list(profile.extra_args)
    args += ["-rtc", "base=utc,driftfix=slew"]
    args += ["-serial", "stdio" if foreground else "null"]

    accel, suppress_cpu = acceleration_args(system, cfg.enable_acceleration)
    args += accel

    if profile.cpu and not suppress_cpu:
        args = ["-cpu", profile.cpu] + args

    if firmware is not None:
        args += ["-bios", str(firmware)]

    args += list(cfg.custom_args)
    return args
