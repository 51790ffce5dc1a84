"""CLI entry points for container-host."""

from __future__ import annotations

import argparse
import dataclasses
import shutil
import signal
from pathlib import Path
from typing import List, Optional

from container_host.config import load_config
from container_host.constants import IMAGES_DIR_NAME, SSH_KEYS_DIR_NAME
from container_host.exceptions import FilesystemError, ManagerError, OperationCancelled
from container_host.launcher import InstanceLauncher
from container_host.models import HostConfig, InstancePorts
from container_host.qemu import validate_port_plan
from container_host.utils import CancelToken, kvm_available, log, set_verbose

_SENSITIVE_FIELDS = {"core_password"}


def show_config(cfg: HostConfig) -> None:
    """Print the resolved configuration record."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            print(f"  {field.name}: ********")
        elif isinstance(value, tuple):
            print(f"  {field.name}: {' '.join(value) if value else '(none)'}")
        else:
            print(f"  {field.name}: {value}")


def _print_block(lines: List[str]) -> None:
    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def print_configuration(cfg: HostConfig) -> None:
    lines = [
        "  Fedora CoreOS container host",
        f"  Version: {cfg.version} | Arch: {cfg.arch}",
        f"  Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Instances: {cfg.instances}",
        f"  Acceleration: {'enabled' if cfg.enable_acceleration else 'disabled'}",
    ]
    if cfg.custom_args:
        lines.append(f"  Custom QEMU args: {' '.join(cfg.custom_args)}")
    _print_block(lines)


def connection_lines(number: int, ports: InstancePorts) -> List[str]:
    return [
        f"  Instance {number}",
        f"  SSH:        ssh -p {ports.ssh} core@localhost",
        f"  Docker:     export DOCKER_HOST=tcp://localhost:{ports.docker}",
        f"  VNC:        localhost:{ports.vnc}",
        f"  HTTP:       localhost:{ports.http} -> guest:80",
        f"  Kubernetes: localhost:{ports.kubernetes} -> guest:6443",
        f"  K0s:        localhost:{ports.k0s} -> guest:9443",
    ]


def print_connection_details(plan: List[InstancePorts]) -> None:
    """Print a visually distinct access-info banner for every planned instance."""
    lines: List[str] = []
    for index, ports in enumerate(plan):
        if lines:
            lines.append("")
        lines.extend(connection_lines(index + 1, ports))
    _print_block(lines)


def clean_vm(root: Path) -> None:
    """Remove extracted images and generated SSH keys; the download cache is kept."""
    for name in (IMAGES_DIR_NAME, SSH_KEYS_DIR_NAME):
        directory = root / name
        if not directory.is_dir():
            continue
        for entry in directory.iterdir():
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                raise FilesystemError(f"Failed to remove {entry}: {exc}") from exc
        log("INFO", f"Cleaned {directory}")


def install_signal_handlers(cancel: CancelToken) -> None:
    def _handler(signum, frame):
        name = signal.Signals(signum).name
        log("WARN", f"Received {name}; shutting down")
        cancel.cancel(name)

    signal.signal(signal.SIGINT, _handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handler)


def dry_run(cfg: HostConfig, plan: List[InstancePorts]) -> None:
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Environment Checks ===")
    launcher = InstanceLauncher(cfg)
    binary = shutil.which(launcher.profile.binary)
    if binary:
        log("SUCCESS", f"QEMU:        {binary}")
    else:
        log("ERROR", f"QEMU:        {launcher.profile.binary} NOT FOUND in PATH")
    if launcher.firmware is not None:
        log("INFO", f"Firmware:    {launcher.firmware}")
    else:
        log("INFO", "Firmware:    QEMU default")
    if launcher.system == "Linux" and cfg.enable_acceleration:
        if kvm_available():
            log("SUCCESS", "KVM:         available (/dev/kvm)")
        else:
            log("WARN", "KVM:         NOT available (will use TCG)")
    entry = cfg.image_spec.cache_entry(cfg.root_dir)
    if entry.decompressed_path.exists():
        log("SUCCESS", f"Image:       {entry.decompressed_path} (cached)")
    else:
        log("INFO", f"Image:       {cfg.image_spec.url} (will download)")
    log("INFO", "=== Dry-run complete (no VM started) ===")
    print_connection_details(plan)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fedora CoreOS container host launcher")
    parser.add_argument("--arch", help="Guest architecture (overrides vm.architecture)")
    parser.add_argument("--version", dest="coreos_version", help="Fedora CoreOS version (overrides vm.version)")
    parser.add_argument("--config", type=Path, default=None, help="Path to the JSON/YAML config file")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and environment, then exit")
    parser.add_argument("--clean-vm", action="store_true", help="Remove extracted images and SSH keys, then exit")
    args = parser.parse_args(argv)

    overrides = {"arch": args.arch, "version": args.coreos_version}
    try:
        cfg = load_config(args.config, overrides=overrides)
        set_verbose(cfg.verbose)
        plan = validate_port_plan(cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.clean_vm:
        try:
            clean_vm(cfg.root_dir)
        except ManagerError as exc:
            log("ERROR", str(exc))
            return 1
        return 0

    if args.show_config:
        show_config(cfg)
        return 0

    if args.dry_run:
        try:
            dry_run(cfg, plan)
        except ManagerError as exc:
            log("ERROR", str(exc))
            return 1
        return 0

    cancel = CancelToken()
    install_signal_handlers(cancel)
    print_configuration(cfg)

    try:
        launcher = InstanceLauncher(cfg, cancel=cancel)
        launcher.prepare()
        canonical = launcher.write_canonical_config()
        if cfg.print_ignition_config:
            print(launcher.render_config(0).decode("utf-8"), flush=True)
        log("SUCCESS", "Ignition JSON validation passed")
        if canonical is not None:
            log("INFO", f"Canonical ignition config: {canonical}")
        print_connection_details(plan)
        launcher.launch()
        if cfg.instances > 1:
            launcher.report_started()
        return 0
    except OperationCancelled as exc:
        log("WARN", str(exc))
        return 130
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
