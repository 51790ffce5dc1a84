"""Multi-instance QEMU orchestration for container-host."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from container_host.constants import IMAGES_DIR_NAME, OVERLAYS_DIR_NAME
from container_host.exceptions import (
    FilesystemError,
    HypervisorExitError,
    ManagerError,
    OperationCancelled,
    SpawnError,
)
from container_host.ignition import (
    canonical_config_path,
    hash_password,
    instance_config_path,
    synthesize,
    write_config,
)
from container_host.image import ensure_image
from container_host.keys import ensure_key_pair
from container_host.models import HostConfig, InstanceProcess
from container_host.qemu import (
    build_qemu_args,
    compute_ports,
    host_os,
    profile_for_arch,
    select_firmware,
)
from container_host.utils import CancelToken, ensure_directory, log, run

FOREGROUND = "foreground"
BACKGROUND = "background"


class InstanceLauncher:
    """Drive the pipeline: shared image and identity first, then one QEMU per instance.

    Instance 0 runs in the foreground with the terminal attached and is waited
    on; every later instance is started detached and left running.
    """

    def __init__(self, cfg: HostConfig, cancel: Optional[CancelToken] = None, system: Optional[str] = None) -> None:
        self.cfg = cfg
        self.cancel = cancel if cancel is not None else CancelToken()
        self.system = system or host_os()
        self.profile = profile_for_arch(cfg.arch)
        self.firmware = select_firmware(self.profile.firmware_candidates)
        self.state = "initializing"
        self.disk_image: Optional[Path] = None
        self.public_key: Optional[str] = None
        self.password_hash: Optional[str] = None
        self.started: List[InstanceProcess] = []
        self._binary: Optional[str] = None

    # -- shared prerequisites -------------------------------------------------

    def prepare(self) -> None:
        cfg = self.cfg
        self.state = "acquiring-image"
        self.disk_image = ensure_image(
            cfg.image_spec,
            cfg.root_dir,
            retries=cfg.download_retries,
            timeout=cfg.download_timeout,
            stage=cfg.stage_compressed,
            cancel=self.cancel,
        )
        self.state = "provisioning-identity"
        pair = cfg.key_pair
        self.public_key = ensure_key_pair(pair.private_key_path, pair.public_key_path)
        if cfg.core_password:
            self.password_hash = hash_password(cfg.core_password)
        if self.firmware is not None:
            log("DEBUG", f"Using firmware {self.firmware}")

    def _require_prepared(self) -> None:
        if self.disk_image is None or self.public_key is None:
            raise ManagerError("InstanceLauncher.prepare() must run before instances are configured")

    # -- per-instance steps ---------------------------------------------------

    def render_config(self, index: int) -> bytes:
        self._require_prepared()
        ports = compute_ports(self.cfg, index)
        assert self.public_key is not None
        return synthesize(self.public_key, ports.docker, self.password_hash)

    def write_canonical_config(self) -> Optional[Path]:
        """Write ``configs/ignition.json`` for single-instance runs."""
        if self.cfg.instances != 1:
            return None
        return write_config(self.render_config(0), canonical_config_path(self.cfg.root_dir))

    def disk_for_instance(self, index: int) -> Path:
        """Shared disk for a single instance; a private qcow2 overlay per instance otherwise."""
        self._require_prepared()
        assert self.disk_image is not None
        if self.cfg.instances == 1:
            return self.disk_image
        overlay_dir = self.cfg.root_dir / IMAGES_DIR_NAME / OVERLAYS_DIR_NAME
        ensure_directory(overlay_dir)
        overlay = overlay_dir / f"{self.disk_image.stem}-{index + 1}.qcow2"
        if overlay.exists():
            return overlay
        cmd = [
            "qemu-img",
            "create",
            "-f",
            "qcow2",
            "-F",
            "qcow2",
            "-b",
            str(self.disk_image.resolve()),
            str(overlay),
        ]
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise SpawnError("qemu-img not found in PATH; it is required for multiple instances") from exc
        except subprocess.CalledProcessError as exc:
            raise FilesystemError(f"Failed to create overlay {overlay}: {(exc.stderr or '').strip()}") from exc
        log("INFO", f"Created disk overlay {overlay}")
        return overlay

    def resolve_binary(self) -> str:
        if self._binary is None:
            found = shutil.which(self.profile.binary)
            if found is None:
                raise SpawnError(
                    f"required QEMU binary '{self.profile.binary}' not found in PATH (arch={self.cfg.arch})"
                )
            self._binary = found
        return self._binary

    def build_instance(self, index: int) -> InstanceProcess:
        foreground = index == 0
        ports = compute_ports(self.cfg, index)
        config_path = write_config(self.render_config(index), instance_config_path(self.cfg.root_dir, index + 1))
        disk = self.disk_for_instance(index)
        if self.cfg.custom_args:
            log("DEBUG", f"Added custom QEMU args for instance {index + 1}: {' '.join(self.cfg.custom_args)}")
        args = build_qemu_args(
            self.cfg,
            self.profile,
            ports,
            disk,
            config_path,
            foreground=foreground,
            system=self.system,
            firmware=self.firmware,
        )
        return InstanceProcess(
            index=index,
            argv=[self.resolve_binary()] + args,
            run_mode=FOREGROUND if foreground else BACKGROUND,
            config_path=config_path,
        )

    def run_foreground(self, instance: InstanceProcess) -> int:
        log("INFO", f"Starting instance {instance.number}: {' '.join(instance.argv)}")
        try:
            proc = subprocess.Popen(instance.argv)
        except OSError as exc:
            raise SpawnError(f"Error starting VM instance {instance.number}: {exc}") from exc
        instance.pid = proc.pid
        self.started.append(instance)
        while True:
            try:
                returncode = proc.wait(timeout=0.5)
                break
            except subprocess.TimeoutExpired:
                if self.cancel.cancelled:
                    log("INFO", f"Stopping instance {instance.number} (PID {proc.pid})")
                    proc.terminate()
                    try:
                        proc.wait(timeout=10)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        proc.wait()
                    self.cancel.raise_if_cancelled(f"Instance {instance.number}")
        instance.returncode = returncode
        self.cancel.raise_if_cancelled(f"Instance {instance.number}")
        if returncode != 0:
            raise HypervisorExitError(
                f"VM instance {instance.number} exited with status {returncode}", returncode
            )
        log("INFO", f"Instance {instance.number} exited")
        return returncode

    def run_background(self, instance: InstanceProcess) -> int:
        log("INFO", f"Starting instance {instance.number}: {' '.join(instance.argv)}")
        try:
            proc = subprocess.Popen(
                instance.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            raise SpawnError(f"Error starting VM instance {instance.number}: {exc}") from exc
        instance.pid = proc.pid
        self.started.append(instance)
        log("SUCCESS", f"Instance {instance.number} started in background (PID: {proc.pid})")
        return proc.pid

    # -- orchestration --------------------------------------------------------

    def launch(self) -> List[InstanceProcess]:
        """Configure and start every instance in index order."""
        self._require_prepared()
        for index in range(self.cfg.instances):
            self.cancel.raise_if_cancelled("Instance startup")
            self.state = f"configuring:{index}"
            try:
                instance = self.build_instance(index)
                self.state = f"spawning:{index}"
                if index == 0:
                    self.run_foreground(instance)
                    self.state = f"exited:{index}"
                else:
                    self.run_background(instance)
                    self.state = f"running:{index}"
            except OperationCancelled:
                raise
            except ManagerError as exc:
                if index > 0:
                    log("ERROR", f"Instance {index + 1} failed to start: {exc}")
                    self.report_started()
                raise
        return self.started

    def report_started(self) -> None:
        background = [inst for inst in self.started if inst.run_mode == BACKGROUND]
        if not background:
            log("WARN", "No background instances were started")
            return
        for inst in background:
            log("INFO", f"Instance {inst.number} is running (PID: {inst.pid})")
