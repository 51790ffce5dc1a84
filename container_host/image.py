"""CoreOS image acquisition and on-disk cache."""

from __future__ import annotations

import contextlib
import os
import shutil
import time
from pathlib import Path
from typing import Iterator, Optional

import requests

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows hosts
    fcntl = None  # type: ignore[assignment]

from container_host.constants import (
    CACHE_DIR_NAME,
    DOWNLOAD_CHUNK_SIZE,
    IMAGES_DIR_NAME,
    USER_AGENT,
)
from container_host.exceptions import AcquisitionError, FilesystemError
from container_host.extract import atomic_output, extract_xz
from container_host.models import CacheEntry, ImageSpec
from container_host.progress import ProgressWriter
from container_host.utils import CancelToken, ensure_directory, humanize_bytes, log


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    timeout: float = 60,
    cancel: Optional[CancelToken] = None,
) -> None:
    """Stream ``url`` into ``destination``.

    The payload is written to a temp file that is renamed into place only once
    complete, and checked against ``Content-Length`` when the server sends one.
    """
    log("INFO", f"{label}: {url}")
    headers = {"User-Agent": USER_AGENT}
    try:
        response = requests.get(url, headers=headers, stream=True, timeout=timeout)
    except requests.RequestException as exc:
        raise AcquisitionError(f"Failed to download {url}: {exc}") from exc

    with response:
        if response.status_code != 200:
            raise AcquisitionError(f"HTTP error downloading {url}: {response.status_code} {response.reason}")

        total_raw = response.headers.get("Content-Length")
        total = int(total_raw) if total_raw and total_raw.isdigit() else None
        progress = ProgressWriter(label, total=total)
        start = time.monotonic()
        try:
            with atomic_output(destination) as out:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if cancel is not None:
                        cancel.raise_if_cancelled(f"Download of {url}")
                    if not chunk:
                        continue
                    out.write(chunk)
                    progress.write(chunk)
                if total is not None and progress.processed != total:
                    raise AcquisitionError(
                        f"Incomplete download of {url}: got {progress.processed} of {total} bytes"
                    )
        except requests.RequestException as exc:
            raise AcquisitionError(f"Failed to save {url}: {exc}") from exc
        except OSError as exc:
            raise FilesystemError(f"Failed to write {destination}: {exc}") from exc
        finally:
            progress.close()

    elapsed = time.monotonic() - start
    log("SUCCESS", f"Downloaded {humanize_bytes(progress.processed)} in {elapsed:.1f}s")


def download_file_with_retry(
    url: str,
    destination: Path,
    label: str = "Downloading",
    retries: int = 3,
    timeout: float = 60,
    cancel: Optional[CancelToken] = None,
) -> None:
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        try:
            download_file(url, destination, label=label, timeout=timeout, cancel=cancel)
            return
        except AcquisitionError as exc:
            if attempt == attempts:
                raise
            delay = 2 * attempt
            log("WARN", f"Download attempt {attempt}/{attempts} failed: {exc}; retrying in {delay}s")
            if cancel is None:
                time.sleep(delay)
            elif cancel.wait(delay):
                cancel.raise_if_cancelled(f"Download of {url}")


@contextlib.contextmanager
def cache_lock(target: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``<target>.lock`` for the duration.

    The lock file is left in place; removing it would let two processes lock
    different inodes.
    """
    if fcntl is None:
        yield
        return
    lock_path = target.with_name(target.name + ".lock")
    try:
        fd = lock_path.open("w")
    except OSError as exc:
        raise FilesystemError(f"Failed to open lock file {lock_path}: {exc}") from exc
    try:
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            log("INFO", f"Waiting for another container-host process to finish with {target.name}")
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        fd.close()


def link_or_copy(src: Path, dst: Path) -> None:
    """Hard-link ``src`` to ``dst``, copying when linking is impossible (cross-device)."""
    try:
        if dst.exists():
            if dst.stat().st_size == src.stat().st_size:
                return
            dst.unlink()
        try:
            os.link(src, dst)
            return
        except OSError as exc:
            log("DEBUG", f"Hard link {src} -> {dst} failed ({exc}); copying instead")
        with atomic_output(dst) as out, open(src, "rb") as inp:
            shutil.copyfileobj(inp, out, DOWNLOAD_CHUNK_SIZE)
    except OSError as exc:
        raise FilesystemError(f"Failed to place {src} at {dst}: {exc}") from exc


def ensure_image(
    spec: ImageSpec,
    root: Path,
    retries: int = 3,
    timeout: float = 60,
    stage: bool = True,
    cancel: Optional[CancelToken] = None,
) -> Path:
    """Make sure the decompressed disk for ``spec`` exists under ``root`` and return its path."""
    ensure_directory(root / CACHE_DIR_NAME)
    ensure_directory(root / IMAGES_DIR_NAME)
    entry: CacheEntry = spec.cache_entry(root)

    with cache_lock(entry.compressed_path):
        if entry.compressed_path.exists():
            log("INFO", f"Image already exists: {entry.compressed_path}")
        else:
            log("INFO", f"Downloading Fedora CoreOS {spec.version} ({spec.arch})")
            download_file_with_retry(
                spec.url,
                entry.compressed_path,
                label="Downloading",
                retries=retries,
                timeout=timeout,
                cancel=cancel,
            )
            log("INFO", f"Downloaded to: {entry.compressed_path}")

        if stage:
            link_or_copy(entry.compressed_path, entry.staged_path)
            log("DEBUG", f"Placed compressed image at: {entry.staged_path}")

        if entry.decompressed_path.exists():
            log("INFO", f"Extracted image already exists: {entry.decompressed_path}")
        else:
            log("INFO", f"Extracting {entry.compressed_path} -> {entry.decompressed_path}")
            extract_xz(entry.compressed_path, entry.decompressed_path, cancel=cancel)
            log("SUCCESS", f"Extracted to: {entry.decompressed_path}")

    return entry.decompressed_path
