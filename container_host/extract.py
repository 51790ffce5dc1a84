"""Decompression of the cached CoreOS image into a bootable qcow2 disk."""

from __future__ import annotations

import contextlib
import io
import lzma
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional

from container_host.constants import EXTRACT_BUFFER_SIZE, XZ_DECOMPRESSORS
from container_host.exceptions import DecompressionError, ManagerError, OperationCancelled
from container_host.progress import ProgressWriter
from container_host.utils import CancelToken, log


@contextlib.contextmanager
def atomic_output(destination: Path) -> Iterator[BinaryIO]:
    """Yield a temp file next to ``destination`` and rename it into place on success.

    The temp file is fsynced before the rename. On any error it is removed, so
    ``destination`` never holds a partially written file.
    """
    tmp = tempfile.NamedTemporaryFile(
        delete=False, dir=destination.parent, prefix=f"{destination.name}.tmp-"
    )
    tmp_path = Path(tmp.name)
    try:
        yield tmp
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp.close()
        os.replace(tmp_path, destination)
    except BaseException:
        tmp.close()
        tmp_path.unlink(missing_ok=True)
        raise


def extract_xz(src: Path, dst: Path, cancel: Optional[CancelToken] = None) -> None:
    """Decompress ``src`` into ``dst``.

    Tries the external multithreaded ``xz`` first, then ``unxz``, then the
    in-process :mod:`lzma` decoder. Failures of a strategy are logged and the
    next one is attempted; :class:`DecompressionError` is raised only when all
    of them fail.
    """
    failures: List[str] = []
    for name in XZ_DECOMPRESSORS:
        binary = shutil.which(name)
        if binary is None:
            log("DEBUG", f"{name} not found in PATH; skipping")
            continue
        try:
            _extract_external(binary, src, dst, cancel)
            return
        except OperationCancelled:
            raise
        except (ManagerError, OSError) as exc:
            log("WARN", f"{name} failed ({exc}); trying next decompressor")
            failures.append(f"{name}: {exc}")

    try:
        _extract_in_process(src, dst, cancel)
        return
    except OperationCancelled:
        raise
    except (ManagerError, OSError, lzma.LZMAError) as exc:
        failures.append(f"lzma: {exc}")

    raise DecompressionError(f"Failed to extract {src} -> {dst}: " + "; ".join(failures))


def _extract_external(binary: str, src: Path, dst: Path, cancel: Optional[CancelToken]) -> None:
    cmd = [binary, "-T0", "-dc", str(src)]
    log("DEBUG", f"Running: {' '.join(cmd)}")
    progress = ProgressWriter("Extracting")
    with tempfile.TemporaryFile() as errbuf:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errbuf)
        assert proc.stdout is not None
        try:
            with atomic_output(dst) as out:
                while True:
                    if cancel is not None and cancel.cancelled:
                        proc.kill()
                        proc.wait()
                        cancel.raise_if_cancelled(f"Extraction of {src}")
                    chunk = proc.stdout.read(EXTRACT_BUFFER_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    progress.write(chunk)
                returncode = proc.wait()
                if returncode != 0:
                    errbuf.seek(0)
                    stderr = errbuf.read().decode("utf-8", "replace").strip()
                    raise DecompressionError(f"{binary} exited with status {returncode}: {stderr}")
        finally:
            progress.close()
            proc.stdout.close()
            if proc.poll() is None:
                proc.kill()
                proc.wait()


def _extract_in_process(src: Path, dst: Path, cancel: Optional[CancelToken]) -> None:
    """Stream-decode ``src`` so no single decoded block exceeds the buffer size.

    Concatenated xz streams are decoded in turn; null bytes between them are
    stream padding and skipped.
    """
    log("INFO", "Using built-in xz decoder (slower)")
    progress = ProgressWriter("Extracting", total=src.stat().st_size)
    try:
        with open(src, "rb") as raw, atomic_output(dst) as out:
            reader = io.BufferedReader(raw, buffer_size=EXTRACT_BUFFER_SIZE)
            # None between streams.
            decompressor: Optional[lzma.LZMADecompressor] = None
            pending = b""
            seen_stream = False
            while True:
                if cancel is not None:
                    cancel.raise_if_cancelled(f"Extraction of {src}")
                if not pending and (decompressor is None or decompressor.needs_input):
                    pending = reader.read(EXTRACT_BUFFER_SIZE)
                    if not pending:
                        break
                    progress.advance(len(pending))
                if decompressor is None:
                    pending = pending.lstrip(b"\x00")
                    if not pending:
                        continue
                    decompressor = lzma.LZMADecompressor()
                    seen_stream = True
                out.write(decompressor.decompress(pending, max_length=EXTRACT_BUFFER_SIZE))
                pending = b""
                if decompressor.eof:
                    pending = decompressor.unused_data
                    decompressor = None
            if not seen_stream:
                raise DecompressionError(f"{src} contains no xz data")
            if decompressor is not None:
                raise DecompressionError(f"{src} is truncated (xz stream did not end)")
    finally:
        progress.close()
