"""Progress reporting for long-running byte streams (download, extraction)."""

from __future__ import annotations

import sys
import time
from typing import Optional, TextIO

from container_host.utils import humanize_bytes


class ProgressWriter:
    """Write-sink that counts bytes and redraws a single status line.

    ``total`` is ``None`` when the final size is unknown (e.g. decompressed
    output). The line is redrawn at most once per ``interval`` seconds, and
    always when the known total is reached.
    """

    def __init__(
        self,
        label: str,
        total: Optional[int] = None,
        stream: Optional[TextIO] = None,
        interval: float = 0.2,
    ) -> None:
        self.label = label
        self.total = total if total and total > 0 else None
        self.stream = stream if stream is not None else sys.stdout
        self.interval = interval
        self.processed = 0
        self._started = time.monotonic()
        self._last: Optional[float] = None
        self._drawn = False

    def write(self, data: bytes) -> int:
        n = len(data)
        self.advance(n)
        return n

    def advance(self, n: int) -> None:
        """Count ``n`` bytes processed without receiving them."""
        self.processed += n
        now = time.monotonic()
        finished = self.total is not None and self.processed >= self.total
        if self._last is None or now - self._last >= self.interval or finished:
            self._render()
            self._last = now

    @property
    def rate(self) -> float:
        elapsed = time.monotonic() - self._started
        return self.processed / elapsed if elapsed > 0 else 0.0

    def line(self) -> str:
        speed = f"{humanize_bytes(self.rate)}/s"
        if self.total:
            pct = self.processed * 100 / self.total
            return (
                f"{self.label}... {humanize_bytes(self.processed)}/{humanize_bytes(self.total)} "
                f"({pct:.1f}%) {speed}"
            )
        return f"{self.label}... {humanize_bytes(self.processed)} {speed}"

    def _render(self) -> None:
        self.stream.write(f"\r{self.line()}")
        self.stream.flush()
        self._drawn = True

    def close(self) -> None:
        if self._drawn:
            self.stream.write("\n")
            self.stream.flush()
            self._drawn = False
