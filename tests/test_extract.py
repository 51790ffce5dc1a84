"""Tests for container_host.extract module."""

from __future__ import annotations

import contextlib
import lzma
import os
import stat
from unittest.mock import patch

import pytest

from container_host.constants import EXTRACT_BUFFER_SIZE
from container_host.exceptions import DecompressionError, OperationCancelled
from container_host.extract import _extract_external, _extract_in_process, atomic_output, extract_xz
from container_host.utils import CancelToken

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


def _write_xz(path, payload: bytes) -> None:
    path.write_bytes(lzma.compress(payload, format=lzma.FORMAT_XZ))


def _leftovers(directory, name):
    return [p for p in directory.iterdir() if p.name.startswith(f"{name}.tmp-")]


def _script(path, body: str):
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


class TestAtomicOutput:
    def test_renames_on_success(self, tmp_path):
        dst = tmp_path / "out.bin"
        with atomic_output(dst) as out:
            out.write(b"hello")
            assert not dst.exists()
        assert dst.read_bytes() == b"hello"
        assert _leftovers(tmp_path, "out.bin") == []

    def test_removes_temp_on_error(self, tmp_path):
        dst = tmp_path / "out.bin"
        with pytest.raises(RuntimeError):
            with atomic_output(dst) as out:
                out.write(b"partial")
                raise RuntimeError("boom")
        assert not dst.exists()
        assert _leftovers(tmp_path, "out.bin") == []


class TestInProcessDecoder:
    @pytest.fixture(autouse=True)
    def no_external_tools(self):
        with patch("container_host.extract.shutil.which", return_value=None):
            yield

    def test_decompresses_single_stream(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        payload = os.urandom(4096) * 64
        _write_xz(src, payload)
        extract_xz(src, dst)
        assert dst.read_bytes() == payload

    def test_concatenated_streams_with_padding(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        src.write_bytes(lzma.compress(b"first-") + b"\x00" * 8 + lzma.compress(b"second"))
        extract_xz(src, dst)
        assert dst.read_bytes() == b"first-second"

    def test_garbage_input_leaves_no_destination(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        src.write_bytes(b"this is not xz data at all")
        with pytest.raises(DecompressionError, match="lzma"):
            extract_xz(src, dst)
        assert not dst.exists()
        assert _leftovers(tmp_path, "disk.qcow2") == []

    def test_truncated_stream_is_rejected(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        src.write_bytes(lzma.compress(os.urandom(8192))[:-16])
        with pytest.raises(DecompressionError):
            extract_xz(src, dst)
        assert not dst.exists()

    def test_empty_input_is_rejected(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        src.write_bytes(b"")
        with pytest.raises(DecompressionError, match="no xz data"):
            extract_xz(src, dst)

    def test_decoded_writes_never_exceed_buffer(self, tmp_path):
        src = tmp_path / "zeros.xz"
        size = 32 * EXTRACT_BUFFER_SIZE
        src.write_bytes(lzma.compress(bytes(size), preset=0))
        sizes = []

        class _Sink:
            def write(self, data):
                sizes.append(len(data))
                return len(data)

        @contextlib.contextmanager
        def _sink(destination):
            yield _Sink()

        with patch("container_host.extract.atomic_output", _sink):
            _extract_in_process(src, tmp_path / "zeros.qcow2", None)
        assert sum(sizes) == size
        assert max(sizes) <= EXTRACT_BUFFER_SIZE

    def test_cancellation_propagates(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        _write_xz(src, b"payload")
        token = CancelToken()
        token.cancel("SIGINT")
        with pytest.raises(OperationCancelled):
            extract_xz(src, dst, cancel=token)
        assert not dst.exists()


class TestStrategyOrder:
    def test_falls_back_through_every_decompressor(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        _write_xz(src, b"fallback payload")
        with patch("container_host.extract.shutil.which", side_effect=lambda name: f"/bin/{name}"), patch(
            "container_host.extract._extract_external", side_effect=DecompressionError("boom")
        ) as mock_external, patch("container_host.extract.log") as mock_log:
            extract_xz(src, dst)
        assert [c.args[0] for c in mock_external.call_args_list] == ["/bin/xz", "/bin/unxz"]
        warnings = [c.args[1] for c in mock_log.call_args_list if c.args[0] == "WARN"]
        assert len(warnings) == 2
        assert dst.read_bytes() == b"fallback payload"

    def test_first_success_wins(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        _write_xz(src, b"x")
        with patch("container_host.extract.shutil.which", return_value="/bin/xz"), patch(
            "container_host.extract._extract_external"
        ) as mock_external, patch("container_host.extract._extract_in_process") as mock_inproc:
            extract_xz(src, dst)
        mock_external.assert_called_once()
        mock_inproc.assert_not_called()

    def test_all_failures_are_reported(self, tmp_path):
        src = tmp_path / "disk.xz"
        dst = tmp_path / "disk.qcow2"
        src.write_bytes(b"junk")
        with patch("container_host.extract.shutil.which", return_value="/bin/xz"), patch(
            "container_host.extract._extract_external", side_effect=DecompressionError("exit 1")
        ):
            with pytest.raises(DecompressionError) as exc:
                extract_xz(src, dst)
        message = str(exc.value)
        assert "xz: exit 1" in message
        assert "unxz: exit 1" in message
        assert "lzma:" in message


@posix_only
class TestExternalDecompressor:
    def test_streams_stdout_into_destination(self, tmp_path):
        fake_xz = _script(tmp_path / "fake-xz", 'cat "$3"')
        src = tmp_path / "input.bin"
        src.write_bytes(b"raw bytes")
        dst = tmp_path / "output.bin"
        _extract_external(str(fake_xz), src, dst, None)
        assert dst.read_bytes() == b"raw bytes"

    def test_failure_discards_partial_output(self, tmp_path):
        fake_xz = _script(tmp_path / "fake-xz", "echo partial\necho corrupt input >&2\nexit 1")
        src = tmp_path / "input.bin"
        src.write_bytes(b"whatever")
        dst = tmp_path / "output.bin"
        with pytest.raises(DecompressionError, match="corrupt input"):
            _extract_external(str(fake_xz), src, dst, None)
        assert not dst.exists()
        assert _leftovers(tmp_path, "output.bin") == []

    def test_killed_decompressor_keeps_prior_artifact(self, tmp_path):
        fake_xz = _script(tmp_path / "fake-xz", "echo partial\nkill -9 $$")
        src = tmp_path / "input.bin"
        src.write_bytes(b"whatever")
        dst = tmp_path / "output.bin"
        dst.write_bytes(b"complete prior disk")
        with pytest.raises(DecompressionError, match="status -9"):
            _extract_external(str(fake_xz), src, dst, None)
        assert dst.read_bytes() == b"complete prior disk"
        assert _leftovers(tmp_path, "output.bin") == []
