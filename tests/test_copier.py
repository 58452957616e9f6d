"""Tests for imaging/copier.py - block copy, progress and sync.

Regular temporary files stand in for raw device nodes.
"""

import errno
import os
import threading
from unittest.mock import MagicMock, patch

import pytest

from diskimager.config import Settings
from diskimager.imaging.copier import (
    CopyEndpoint,
    ProgressReporter,
    copy_blocks,
    copy_image,
    copy_with_dd,
    get_device_size,
    measure_source,
    parse_dd_bytes,
    sync_device,
)
from diskimager.imaging.errors import (
    CopyFailedError,
    JobCancelledError,
    PermissionDeniedError,
    SyncFailedError,
)
from diskimager.types import EndpointKind

BLOCK = 4096


@pytest.fixture
def image(tmp_path):
    """An image file spanning several blocks plus a partial block."""
    path = tmp_path / "source.iso"
    path.write_bytes(os.urandom(BLOCK * 10 + 123))
    return path


@pytest.fixture
def fake_device(tmp_path):
    """A pre-existing file standing in for a raw device."""
    path = tmp_path / "rdisk9"
    path.write_bytes(b"\0" * (BLOCK * 12))
    return path


class TestCopyEndpoint:
    """Tests for CopyEndpoint constructors."""

    def test_constructors(self, tmp_path):
        """file() and device() should set the endpoint kind."""
        assert CopyEndpoint.file(tmp_path / "a.iso").kind == EndpointKind.FILE
        assert CopyEndpoint.device("/dev/rdisk4").is_device
        assert not CopyEndpoint.file("a.iso").is_device


class TestProgressReporter:
    """Tests for ProgressReporter."""

    def test_monotonic_and_single_terminal_value(self):
        """Values should increase and 1.0 should be emitted once by finish()."""
        values: list[float] = []
        reporter = ProgressReporter(100, values.append, interval=0)

        for done in (10, 10, 5, 50, 100, 100):
            reporter.update(done)
        reporter.finish()
        reporter.finish()

        assert values == [0.1, 0.5, 1.0]

    def test_throttled(self):
        """Updates inside the interval should be dropped."""
        values: list[float] = []
        reporter = ProgressReporter(100, values.append, interval=3600)

        reporter.update(10)
        reporter.update(20)
        reporter.update(30)

        assert values == [0.1]

    def test_silent_after_cancel(self):
        """Nothing should be emitted once cancellation is requested."""
        values: list[float] = []
        cancel = threading.Event()
        reporter = ProgressReporter(100, values.append, interval=0, cancel_event=cancel)

        reporter.update(10)
        cancel.set()
        reporter.update(20)
        reporter.finish()

        assert values == [0.1]

    def test_unknown_total(self):
        """Without a total only the terminal value is emitted."""
        values: list[float] = []
        reporter = ProgressReporter(None, values.append, interval=0)

        reporter.update(10)
        reporter.finish()

        assert values == [1.0]


class TestCopyBlocks:
    """Tests for copy_blocks."""

    def test_file_to_device(self, image, fake_device):
        """Bytes should land at the start of the device, in place."""
        values: list[float] = []
        result = copy_blocks(
            CopyEndpoint.file(image),
            CopyEndpoint.device(str(fake_device)),
            block_size=BLOCK,
            on_progress=values.append,
            progress_interval=0,
        )

        content = image.read_bytes()
        written = fake_device.read_bytes()
        assert result.bytes_copied == len(content)
        assert result.total_bytes == len(content)
        assert written[: len(content)] == content
        # Device is written in place, not truncated
        assert len(written) == BLOCK * 12

        assert values[-1] == 1.0
        assert values.count(1.0) == 1
        assert values == sorted(values)
        assert all(0.0 < v <= 1.0 for v in values)

    def test_device_to_file(self, fake_device, tmp_path):
        """Reading a device should produce an identical image file."""
        fake_device.write_bytes(os.urandom(BLOCK * 3))
        output = tmp_path / "out" / "capture.iso"
        output.parent.mkdir()

        result = copy_blocks(
            CopyEndpoint.device(str(fake_device)),
            CopyEndpoint.file(output),
            block_size=BLOCK,
            total_bytes=BLOCK * 3,
        )

        assert result.bytes_copied == BLOCK * 3
        assert output.read_bytes() == fake_device.read_bytes()

    def test_write_then_read_back(self, image, fake_device, tmp_path):
        """Reading a written device back should reproduce the image bytes."""
        length = image.stat().st_size
        copy_blocks(
            CopyEndpoint.file(image),
            CopyEndpoint.device(str(fake_device)),
            block_size=BLOCK,
        )

        readback = tmp_path / "readback.iso"
        result = copy_blocks(
            CopyEndpoint.device(str(fake_device)),
            CopyEndpoint.file(readback),
            block_size=BLOCK,
            total_bytes=length,
        )

        assert result.bytes_copied == length
        assert readback.read_bytes() == image.read_bytes()

    def test_total_bytes_caps_copy(self, image, tmp_path):
        """Copying should stop at total_bytes."""
        output = tmp_path / "prefix.bin"
        result = copy_blocks(
            CopyEndpoint.file(image),
            CopyEndpoint.file(output),
            block_size=BLOCK,
            total_bytes=BLOCK + 10,
        )

        assert result.bytes_copied == BLOCK + 10
        assert output.read_bytes() == image.read_bytes()[: BLOCK + 10]

    def test_empty_source(self, tmp_path):
        """An empty source should copy nothing and still finish at 1.0."""
        source = tmp_path / "empty.iso"
        source.write_bytes(b"")
        values: list[float] = []

        result = copy_blocks(
            CopyEndpoint.file(source),
            CopyEndpoint.file(tmp_path / "out.iso"),
            on_progress=values.append,
        )

        assert result.bytes_copied == 0
        assert values == [1.0]

    def test_cancel_before_start(self, image, tmp_path):
        """A pre-set cancel event should stop before the first block."""
        cancel = threading.Event()
        cancel.set()
        values: list[float] = []

        with pytest.raises(JobCancelledError):
            copy_blocks(
                CopyEndpoint.file(image),
                CopyEndpoint.file(tmp_path / "out.iso"),
                block_size=BLOCK,
                on_progress=values.append,
                cancel_event=cancel,
            )

        assert values == []

    def test_cancel_mid_copy(self, image, tmp_path):
        """Cancelling from a progress callback should stop at the next block."""
        cancel = threading.Event()
        values: list[float] = []

        def on_progress(value: float) -> None:
            values.append(value)
            if len(values) == 2:
                cancel.set()

        with pytest.raises(JobCancelledError):
            copy_blocks(
                CopyEndpoint.file(image),
                CopyEndpoint.file(tmp_path / "out.iso"),
                block_size=BLOCK,
                on_progress=on_progress,
                cancel_event=cancel,
                progress_interval=0,
            )

        assert len(values) == 2
        assert 1.0 not in values
        assert (tmp_path / "out.iso").stat().st_size == BLOCK * 2

    def test_permission_denied(self, image):
        """A permission error opening the device should be classified."""
        with patch(
            "builtins.open",
            side_effect=PermissionError(errno.EACCES, "Permission denied", "/dev/rdisk4"),
        ):
            with pytest.raises(PermissionDeniedError) as exc_info:
                copy_blocks(
                    CopyEndpoint.file(image),
                    CopyEndpoint.device("/dev/rdisk4"),
                    total_bytes=100,
                )

        assert exc_info.value.error_code == "PERMISSION_DENIED"

    def test_missing_device_is_copy_failure(self, image, tmp_path):
        """Other I/O errors should be reported as copy failures."""
        with pytest.raises(CopyFailedError) as exc_info:
            copy_blocks(
                CopyEndpoint.file(image),
                CopyEndpoint.device(str(tmp_path / "missing" / "rdisk9")),
                block_size=BLOCK,
            )

        assert exc_info.value.error_code == "COPY_FAILED"


class TestSizing:
    """Tests for get_device_size and measure_source."""

    def test_regular_file_size(self, fake_device):
        """A regular file standing in for a device should report its size."""
        assert get_device_size(str(fake_device)) == BLOCK * 12

    def test_missing_device(self, tmp_path):
        """A missing device should report None."""
        assert get_device_size(str(tmp_path / "nope")) is None

    def test_measure_file_source(self, image):
        """File sources should be sized from the filesystem."""
        assert measure_source(CopyEndpoint.file(image)) == image.stat().st_size

    def test_measure_missing_file_source(self, tmp_path):
        """Missing file sources should report None."""
        assert measure_source(CopyEndpoint.file(tmp_path / "nope.iso")) is None


class TestParseDdBytes:
    """Tests for parse_dd_bytes."""

    def test_gnu_format(self):
        """GNU dd status lines should be parsed."""
        output = (
            "1048576 bytes (1.0 MB, 1.0 MiB) copied, 0.1 s, 10 MB/s\r"
            "2097152 bytes (2.1 MB, 2.0 MiB) copied, 0.2 s, 10 MB/s\r"
        )
        assert parse_dd_bytes(output) == 2097152

    def test_bsd_format(self):
        """BSD dd summary lines should be parsed."""
        output = (
            "16+0 records in\n16+0 records out\n"
            "16777216 bytes transferred in 0.5 secs (33554432 bytes/sec)\n"
        )
        assert parse_dd_bytes(output) == 16777216

    def test_rate_is_not_a_byte_count(self):
        """A trailing bytes/sec rate should not override the byte count."""
        output = (
            "  2097152 bytes (2 MB, 2 MiB) transferred 0.100s, 21 MB/s\r"
            "4194304 bytes transferred in 0.2 secs (20971520 bytes/sec)\n"
        )
        assert parse_dd_bytes(output) == 4194304

    def test_no_status(self):
        """Output without a byte count should yield None."""
        assert parse_dd_bytes("16+0 records in\n") is None


class TestCopyWithDd:
    """Tests for copy_with_dd."""

    def _process(self, returncode: int, output: bytes) -> MagicMock:
        process = MagicMock()
        process.poll.return_value = returncode
        process.returncode = returncode
        process.stdout.read1.side_effect = [output, b""]
        process.pid = 4242
        return process

    def test_success(self, image):
        """A zero exit should report the bytes dd copied."""
        process = self._process(0, b"45179 bytes (45 kB) copied, 0.01 s\n")
        settings = Settings(dd_path="/bin/dd")
        values: list[float] = []

        with patch(
            "diskimager.imaging.copier.subprocess.Popen", return_value=process
        ) as mock_popen:
            result = copy_with_dd(
                CopyEndpoint.file(image),
                CopyEndpoint.device("/dev/rdisk4"),
                block_size=BLOCK,
                on_progress=values.append,
                settings=settings,
            )

        cmd = mock_popen.call_args.args[0]
        assert cmd[0] == "/bin/dd"
        assert f"if={image}" in cmd
        assert "of=/dev/rdisk4" in cmd
        assert f"bs={BLOCK}" in cmd
        assert result.bytes_copied == 45179
        assert values == [1.0]
        process.stdout.close.assert_called_once()

    def test_bsd_summary_reports_bytes_copied(self, image):
        """The BSD summary line should yield bytes copied, not the rate."""
        process = self._process(
            0,
            b"1+0 records in\n1+0 records out\n"
            b"45179 bytes transferred in 0.01 secs (4517900 bytes/sec)\n",
        )

        with patch("diskimager.imaging.copier.subprocess.Popen", return_value=process):
            result = copy_with_dd(
                CopyEndpoint.file(image),
                CopyEndpoint.device("/dev/rdisk4"),
                settings=Settings(),
            )

        assert result.bytes_copied == 45179

    def test_zero_interval_polls_with_floor(self, image):
        """A zero progress interval should still wait between polls."""
        process = self._process(0, b"45179 bytes (45 kB) copied, 0.01 s\n")
        process.poll.side_effect = [None, 0]
        cancel = MagicMock()
        cancel.wait.return_value = False
        cancel.is_set.return_value = False

        with patch("diskimager.imaging.copier.subprocess.Popen", return_value=process):
            copy_with_dd(
                CopyEndpoint.file(image),
                CopyEndpoint.device("/dev/rdisk4"),
                cancel_event=cancel,
                progress_interval=0.0,
                settings=Settings(),
            )

        assert cancel.wait.call_args.args[0] > 0

    def test_cancel_closes_output_pipe(self, image):
        """The dd output pipe should be closed after cancellation."""
        process = self._process(0, b"")
        process.poll.return_value = None
        cancel = threading.Event()
        cancel.set()

        with patch("diskimager.imaging.copier.subprocess.Popen", return_value=process):
            with pytest.raises(JobCancelledError):
                copy_with_dd(
                    CopyEndpoint.file(image),
                    CopyEndpoint.device("/dev/rdisk4"),
                    cancel_event=cancel,
                    settings=Settings(),
                )

        process.stdout.close.assert_called_once()

    def test_permission_denied(self, image):
        """dd permission errors should be classified."""
        process = self._process(1, b"dd: /dev/rdisk4: Permission denied\n")

        with patch("diskimager.imaging.copier.subprocess.Popen", return_value=process):
            with pytest.raises(PermissionDeniedError):
                copy_with_dd(
                    CopyEndpoint.file(image),
                    CopyEndpoint.device("/dev/rdisk4"),
                    settings=Settings(),
                )

    def test_failure(self, image):
        """Other dd failures should raise CopyFailedError."""
        process = self._process(1, b"dd: /dev/rdisk4: Input/output error\n")

        with patch("diskimager.imaging.copier.subprocess.Popen", return_value=process):
            with pytest.raises(CopyFailedError) as exc_info:
                copy_with_dd(
                    CopyEndpoint.file(image),
                    CopyEndpoint.device("/dev/rdisk4"),
                    settings=Settings(),
                )

        assert "Input/output error" in exc_info.value.message

    def test_cancel_terminates_process(self, image):
        """Cancelling should terminate dd and raise JobCancelledError."""
        process = self._process(0, b"")
        process.poll.return_value = None
        cancel = threading.Event()
        cancel.set()

        with patch("diskimager.imaging.copier.subprocess.Popen", return_value=process):
            with pytest.raises(JobCancelledError):
                copy_with_dd(
                    CopyEndpoint.file(image),
                    CopyEndpoint.device("/dev/rdisk4"),
                    cancel_event=cancel,
                    settings=Settings(),
                )

        process.terminate.assert_called_once()

    def test_missing_binary(self, image):
        """A dd binary that cannot start should raise CopyFailedError."""
        with patch(
            "diskimager.imaging.copier.subprocess.Popen",
            side_effect=FileNotFoundError("/bin/dd"),
        ):
            with pytest.raises(CopyFailedError):
                copy_with_dd(
                    CopyEndpoint.file(image),
                    CopyEndpoint.device("/dev/rdisk4"),
                    settings=Settings(),
                )


class TestCopyImage:
    """Tests for copy_image backend dispatch."""

    def test_native_backend(self, image, tmp_path):
        """The native backend should copy with settings' block size."""
        settings = Settings(copy_backend="native", block_size=BLOCK)
        output = tmp_path / "out.iso"

        result = copy_image(
            CopyEndpoint.file(image), CopyEndpoint.file(output), settings=settings
        )

        assert result.bytes_copied == image.stat().st_size
        assert output.read_bytes() == image.read_bytes()

    def test_dd_backend(self, image):
        """The dd backend should be selected from settings."""
        settings = Settings(copy_backend="dd", block_size=BLOCK)
        with patch("diskimager.imaging.copier.copy_with_dd") as mock_dd:
            copy_image(
                CopyEndpoint.file(image),
                CopyEndpoint.device("/dev/rdisk4"),
                settings=settings,
            )

        mock_dd.assert_called_once()
        assert mock_dd.call_args.kwargs["block_size"] == BLOCK


class TestSyncDevice:
    """Tests for sync_device."""

    def test_sync_regular_file(self, fake_device):
        """Syncing a file standing in for a device should succeed."""
        sync_device(str(fake_device))

    def test_sync_missing_device(self, tmp_path):
        """A missing device should raise SyncFailedError."""
        with pytest.raises(SyncFailedError) as exc_info:
            sync_device(str(tmp_path / "gone"))

        assert exc_info.value.error_code == "SYNC_FAILED"

    def test_fsync_failure(self, fake_device):
        """A hard fsync error should raise SyncFailedError."""
        with patch(
            "diskimager.imaging.copier.os.fsync",
            side_effect=OSError(errno.EIO, "Input/output error"),
        ):
            with pytest.raises(SyncFailedError):
                sync_device(str(fake_device))

    def test_fsync_unsupported_is_ignored(self, fake_device):
        """Device nodes without fsync support should not fail the sync."""
        with patch(
            "diskimager.imaging.copier.os.fsync",
            side_effect=OSError(errno.EINVAL, "Invalid argument"),
        ):
            sync_device(str(fake_device))
