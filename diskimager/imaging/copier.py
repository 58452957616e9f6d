"""Block copy engine for imaging operations.

This module handles the byte-for-byte copy between image files and raw
devices in either direction:
- Streaming copy in fixed-size blocks (1 MiB by default)
- Progress as bytes transferred / total bytes, reaching exactly 1.0
- Cooperative cancellation between blocks
- Explicit device sync after writes
- Optional dd backend for environments that prefer the system tool

Progress callbacks run on the copying thread. Marshaling them to a UI
thread is the caller's concern.
"""

import errno
import logging
import os
import re
import shlex
import stat
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from diskimager.config import Settings, get_settings
from diskimager.imaging.disktool import DiskToolError, query_plist
from diskimager.imaging.errors import (
    CopyFailedError,
    JobCancelledError,
    PermissionDeniedError,
    SyncFailedError,
)
from diskimager.types import EndpointKind

logger = logging.getLogger(__name__)

# Default block size for I/O operations (1 MiB)
DEFAULT_BLOCK_SIZE = 1024 * 1024

# Default minimum delay between progress callbacks (seconds)
DEFAULT_PROGRESS_INTERVAL = 0.1

ProgressCallback = Callable[[float], None]

# fsync is not supported on every device node
_FSYNC_UNSUPPORTED = {errno.EINVAL, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOTTY}
_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM}

# "1048576 bytes (1.0 MB, 1.0 MiB) copied, ..." / "... transferred in ..."
# A count followed by "/" is a rate ("33554432 bytes/sec"), not progress
_DD_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes\b(?!/)")
_DD_PERMISSION_DENIED = "Permission denied"

# Lower bound on how often dd output is polled (seconds)
_DD_MIN_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class CopyEndpoint:
    """Source or destination of a copy.

    Attributes:
        path: Filesystem path of the image file or raw device node.
        kind: Whether the path is a regular file or a device.
    """

    path: str
    kind: EndpointKind

    @classmethod
    def file(cls, path: str | Path) -> "CopyEndpoint":
        """Endpoint for an image file."""
        return cls(str(path), EndpointKind.FILE)

    @classmethod
    def device(cls, path: str) -> "CopyEndpoint":
        """Endpoint for a raw device node."""
        return cls(path, EndpointKind.DEVICE)

    @property
    def is_device(self) -> bool:
        """Whether this endpoint is a device."""
        return self.kind == EndpointKind.DEVICE


@dataclass
class CopyResult:
    """Result of a copy operation.

    Attributes:
        bytes_copied: Number of bytes copied.
        total_bytes: Total bytes expected, if known upfront.
    """

    bytes_copied: int
    total_bytes: int | None


class ProgressReporter:
    """Turn byte counts into a throttled, monotonic progress signal.

    Values strictly below 1.0 are emitted at most once per interval.
    The terminal 1.0 is emitted exactly once by finish(). Nothing is
    emitted once the cancel event is set.
    """

    def __init__(
        self,
        total_bytes: int | None,
        on_progress: ProgressCallback | None,
        *,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.total_bytes = total_bytes
        self._on_progress = on_progress
        self._interval = interval
        self._cancel_event = cancel_event
        self._last_value = 0.0
        self._last_emit: float | None = None
        self._finished = False

    @property
    def last_value(self) -> float:
        """Last progress value emitted."""
        return self._last_value

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def update(self, bytes_done: int) -> None:
        """Report the number of bytes transferred so far."""
        if self._on_progress is None or not self.total_bytes or self._finished:
            return
        if self._cancelled():
            return

        value = min(bytes_done / self.total_bytes, 1.0)
        if value >= 1.0 or value <= self._last_value:
            return

        now = time.monotonic()
        if self._last_emit is not None and now - self._last_emit < self._interval:
            return

        self._last_value = value
        self._last_emit = now
        self._on_progress(value)

    def finish(self) -> None:
        """Emit the terminal 1.0 value once."""
        if self._finished or self._cancelled():
            return
        self._finished = True
        self._last_value = 1.0
        if self._on_progress is not None:
            self._on_progress(1.0)


def get_device_size(device_path: str, settings: Settings | None = None) -> int | None:
    """Get the size of a device (or of a regular file standing in for one).

    Tries, in order: regular file size, the disk tool's TotalSize,
    the sysfs size attribute, and seeking to the end of the node.

    Args:
        device_path: Path to the device.
        settings: Application settings (optional).

    Returns:
        Size in bytes, or None if unknown.
    """
    try:
        st = os.stat(device_path)
    except OSError as e:
        logger.warning("Could not stat %s: %s", device_path, e)
        return None

    if stat.S_ISREG(st.st_mode):
        return st.st_size

    try:
        info = query_plist(device_path, settings=settings)
        size = info.get("TotalSize") or info.get("Size")
        if isinstance(size, int) and size > 0:
            return size
    except DiskToolError as e:
        logger.debug("Disk tool could not size %s: %s", device_path, e)

    # Size is in 512-byte sectors
    size_path = Path("/sys/class/block") / Path(device_path).name / "size"
    try:
        if size_path.exists():
            return int(size_path.read_text().strip()) * 512
    except (OSError, ValueError) as e:
        logger.debug("Could not read %s: %s", size_path, e)

    try:
        fd = os.open(device_path, os.O_RDONLY)
        try:
            end = os.lseek(fd, 0, os.SEEK_END)
        finally:
            os.close(fd)
        if end > 0:
            return end
    except OSError as e:
        logger.debug("Could not seek %s: %s", device_path, e)

    logger.warning("Could not determine size of %s", device_path)
    return None


def measure_source(source: CopyEndpoint, settings: Settings | None = None) -> int | None:
    """Total number of bytes a copy from this source will transfer."""
    if source.is_device:
        return get_device_size(source.path, settings)
    try:
        return os.path.getsize(source.path)
    except OSError as e:
        logger.warning("Could not size %s: %s", source.path, e)
        return None


def _classify_os_error(
    e: OSError, source: CopyEndpoint, destination: CopyEndpoint
) -> CopyFailedError | PermissionDeniedError:
    if isinstance(e, PermissionError) or e.errno in _PERMISSION_ERRNOS:
        return PermissionDeniedError(e.filename or destination.path)
    return CopyFailedError(f"Error copying {source.path} to {destination.path}: {e}")


def _copy_stream(
    source: BinaryIO,
    dest: BinaryIO,
    total_bytes: int | None,
    block_size: int,
    reporter: ProgressReporter,
    cancel_event: threading.Event | None,
) -> int:
    """Copy blocks from source to dest until EOF or total_bytes.

    Returns:
        Number of bytes copied.

    Raises:
        JobCancelledError: The cancel event was set.
    """
    bytes_copied = 0

    while total_bytes is None or bytes_copied < total_bytes:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Copy cancelled after %d bytes", bytes_copied)
            raise JobCancelledError()

        read_size = block_size
        if total_bytes is not None:
            read_size = min(block_size, total_bytes - bytes_copied)

        chunk = source.read(read_size)
        if not chunk:
            break

        dest.write(chunk)
        bytes_copied += len(chunk)
        reporter.update(bytes_copied)

        # Log progress every 64 MiB
        if bytes_copied % (64 * 1024 * 1024) < len(chunk):
            logger.debug("Copy progress: %d / %s bytes", bytes_copied, total_bytes)

    return bytes_copied


def copy_blocks(
    source: CopyEndpoint,
    destination: CopyEndpoint,
    *,
    block_size: int = DEFAULT_BLOCK_SIZE,
    on_progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
    total_bytes: int | None = None,
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
    settings: Settings | None = None,
) -> CopyResult:
    """Copy a file to a device, or a device to a file, block by block.

    Args:
        source: Where to read from.
        destination: Where to write to. Device destinations are opened
            in place; file destinations are created or truncated.
        block_size: Block size for I/O.
        on_progress: Called with progress values in (0.0, 1.0].
        cancel_event: When set, the copy stops before the next block.
        total_bytes: Total to copy; measured from the source if omitted.
        progress_interval: Minimum seconds between progress callbacks.
        settings: Application settings (optional, used for device sizing).

    Returns:
        CopyResult with bytes copied.

    Raises:
        PermissionDeniedError: Access to an endpoint was denied.
        CopyFailedError: Any other I/O error.
        JobCancelledError: The copy was cancelled.
    """
    if total_bytes is None:
        total_bytes = measure_source(source, settings)

    logger.info(
        "Copying %s -> %s (%s bytes, block size %d)",
        source.path,
        destination.path,
        total_bytes if total_bytes is not None else "unknown",
        block_size,
    )

    reporter = ProgressReporter(
        total_bytes,
        on_progress,
        interval=progress_interval,
        cancel_event=cancel_event,
    )
    dest_mode = "r+b" if destination.is_device else "wb"

    try:
        with open(source.path, "rb") as src, open(destination.path, dest_mode) as dst:
            bytes_copied = _copy_stream(
                src, dst, total_bytes, block_size, reporter, cancel_event
            )

            dst.flush()
            if destination.is_device:
                _fsync(dst.fileno(), destination.path)

    except OSError as e:
        error = _classify_os_error(e, source, destination)
        logger.error("Copy failed: %s", error.message)
        raise error from e

    logger.info("Copied %d bytes to %s", bytes_copied, destination.path)
    reporter.finish()
    return CopyResult(bytes_copied=bytes_copied, total_bytes=total_bytes)


def parse_dd_bytes(output: str) -> int | None:
    """Parse the latest transferred-byte count from dd status output.

    Args:
        output: Accumulated dd stderr/stdout.

    Returns:
        Bytes transferred so far, or None if no status line was seen.
    """
    matches = _DD_BYTES_PATTERN.findall(output)
    if not matches:
        return None
    return int(matches[-1])


def _drain(stream: BinaryIO, chunks: list[bytes], lock: threading.Lock) -> None:
    for chunk in iter(lambda: stream.read1(4096), b""):  # type: ignore[attr-defined]
        with lock:
            chunks.append(chunk)


def copy_with_dd(
    source: CopyEndpoint,
    destination: CopyEndpoint,
    *,
    block_size: int = DEFAULT_BLOCK_SIZE,
    on_progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
    total_bytes: int | None = None,
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
    settings: Settings | None = None,
) -> CopyResult:
    """Copy using the system dd utility, polling its status output.

    Takes the same arguments as copy_blocks. The dd process is
    terminated when the cancel event is set.

    Raises:
        PermissionDeniedError: dd reported a permission error.
        CopyFailedError: dd could not start or exited non-zero.
        JobCancelledError: The copy was cancelled.
    """
    if settings is None:
        settings = get_settings()
    if cancel_event is None:
        cancel_event = threading.Event()
    if total_bytes is None:
        total_bytes = measure_source(source, settings)

    cmd = [
        settings.dd_path,
        f"if={source.path}",
        f"of={destination.path}",
        f"bs={block_size}",
        "status=progress",
    ]
    logger.info("Executing copy: %s", shlex.join(cmd))

    reporter = ProgressReporter(
        total_bytes,
        on_progress,
        interval=progress_interval,
        cancel_event=cancel_event,
    )

    try:
        process = subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT
        )
    except OSError as e:
        raise CopyFailedError(f"Failed to execute {cmd[0]}: {e}") from e

    chunks: list[bytes] = []
    lock = threading.Lock()
    reader = threading.Thread(
        target=_drain, args=(process.stdout, chunks, lock), daemon=True
    )
    reader.start()

    def snapshot() -> str:
        with lock:
            return b"".join(chunks).decode("utf-8", errors="replace")

    poll_interval = max(progress_interval, _DD_MIN_POLL_INTERVAL)
    try:
        while process.poll() is None:
            if cancel_event.wait(poll_interval):
                logger.info("Cancelling dd (pid %d)", process.pid)
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                reader.join(timeout=1)
                raise JobCancelledError()

            bytes_done = parse_dd_bytes(snapshot())
            if bytes_done is not None:
                reporter.update(bytes_done)

        reader.join(timeout=5)
    finally:
        if process.stdout is not None:
            process.stdout.close()

    output = snapshot()
    exit_code = process.returncode
    logger.debug("dd exited with %d: %s", exit_code, output.strip()[-500:])

    if exit_code != 0:
        if _DD_PERMISSION_DENIED in output:
            logger.error("dd reported permission denied")
            raise PermissionDeniedError(destination.path)
        last_line = output.strip().splitlines()[-1] if output.strip() else ""
        raise CopyFailedError(f"dd failed with exit code {exit_code}: {last_line}")

    bytes_copied = parse_dd_bytes(output)
    if bytes_copied is None:
        bytes_copied = total_bytes or 0

    reporter.finish()
    return CopyResult(bytes_copied=bytes_copied, total_bytes=total_bytes)


def copy_image(
    source: CopyEndpoint,
    destination: CopyEndpoint,
    *,
    settings: Settings | None = None,
    on_progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
) -> CopyResult:
    """Copy with the backend and tuning selected in settings.

    Args:
        source: Where to read from.
        destination: Where to write to.
        settings: Application settings (optional).
        on_progress: Progress callback.
        cancel_event: Cancellation signal.

    Returns:
        CopyResult with bytes copied.
    """
    if settings is None:
        settings = get_settings()

    copier = copy_with_dd if settings.copy_backend == "dd" else copy_blocks
    return copier(
        source,
        destination,
        block_size=settings.block_size,
        on_progress=on_progress,
        cancel_event=cancel_event,
        progress_interval=settings.progress_interval,
        settings=settings,
    )


def _fsync(fd: int, path: str) -> None:
    try:
        os.fsync(fd)
    except OSError as e:
        if e.errno not in _FSYNC_UNSUPPORTED:
            raise
        logger.debug("fsync not supported on %s: %s", path, e)


def sync_device(device_path: str) -> None:
    """Flush buffered writes to a device.

    A process exiting does not guarantee that writes reached external
    media, so this is called after every device write.

    Args:
        device_path: Raw device path that was written.

    Raises:
        SyncFailedError: The device could not be flushed.
    """
    logger.info("Syncing %s", device_path)
    os.sync()

    try:
        fd = os.open(device_path, os.O_RDONLY)
    except OSError as e:
        logger.error("Could not open %s for sync: %s", device_path, e)
        raise SyncFailedError(device_path, str(e)) from e

    try:
        _fsync(fd, device_path)
    except OSError as e:
        logger.error("Sync failed for %s: %s", device_path, e)
        raise SyncFailedError(device_path, str(e)) from e
    finally:
        os.close(fd)


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "DEFAULT_PROGRESS_INTERVAL",
    "CopyEndpoint",
    "CopyResult",
    "ProgressCallback",
    "ProgressReporter",
    "copy_blocks",
    "copy_image",
    "copy_with_dd",
    "get_device_size",
    "measure_source",
    "parse_dd_bytes",
    "sync_device",
]
