"""Wrapper around the OS disk-management tool.

All invocations of the disk tool (info, list, mount, unmount) go
through run_disk_tool so that tests can patch a single seam.
"""

import logging
import plistlib
import shlex
import subprocess
from dataclasses import dataclass
from typing import Any
from xml.parsers.expat import ExpatError

from diskimager.config import Settings, get_settings

logger = logging.getLogger(__name__)


class DiskToolError(Exception):
    """Raised when the disk tool cannot be executed."""

    def __init__(self, message: str, code: str = "disk_tool_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class DiskToolResult:
    """Result of a disk tool invocation.

    Attributes:
        returncode: Process exit status.
        stdout: Raw standard output.
        stderr: Raw standard error.
    """

    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        """Whether the tool exited with status 0."""
        return self.returncode == 0

    def stderr_text(self) -> str:
        """Standard error decoded leniently, for log messages."""
        return self.stderr.decode("utf-8", errors="replace").strip()


def run_disk_tool(
    args: list[str],
    *,
    settings: Settings | None = None,
) -> DiskToolResult:
    """Run the disk tool with the given arguments.

    Args:
        args: Arguments following the tool path (e.g. ["info", "/Volumes/X"]).
        settings: Application settings (optional).

    Returns:
        DiskToolResult with exit status and raw output.

    Raises:
        DiskToolError: The tool could not be started or timed out.
    """
    if settings is None:
        settings = get_settings()

    cmd = [settings.diskutil_path, *args]
    logger.debug("Running disk tool: %s", shlex.join(cmd))

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            timeout=settings.disk_tool_timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise DiskToolError(
            f"{shlex.join(cmd)} timed out after {settings.disk_tool_timeout}s",
            code="timeout",
        ) from e
    except OSError as e:
        raise DiskToolError(f"Failed to run {cmd[0]}: {e}") from e

    if result.returncode != 0:
        logger.debug(
            "Disk tool exited with %d: %s",
            result.returncode,
            result.stderr.decode("utf-8", errors="replace").strip(),
        )

    return DiskToolResult(
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def query_plist(path: str, *, settings: Settings | None = None) -> dict[str, Any]:
    """Query the disk tool for a property list describing a path.

    Args:
        path: Mount point, device node or disk identifier.
        settings: Application settings (optional).

    Returns:
        Parsed property list.

    Raises:
        DiskToolError: The tool failed or returned unparseable output.
    """
    result = run_disk_tool(["info", "-plist", path], settings=settings)
    if not result.ok:
        raise DiskToolError(
            f"info -plist {path} failed: {result.stderr_text()}",
            code="info_failed",
        )
    try:
        data = plistlib.loads(result.stdout)
    except (plistlib.InvalidFileException, ValueError, ExpatError) as e:
        raise DiskToolError(
            f"Could not parse info -plist output for {path}: {e}",
            code="parse_error",
        ) from e
    if not isinstance(data, dict):
        raise DiskToolError(
            f"Unexpected info -plist output for {path}", code="parse_error"
        )
    return data


__all__ = [
    "DiskToolError",
    "DiskToolResult",
    "query_plist",
    "run_disk_tool",
]
