"""Raw device path resolution.

Maps a mounted volume to the unbuffered node of its whole disk, e.g.
a volume on partition disk4s1 resolves to /dev/rdisk4. Writing through
the raw node (not the buffered /dev/disk4) gives block-aligned
throughput and avoids stale buffer-cache reads after a write.

Resolution is two-tier:
1. `info <mount path>` and its "Device Identifier:" line
2. `list`, scanning external disk groups for a partition named after the volume

Raw paths are resolved immediately before each imaging operation and
never cached, since device nodes can change across mount cycles.
"""

import logging
import re

from diskimager.config import Settings, get_settings
from diskimager.imaging.catalog import DeviceDescriptor
from diskimager.imaging.disktool import DiskToolError, run_disk_tool
from diskimager.imaging.errors import (
    DeviceInfoParseError,
    DeviceInfoUnavailableError,
    RawPathNotFoundError,
)

logger = logging.getLogger(__name__)

# disk4s1 -> disk4, disk3s1s1 -> disk3
_PARTITION_SUFFIX = re.compile(r"(?:s\d+)+$")
# "/dev/disk4 (external, physical):" starts a disk group in `list` output
_DISK_GROUP_HEADER = re.compile(r"^/dev/(disk\d+(?:s\d+)*)\b\s*(?:\(([^)]*)\))?")
# "   #:   TYPE NAME   SIZE   IDENTIFIER" gives the column offsets of a group
_COLUMN_HEADER = re.compile(
    r"^\s*#:\s+TYPE\s+(?P<name>NAME)\s+(?P<size>SIZE)\s+IDENTIFIER"
)
_PARTITION_ROW = re.compile(r"^\s*\d+:\s")
# Newer releases wrap names in Unicode directional isolates
_NAME_ISOLATES = "\u2068\u2069"

_DEVICE_IDENTIFIER_KEY = "Device Identifier:"


def strip_partition_suffix(identifier: str) -> str:
    """Strip a trailing partition index from a disk identifier.

    Args:
        identifier: Disk or partition identifier (e.g., 'disk4s1').

    Returns:
        Whole-disk identifier (e.g., 'disk4').
    """
    return _PARTITION_SUFFIX.sub("", identifier)


def to_raw_device_path(identifier: str, raw_prefix: str = "/dev/r") -> str:
    """Convert a disk or partition identifier to a raw whole-disk path.

    Args:
        identifier: Identifier such as 'disk4s1' or '/dev/disk4s1'.
        raw_prefix: Raw device namespace prefix.

    Returns:
        Raw device path (e.g., '/dev/rdisk4').
    """
    name = identifier.strip()
    if name.startswith("/dev/"):
        name = name[len("/dev/") :]
    return f"{raw_prefix}{strip_partition_suffix(name)}"


def parse_device_identifier(info_output: str) -> str | None:
    """Extract the device identifier from `info` output.

    Args:
        info_output: Key/value text printed by the disk tool.

    Returns:
        The identifier (e.g., 'disk4s1'), or None if absent.
    """
    for line in info_output.splitlines():
        if _DEVICE_IDENTIFIER_KEY in line:
            _, _, value = line.partition(":")
            value = value.strip()
            if value:
                return value
    return None


def _is_external_physical(qualifier: str) -> bool:
    kinds = {part.strip() for part in qualifier.split(",")}
    return {"external", "physical"} <= kinds


def _partition_name(line: str, name_col: int, size_col: int) -> str:
    # The size column may start one character early with '*' or '+'
    return line[name_col : size_col - 1].strip().strip(_NAME_ISOLATES).strip()


def find_disk_in_listing(
    listing: str,
    device_name: str,
    *,
    allow_last_disk: bool = False,
) -> str | None:
    """Find the external disk that carries a volume with the given name.

    Only groups headed "(external, physical)" are searched, so internal
    and synthesized disks are never returned. The NAME column is
    compared whole and case-insensitively.

    Args:
        listing: Text printed by the disk tool's `list` command.
        device_name: Display name of the volume to look for.
        allow_last_disk: Return the last external disk listed when no
            group names the device.

    Returns:
        Whole-disk identifier (e.g., 'disk4'), or None.
    """
    wanted = device_name.strip().casefold()
    current_disk: str | None = None
    last_external: str | None = None
    columns: tuple[int, int] | None = None

    for line in listing.splitlines():
        header = _DISK_GROUP_HEADER.match(line.strip())
        if header:
            columns = None
            if _is_external_physical(header.group(2) or ""):
                current_disk = strip_partition_suffix(header.group(1))
                last_external = current_disk
            else:
                current_disk = None
            continue

        if current_disk is None:
            continue

        column_header = _COLUMN_HEADER.match(line)
        if column_header:
            columns = (column_header.start("name"), column_header.start("size"))
            continue

        if columns is None or not wanted or not _PARTITION_ROW.match(line):
            continue

        if _partition_name(line, *columns).casefold() == wanted:
            logger.debug("Found device '%s' on disk %s", device_name, current_disk)
            return current_disk

    if allow_last_disk and last_external:
        logger.warning(
            "No disk group names '%s'; using last external disk %s",
            device_name,
            last_external,
        )
        return last_external

    return None


def _decode(output: bytes, command: str) -> str:
    try:
        return output.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DeviceInfoParseError(
            f"Could not decode disk tool '{command}' output: {e}"
        ) from e


class RawPathResolver:
    """Resolve device descriptors to raw whole-disk device paths."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def resolve(self, device: DeviceDescriptor) -> str:
        """Resolve a device to its raw whole-disk path.

        Args:
            device: Mounted device to resolve.

        Returns:
            Raw device path (e.g., '/dev/rdisk4').

        Raises:
            DeviceInfoUnavailableError: The disk tool cannot describe the device.
            DeviceInfoParseError: The disk tool output is unreadable.
            RawPathNotFoundError: No raw identifier could be extracted.
        """
        logger.debug("Resolving raw device for %s", device.mount_path)

        try:
            result = run_disk_tool(["info", device.mount_path], settings=self._settings)
        except DiskToolError as e:
            logger.warning("info failed for %s (%s), trying list", device.mount_path, e)
            return self._resolve_by_listing(device)

        if result.ok:
            identifier = parse_device_identifier(_decode(result.stdout, "info"))
            if identifier:
                raw_path = to_raw_device_path(
                    identifier, self._settings.raw_device_prefix
                )
                logger.info(
                    "Resolved %s (identifier %s) to %s",
                    device.mount_path,
                    identifier,
                    raw_path,
                )
                return raw_path
            logger.warning(
                "No device identifier in info output for %s, trying list",
                device.mount_path,
            )
        else:
            logger.warning(
                "info failed for %s, trying list: %s",
                device.mount_path,
                result.stderr_text() or "unknown error",
            )

        return self._resolve_by_listing(device)

    def _resolve_by_listing(self, device: DeviceDescriptor) -> str:
        try:
            result = run_disk_tool(["list"], settings=self._settings)
        except DiskToolError as e:
            raise DeviceInfoUnavailableError(
                f"Failed to get device information for {device.name}: {e.message}"
            ) from e

        if not result.ok:
            raise DeviceInfoUnavailableError(
                f"Failed to get device information for {device.name}: "
                f"list exited with {result.returncode}"
            )

        disk = find_disk_in_listing(
            _decode(result.stdout, "list"),
            device.name,
            allow_last_disk=self._settings.allow_last_disk_fallback,
        )
        if disk is None:
            logger.error("No disk found for device '%s'", device.name)
            raise RawPathNotFoundError(device.name)

        raw_path = to_raw_device_path(disk, self._settings.raw_device_prefix)
        logger.info("Resolved %s by listing to %s", device.name, raw_path)
        return raw_path


__all__ = [
    "RawPathResolver",
    "find_disk_in_listing",
    "parse_device_identifier",
    "strip_partition_suffix",
    "to_raw_device_path",
]
