"""Mount and unmount of removable volumes via the disk tool."""

import logging

from diskimager.config import Settings, get_settings
from diskimager.imaging.catalog import DeviceDescriptor
from diskimager.imaging.disktool import DiskToolError, run_disk_tool

logger = logging.getLogger(__name__)


class MountController:
    """Change the mount state of a volume.

    Each call runs a single disk tool command and reports success as a
    zero exit status. There is no retry.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def unmount(self, device: DeviceDescriptor) -> bool:
        """Unmount a volume. Returns True on success."""
        return self._run("unmount", device)

    def mount(self, device: DeviceDescriptor) -> bool:
        """Mount a volume. Returns True on success."""
        return self._run("mount", device)

    def _run(self, action: str, device: DeviceDescriptor) -> bool:
        logger.info("Running %s for %s", action, device.mount_path)
        try:
            result = run_disk_tool([action, device.mount_path], settings=self._settings)
        except DiskToolError as e:
            logger.error("Error running %s for %s: %s", action, device.mount_path, e)
            return False

        if not result.ok:
            logger.error(
                "%s failed for %s (exit %d): %s",
                action,
                device.mount_path,
                result.returncode,
                result.stderr_text(),
            )
            return False

        return True


__all__ = ["MountController"]
