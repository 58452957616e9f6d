"""Raw device access checks.

Writing to removable media requires read/write access to raw disk
nodes, which normally means running with administrator privileges.
These checks only report; relaunching with elevated privileges is left
to the calling application.
"""

import logging

from diskimager.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Bytes read by the access probe
_PROBE_BYTES = 512


def check_raw_device_access(device_path: str) -> bool:
    """Test whether a raw device can be opened and read.

    Args:
        device_path: Raw device path (e.g., '/dev/rdisk4').

    Returns:
        True if the device could be opened and read.
    """
    logger.debug("Testing access to raw device: %s", device_path)
    try:
        with open(device_path, "rb") as f:
            f.read(_PROBE_BYTES)
    except OSError as e:
        logger.warning("Cannot access raw device %s: %s", device_path, e)
        return False
    return True


def has_admin_privileges(settings: Settings | None = None) -> bool:
    """Check for raw disk access by probing the system disk.

    Args:
        settings: Application settings (optional).

    Returns:
        True if the probe device is readable.
    """
    if settings is None:
        settings = get_settings()

    has_access = check_raw_device_access(settings.privilege_probe_device)
    if has_access:
        logger.info("Raw disk access confirmed")
    else:
        logger.info(
            "No raw disk access to %s; administrator privileges are required",
            settings.privilege_probe_device,
        )
    return has_access


__all__ = ["check_raw_device_access", "has_admin_privileges"]
