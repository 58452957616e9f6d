"""Coarse checks on image files.

Only the extension and size are checked; the ISO filesystem itself is
not parsed.
"""

import logging
from pathlib import Path

from rich.filesize import decimal

logger = logging.getLogger(__name__)

ISO_EXTENSION = ".iso"

# Images smaller than this are not plausible bootable media (1 MiB)
DEFAULT_MIN_IMAGE_BYTES = 1024 * 1024


def validate_iso(
    image_path: str | Path, min_bytes: int = DEFAULT_MIN_IMAGE_BYTES
) -> bool:
    """Check that a path looks like a usable ISO image.

    Args:
        image_path: Path to the image.
        min_bytes: Size the image must exceed.

    Returns:
        True if the file exists, has an .iso extension and is larger
        than min_bytes.
    """
    path = Path(image_path)

    if not path.is_file():
        logger.debug("Image does not exist: %s", path)
        return False

    if path.suffix.lower() != ISO_EXTENSION:
        logger.debug("Image does not have an %s extension: %s", ISO_EXTENSION, path)
        return False

    try:
        size = path.stat().st_size
    except OSError as e:
        logger.debug("Could not stat image %s: %s", path, e)
        return False

    return size > min_bytes


def get_file_size(file_path: str | Path) -> str | None:
    """Human-readable size of a file, or None if it cannot be read."""
    try:
        return decimal(Path(file_path).stat().st_size)
    except OSError:
        return None


__all__ = ["DEFAULT_MIN_IMAGE_BYTES", "ISO_EXTENSION", "get_file_size", "validate_iso"]
