"""diskimager - Raw disk imaging for removable USB media.

This package writes ISO images onto removable USB devices and captures
the raw contents of USB devices back into image files.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
