"""YOM Flasher - flash, extend and eject raw disk images on Linux.

This package orchestrates the privileged device operations behind the
flasher: locating system tools, enumerating block devices, streaming a raw
image onto a device with dd, growing the last partition and its filesystem,
and safely ejecting the device.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
