"""CHR Installer - replace a Linux host's disk with MikroTik RouterOS CHR.

This package fetches the RouterOS Cloud Hosted Router image, adapts it
(first-boot script, partition growth) and streams it onto the host's
block device before rebooting into the router OS.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
