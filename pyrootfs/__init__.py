"""Pull container images from OCI registries into root filesystems"""

__version__ = "0.1.0"
