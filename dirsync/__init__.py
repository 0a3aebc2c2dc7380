"""Directory synchronization client for identity backends."""

from dirsync.version import __version__

__all__ = ["__version__"]
