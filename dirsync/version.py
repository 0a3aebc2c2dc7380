"""Version information for dirsync."""

__version__ = "0.1.0"
