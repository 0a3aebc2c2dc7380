"""Command line interface for dirsync."""
