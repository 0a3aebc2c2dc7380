"""Core synchronization machinery."""
