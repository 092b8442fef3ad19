"""Per-branch development environments with collision-free ports."""

__version__ = "0.3.0"
