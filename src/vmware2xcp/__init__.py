"""ESXi to XCP-ng VM migration tool."""

__version__ = "0.1.0"
