"""Linux rtnetlink link and address management, /proc stat parsing and runtime helpers."""

__version__ = "0.1.0"