"""
Logging configuration shared by the CLI and library entry points.
"""

from .setup import configure_logging  # noqa: F401

__all__ = ["configure_logging"]
