"""
Defines the engine's version string.

This is the single source of truth for the package version number.
It is used in logs and for packaging.
"""

__version__ = "0.4.0"
