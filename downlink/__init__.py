"""Download orchestration engine: jobs, scheduling, yt-dlp process control and events."""

from ._version import __version__

__all__ = ["__version__"]
