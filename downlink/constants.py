"""
Defines engine-wide constants, paths, and subprocess behavior.

This module centralizes configuration for paths, engine defaults, and subprocess
flags, adapting to whether the engine is running from source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # Bundled builds ship sidecar binaries next to the executable.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'downlink').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for state to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.downlink'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
JOBS_FILE: Path = USER_DATA_DIR / 'jobs.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
TEMP_DOWNLOAD_DIR: Path = USER_DATA_DIR / 'temp_downloads'
TOOLS_DIR: Path = USER_DATA_DIR / 'tools'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Engine ---
ENGINE_TOOL = 'yt-dlp'
FFMPEG_TOOL = 'ffmpeg'

# Marker prefixed to every line produced by our --progress-template.
PROGRESS_MARKER = '[downlink]'

# Suffixes yt-dlp leaves behind for interrupted transfers.
PARTIAL_SUFFIXES = {'.part', '.ytdl', '.temp'}

# StreamReader limit for engine output; --dump-json lines can be large.
STREAM_LINE_LIMIT = 4 * 1024 * 1024
