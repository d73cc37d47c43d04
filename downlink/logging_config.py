"""
Configures the engine's logging setup.

This module sets up a root logger that directs messages to a rotating file
log and, optionally, to a queue consumed by a UI or CLI.
"""

import sys
import queue
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'


def setup_logging(log_queue: Optional[queue.Queue] = None, file_log_level_str: str = 'INFO',
                  log_dir: Path = LOG_DIR) -> Path:
    """
    Configures the root logger for file and queue logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on startup.

    Args:
        log_queue: Optional queue to which log records are also sent.
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        log_dir: Directory holding `latest.log` and its archives.

    Returns:
        The path of the active log file.
    """
    # 1. Ensure Log Directory Exists
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Implement Log Rotation
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all levels at the root

    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    log_formatter = logging.Formatter(LOG_FORMAT)

    # 4. Configure File Handler
    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    # 5. Configure Queue Handler
    if log_queue is not None:
        queue_handler = logging.handlers.QueueHandler(log_queue)
        queue_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(queue_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
    return latest_log_path
