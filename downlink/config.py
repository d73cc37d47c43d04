"""
Manages loading, saving, and validating the engine configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import re
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import TEMP_DOWNLOAD_DIR


class SubtitleSettings(BaseModel):
    """Subtitle download options applied to every job."""
    enabled: bool = False
    languages: List[str] = Field(default_factory=lambda: ['en'])
    include_auto_captions: bool = False
    embed: bool = False


class SponsorBlockSettings(BaseModel):
    """SponsorBlock options. `mode` is 'remove' (cut segments) or 'mark' (chapters)."""
    enabled: bool = False
    mode: str = 'remove'
    categories: List[str] = Field(default_factory=lambda: ['sponsor', 'selfpromo', 'interaction'])

    @field_validator('mode')
    @classmethod
    def validate_mode(cls, value: str) -> str:
        value = value.lower()
        if value not in ('remove', 'mark'):
            raise ValueError("SponsorBlock mode must be 'remove' or 'mark'.")
        return value


class NetworkSettings(BaseModel):
    """Network flags passed through to the engine."""
    proxy_url: str = ''
    rate_limit_bps: int = Field(default=0, ge=0)
    retries: int = Field(default=10, ge=0)
    concurrent_fragments: int = Field(default=1, ge=1, le=16)
    socket_timeout: int = Field(default=30, ge=1)


class Settings(BaseModel):
    """
    Defines the engine's configuration schema using Pydantic.

    This class provides type hints, default values, and validation logic for all
    configuration settings.
    """
    max_concurrent_downloads: int = Field(default=2, ge=1, le=20)
    stop_grace_period_seconds: float = Field(default=10.0, gt=0)
    diagnostic_buffer_lines: int = Field(default=2000, ge=10)
    progress_updates_per_second: float = Field(default=4.0, gt=0)
    metadata_timeout_seconds: float = Field(default=30.0, gt=0)
    fetch_metadata_before_download: bool = True
    default_preset: str = 'recommended_best'
    default_output_dir: Path = Field(default_factory=Path.home)
    filename_template: str = '%(title)s [%(id)s].%(ext)s'
    temp_dir: Path = TEMP_DOWNLOAD_DIR
    log_level: str = 'INFO'
    embed_metadata: bool = True
    embed_thumbnail: bool = True
    cookies_path: Optional[Path] = None
    minimum_engine_version: str = ''
    subtitles: SubtitleSettings = Field(default_factory=SubtitleSettings)
    sponsorblock: SponsorBlockSettings = Field(default_factory=SponsorBlockSettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('filename_template')
    @classmethod
    def validate_filename_template(cls, value: str) -> str:
        """
        Validates the yt-dlp filename template.

        Raises:
            ValueError: If the template is invalid.
        """
        is_invalid = (
            not value or
            not re.search(r'%\((?:title|id)\)', value) or
            '/' in value or '\\' in value or '..' in value or
            Path(value).is_absolute()
        )
        if is_invalid:
            raise ValueError("Filename template is invalid. It must include %(title)s or %(id)s and cannot contain path separators.")
        return value


class ConfigManager:
    """Handles loading and saving the engine configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
