"""
Provides methods to extract information from URLs using yt-dlp.
"""

import re
import sys
import json
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urljoin, urlsplit, urlunsplit

from .exceptions import URLExtractionError, DownloadCancelledError
from .constants import SUBPROCESS_CREATION_FLAGS

_URL_RE = re.compile(r'https?://\S+', re.IGNORECASE)
_TRAILING_PUNCTUATION = ')]}>,.;:!?"\''
_DEFAULT_PORTS = {'http': 80, 'https': 443}
_PLAYLIST_PATH_RE = re.compile(r'/(?:playlist|sets|album)(?:/|$)|/@[^/]+(?:/(?:videos|shorts|streams))?/?$|/channel/|/c/', re.IGNORECASE)
UNAVAILABLE_TITLES = {'[Private video]', '[Deleted video]', '[Unavailable video]'}

# Bounds the lines kept from a failed command for classification.
MAX_CAPTURED_LINES = 200
# Shell convention for "command not found"; lets the classifier report a missing tool.
EXIT_CODE_NOT_FOUND = 127


def normalize_http_url(text: str) -> Optional[str]:
    """
    Normalizes an http(s) URL: lowercases scheme and host, removes default ports and fragments.

    Returns None for anything that is not an http(s) URL with a host.
    """
    text = text.strip()
    if not text:
        return None
    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if ':' in host:
        host = f'[{host}]'
    netloc = host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f'{host}:{port}'
    if parts.username:
        credentials = parts.username + (f':{parts.password}' if parts.password else '')
        netloc = f'{credentials}@{netloc}'
    return urlunsplit((scheme, netloc, parts.path, parts.query, ''))


def extract_urls(text: str) -> List[str]:
    """
    Pulls every http(s) URL out of free text, e.g. a multi-line paste.

    Trailing punctuation from prose is trimmed, URLs are normalized, and
    duplicates are dropped while the original order is kept.
    """
    urls: List[str] = []
    seen = set()
    for match in _URL_RE.finditer(text or ''):
        candidate = match.group(0).rstrip(_TRAILING_PUNCTUATION)
        normalized = normalize_http_url(candidate)
        if normalized and normalized not in seen:
            seen.add(normalized)
            urls.append(normalized)
    return urls


def is_playlist_url(url: str) -> bool:
    """
    Heuristic playlist detection from the URL alone.

    A watch URL that also carries a `list=` parameter is treated as a single
    video, since that is what the user was looking at.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    query = parse_qs(parts.query)
    if 'list' in query:
        return 'v' not in query and not parts.path.startswith('/watch')
    return bool(_PLAYLIST_PATH_RE.search(parts.path))


@dataclass(frozen=True)
class MediaMetadata:
    url: str
    title: Optional[str] = None
    uploader: Optional[str] = None
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    filesize_bytes: Optional[int] = None
    is_playlist: bool = False
    playlist_count: Optional[int] = None


@dataclass(frozen=True)
class PlaylistEntry:
    url: Optional[str]
    title: Optional[str] = None
    uploader: Optional[str] = None
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    available: bool = True


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return None
    return int(value)


def parse_metadata(info: Dict[str, Any], fallback_url: str) -> MediaMetadata:
    is_playlist = info.get('_type') == 'playlist' or 'entries' in info
    count = _int_or_none(info.get('playlist_count')) or _int_or_none(info.get('n_entries'))
    if count is None and isinstance(info.get('entries'), list):
        count = len(info['entries'])
    return MediaMetadata(
        url=_str_or_none(info.get('webpage_url')) or fallback_url,
        title=_str_or_none(info.get('title')),
        uploader=_str_or_none(info.get('uploader')),
        duration_seconds=_int_or_none(info.get('duration')),
        thumbnail_url=_str_or_none(info.get('thumbnail')),
        filesize_bytes=_int_or_none(info.get('filesize')) or _int_or_none(info.get('filesize_approx')),
        is_playlist=is_playlist,
        playlist_count=count if is_playlist else None,
    )


def _entry_url(info: Dict[str, Any], playlist_url: str) -> Optional[str]:
    if webpage_url := _str_or_none(info.get('webpage_url')):
        return webpage_url
    if url := _str_or_none(info.get('url')):
        if url.startswith(('http://', 'https://')):
            return url
        # Relative entry URLs are resolved against the playlist page.
        return urljoin(playlist_url, url)
    return _str_or_none(info.get('id'))


def parse_playlist_entry(info: Dict[str, Any], playlist_url: str) -> PlaylistEntry:
    title = _str_or_none(info.get('title'))
    url = _entry_url(info, playlist_url)
    available = (
        url is not None and
        title not in UNAVAILABLE_TITLES and
        info.get('availability') not in ('private', 'needs_auth_private', 'removed')
    )
    return PlaylistEntry(
        url=url,
        title=title,
        uploader=_str_or_none(info.get('uploader')),
        duration_seconds=_int_or_none(info.get('duration')),
        thumbnail_url=_str_or_none(info.get('thumbnail')) or _first_thumbnail(info),
        available=available,
    )


def _first_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    thumbnails = info.get('thumbnails')
    if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[-1], dict):
        return _str_or_none(thumbnails[-1].get('url'))
    return None


def _json_objects(stdout: str) -> List[Dict[str, Any]]:
    objects = []
    for line in stdout.splitlines():
        line = line.strip()
        if not (line.startswith('{') and line.endswith('}')):
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            objects.append(value)
    return objects


class URLInfoExtractor:
    """
    Runs short-lived yt-dlp commands for metadata probes and playlist enumeration.

    Every command has a bounded timeout; a hung probe never blocks a slot forever.
    """
    def __init__(self, yt_dlp_path: Path, timeout: float = 30):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            timeout: Seconds before a command is killed.
        """
        self.yt_dlp_path = yt_dlp_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, args: List[str], timeout: Optional[float] = None) -> Tuple[str, str]:
        """
        A robust wrapper for running a yt-dlp command.

        Args:
            args: The arguments after the executable.
            timeout: Overrides the default timeout in seconds.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            URLExtractionError: On any failure (e.g., timeout, non-zero exit code).
            DownloadCancelledError: If the task is cancelled.
        """
        command = [str(self.yt_dlp_path), *args]
        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout or self.timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')

        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise URLExtractionError("yt-dlp executable not found.", exit_code=EXIT_CODE_NOT_FOUND)
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp command timed out: {' '.join(command)}")
            raise URLExtractionError("URL processing command timed out.", lines=["ERROR: metadata request timed out"])
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise URLExtractionError(f"OS error: {e}", exit_code=EXIT_CODE_NOT_FOUND)
        except asyncio.CancelledError:
            if process and process.returncode is None: process.kill()
            raise DownloadCancelledError("URL processing cancelled.")

        if process.returncode != 0:
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{command[-1]}'. Stderr: {stderr.strip()}")
            lines = stderr.splitlines()[-MAX_CAPTURED_LINES:]
            raise URLExtractionError(error_msg, exit_code=process.returncode, lines=lines)

        return stdout, stderr

    async def fetch_metadata(self, url: str, no_playlist: bool = True) -> MediaMetadata:
        """
        Fetches title, uploader, duration and thumbnail without downloading media.

        Args:
            url: The URL to probe.
            no_playlist: Treat watch-in-playlist URLs as the single video.

        Raises:
            DownloadCancelledError: If the task is cancelled.
            URLExtractionError: If the yt-dlp command fails or prints no JSON.
        """
        args = ['--dump-single-json', '--flat-playlist', '--no-warnings']
        if no_playlist:
            args.append('--no-playlist')
        stdout, _ = await self._run_command([*args, '--', url])
        objects = _json_objects(stdout)
        if not objects:
            raise URLExtractionError("yt-dlp returned no JSON output.", exit_code=0)
        return parse_metadata(objects[0], url)

    async def enumerate_playlist(self, url: str) -> List[PlaylistEntry]:
        """
        Lists a playlist's entries in order using a flat (non-resolving) enumeration.

        Raises:
            DownloadCancelledError: If the task is cancelled.
            URLExtractionError: If the yt-dlp command fails.
        """
        stdout, _ = await self._run_command(['--flat-playlist', '--dump-json', '--no-warnings', '--', url])
        entries = [parse_playlist_entry(info, url) for info in _json_objects(stdout)]
        self.logger.info(f"Enumerated {len(entries)} playlist entries for {url}")
        return entries
