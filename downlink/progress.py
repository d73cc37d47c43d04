"""
Turns raw yt-dlp output lines into canonical progress events.

`normalize_line` is pure: it never touches job state and never raises on
unexpected input. Lines it does not recognize simply yield None.
"""

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .constants import PROGRESS_MARKER


class Phase(str, Enum):
    DOWNLOADING = 'downloading'
    MERGING = 'merging'
    EXTRACTING_AUDIO = 'extracting_audio'
    EMBEDDING_SUBTITLES = 'embedding_subtitles'
    EMBEDDING_THUMBNAIL = 'embedding_thumbnail'
    WRITING_METADATA = 'writing_metadata'
    SPONSORBLOCK = 'sponsorblock'
    CONVERTING = 'converting'
    FIXING = 'fixing'

    @property
    def label(self) -> str:
        return PHASE_LABELS[self]

    @property
    def is_postprocessing(self) -> bool:
        return self is not Phase.DOWNLOADING


PHASE_LABELS = {
    Phase.DOWNLOADING: 'Downloading',
    Phase.MERGING: 'Merging streams',
    Phase.EXTRACTING_AUDIO: 'Extracting audio',
    Phase.EMBEDDING_SUBTITLES: 'Embedding subtitles',
    Phase.EMBEDDING_THUMBNAIL: 'Embedding thumbnail',
    Phase.WRITING_METADATA: 'Writing metadata',
    Phase.SPONSORBLOCK: 'Applying SponsorBlock',
    Phase.CONVERTING: 'Converting',
    Phase.FIXING: 'Fixing container',
}

# yt-dlp post-processor tags, lowercased.
_POSTPROCESSOR_PHASES = {
    'merger': Phase.MERGING,
    'extractaudio': Phase.EXTRACTING_AUDIO,
    'embedsubtitle': Phase.EMBEDDING_SUBTITLES,
    'embedthumbnail': Phase.EMBEDDING_THUMBNAIL,
    'metadata': Phase.WRITING_METADATA,
    # [SponsorBlock] only fetches segments before the transfer; cutting happens here.
    'modifychapters': Phase.SPONSORBLOCK,
    'videoconvertor': Phase.CONVERTING,
    'videoremuxer': Phase.CONVERTING,
    'fixupm4a': Phase.FIXING,
    'fixupm3u8': Phase.FIXING,
    'fixupstretched': Phase.FIXING,
    'fixuptimestamp': Phase.FIXING,
    'fixupduration': Phase.FIXING,
    'fixupduplicatemoov': Phase.FIXING,
}


@dataclass(frozen=True)
class ProgressEvent:
    """Canonical progress snapshot. Any field may be None when the engine did not report it."""
    percent: Optional[float] = None
    bytes_downloaded: Optional[int] = None
    bytes_total: Optional[int] = None
    speed_bps: Optional[int] = None
    eta_seconds: Optional[int] = None
    phase: Optional[Phase] = None

    @property
    def has_numbers(self) -> bool:
        return any(v is not None for v in (self.percent, self.bytes_downloaded, self.bytes_total,
                                           self.speed_bps, self.eta_seconds))


_ANSI_RE = re.compile(r'\x1b\[[0-9;]*[A-Za-z]')
_TAG_RE = re.compile(r'^\[(\w+)\]')
_DEFAULT_PROGRESS_RE = re.compile(
    r'^\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%'
    r'(?:\s+of\s+~?\s*(?P<total>[\d.]+\s*[KMGT]?i?B))?'
    r'(?:\s+(?:in\s+\S+\s+)?at\s+(?P<speed>\S+))?'
    r'(?:\s+ETA\s+(?P<eta>\S+))?'
)
_SIZE_RE = re.compile(r'^(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[KMGT]?i?B)', re.IGNORECASE)
_UNIT_MULTIPLIERS = {
    'b': 1,
    'kb': 1000, 'kib': 1024,
    'mb': 1000 ** 2, 'mib': 1024 ** 2,
    'gb': 1000 ** 3, 'gib': 1024 ** 3,
    'tb': 1000 ** 4, 'tib': 1024 ** 4,
}

_DESTINATION_RE = re.compile(r'^\[(?:download|ExtractAudio|VideoConvertor|VideoRemuxer)\] Destination: (?P<path>.+)$')
_MERGER_RE = re.compile(r'^\[Merger\] Merging formats into "(?P<path>.+)"$')
_ALREADY_RE = re.compile(r'^\[download\] (?P<path>.+) has already been downloaded')
_MOVE_RE = re.compile(r'^\[MoveFiles\] Moving file "(?:.+)" to "(?P<path>.+)"$')


def _clean(line: str) -> str:
    return _ANSI_RE.sub('', line).strip()


def _non_negative_int(value: Optional[float]) -> Optional[int]:
    if value is None or value != value or value < 0:  # NaN check
        return None
    return int(value)


def _number(text: str) -> Optional[float]:
    text = text.strip()
    if not text or text.upper() in ('NA', 'N/A', 'NONE', 'UNKNOWN'):
        return None
    try:
        return float(text.rstrip('%'))
    except ValueError:
        return None


def clamp_percent(value: Optional[float]) -> Optional[float]:
    if value is None or value != value:
        return None
    return max(0.0, min(100.0, value))


def parse_size(text: Optional[str]) -> Optional[int]:
    """'1.50MiB' -> 1572864. Returns None for 'N/A', 'Unknown' or garbage."""
    if not text:
        return None
    match = _SIZE_RE.match(text.strip().lstrip('~'))
    if not match:
        return None
    multiplier = _UNIT_MULTIPLIERS.get(match.group('unit').lower())
    if multiplier is None:
        return None
    return _non_negative_int(float(match.group('num')) * multiplier)


def parse_speed(text: Optional[str]) -> Optional[int]:
    """'500KiB/s' -> 512000."""
    if not text:
        return None
    return parse_size(text.split('/')[0])


def parse_eta(text: Optional[str]) -> Optional[int]:
    """'05:30' -> 330, '01:05:30' -> 3930, '30' -> 30."""
    if not text:
        return None
    parts = text.strip().split(':')
    if not 1 <= len(parts) <= 3:
        return None
    try:
        values = [int(p) for p in parts]
    except ValueError:
        return None
    seconds = 0
    for value in values:
        seconds = seconds * 60 + value
    return _non_negative_int(seconds)


def _parse_template_line(body: str) -> Optional[ProgressEvent]:
    """Parses the fields written by our --progress-template, separated by '/'."""
    parts = body.split('/')
    if len(parts) < 6:
        return None
    downloaded, total, estimate, speed, eta, percent_str = (_number(p) for p in parts[:6])
    bytes_total = _non_negative_int(total if total is not None else estimate)
    bytes_downloaded = _non_negative_int(downloaded)
    percent = clamp_percent(percent_str)
    if percent is None and bytes_downloaded is not None and bytes_total:
        percent = clamp_percent(bytes_downloaded * 100.0 / bytes_total)
    return ProgressEvent(
        percent=percent,
        bytes_downloaded=bytes_downloaded,
        bytes_total=bytes_total,
        speed_bps=_non_negative_int(speed),
        eta_seconds=_non_negative_int(eta),
        phase=Phase.DOWNLOADING,
    )


def normalize_line(raw_line: str) -> Optional[ProgressEvent]:
    """
    Parses one engine output line into a ProgressEvent, or None if it carries no progress.

    Recognized forms:
        [downlink] 1048576/10485760/NA/524288.0/18/ 10.0%   (our progress template)
        [download]  50.5% of ~100.00MiB at 1.50MiB/s ETA 00:30
        [download]  50.5%
        [Merger] Merging formats into "..."                  (phase only)
    """
    line = _clean(raw_line)
    if not line:
        return None

    if line.startswith(PROGRESS_MARKER):
        return _parse_template_line(line[len(PROGRESS_MARKER):].strip())

    if match := _DEFAULT_PROGRESS_RE.match(line):
        percent = clamp_percent(_number(match.group('percent')))
        total = parse_size(match.group('total'))
        downloaded = _non_negative_int(total * percent / 100.0) if total is not None and percent is not None else None
        return ProgressEvent(
            percent=percent,
            bytes_downloaded=downloaded,
            bytes_total=total,
            speed_bps=parse_speed(match.group('speed')),
            eta_seconds=parse_eta(match.group('eta')),
            phase=Phase.DOWNLOADING,
        )

    if line.startswith('[download] Destination:'):
        return ProgressEvent(phase=Phase.DOWNLOADING)

    if tag_match := _TAG_RE.match(line):
        phase = _POSTPROCESSOR_PHASES.get(tag_match.group(1).lower())
        if phase is not None:
            return ProgressEvent(phase=phase)
    return None


def parse_output_path(raw_line: str) -> Optional[str]:
    """Returns the file path a line announces as the (current) output, if any."""
    line = _clean(raw_line)
    for pattern in (_MOVE_RE, _MERGER_RE, _DESTINATION_RE, _ALREADY_RE):
        if match := pattern.match(line):
            return match.group('path').strip()
    return None


class ProgressThrottle:
    """
    Admits at most `rate` events per second for one job.

    Phase changes always pass so that a downloading -> postprocessing transition
    is never lost.
    """

    def __init__(self, rate: float, clock: Callable[[], float] = time.monotonic):
        self.interval = 1.0 / rate
        self.clock = clock
        self._last_emit: Optional[float] = None
        self._last_phase: Optional[Phase] = None

    def allow(self, event: ProgressEvent) -> bool:
        now = self.clock()
        phase_changed = event.phase is not None and event.phase != self._last_phase
        if event.phase is not None:
            self._last_phase = event.phase
        if phase_changed or self._last_emit is None or now - self._last_emit >= self.interval:
            self._last_emit = now
            return True
        return False
