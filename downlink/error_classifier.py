"""
Maps raw engine failures to a closed set of error kinds with remediation actions.

Rules are checked in order and the first match wins, so the most specific
patterns come first. Anything unmatched becomes `ErrorKind.UNKNOWN`.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple


class ErrorKind(str, Enum):
    AUTH_REQUIRED = 'authRequired'
    EXTRACTOR_OUTDATED = 'extractorOutdated'
    GEO_RESTRICTED = 'geoRestricted'
    FORMAT_UNAVAILABLE = 'formatUnavailable'
    UNAVAILABLE = 'unavailable'
    NETWORK_ERROR = 'networkError'
    DISK_ERROR = 'diskError'
    TOOL_MISSING = 'toolMissing'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class RemediationAction:
    """An opaque token the UI renders as a button. The engine never interprets it."""
    kind: str
    label: str


IMPORT_COOKIES = RemediationAction('importCookies', 'Import cookies from browser')
UPDATE_ENGINE = RemediationAction('updateEngine', 'Update yt-dlp and retry')
OPEN_PROXY_SETTINGS = RemediationAction('openProxySettings', 'Configure proxy')
USE_RECOMMENDED_PRESET = RemediationAction('useRecommendedPreset', 'Use Recommended preset')
RETRY = RemediationAction('retry', 'Retry')
FREE_DISK_SPACE = RemediationAction('freeDiskSpace', 'Free up disk space')
CHOOSE_OUTPUT_FOLDER = RemediationAction('chooseOutputFolder', 'Choose another folder')
INSTALL_TOOLS = RemediationAction('installTools', 'Install or repair tools')
OPEN_LOGS = RemediationAction('openLogs', 'View logs')


@dataclass(frozen=True)
class ClassifiedError:
    """A user-facing failure. Keep `user_message` short; details belong in logs."""
    kind: ErrorKind
    user_message: str
    actions: Tuple[RemediationAction, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'user_message': self.user_message,
            'actions': [{'kind': a.kind, 'label': a.label} for a in self.actions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ClassifiedError':
        try:
            kind = ErrorKind(data.get('kind', ErrorKind.UNKNOWN.value))
        except ValueError:
            kind = ErrorKind.UNKNOWN
        actions = tuple(RemediationAction(a['kind'], a['label']) for a in data.get('actions', []))
        return cls(kind, data.get('user_message', ''), actions)


@dataclass(frozen=True)
class _Rule:
    pattern: Pattern[str]
    error: ClassifiedError
    # Fatal rules stop the process as soon as the line is seen instead of waiting for exit.
    fatal: bool = False


def _rule(patterns: Sequence[str], kind: ErrorKind, message: str,
          actions: Iterable[RemediationAction], fatal: bool = False) -> _Rule:
    compiled = re.compile('|'.join(f'(?:{p})' for p in patterns), re.IGNORECASE)
    return _Rule(compiled, ClassifiedError(kind, message, tuple(actions)), fatal)


RULES: List[_Rule] = [
    _rule([r'ffmpeg (?:is )?not (?:found|installed)', r'ffprobe and ffmpeg not found',
           r"no such file or directory: '?ff(?:mpeg|probe)"],
          ErrorKind.TOOL_MISSING,
          "FFmpeg is required for this download but could not be found.",
          [INSTALL_TOOLS]),
    _rule([r'no space left on device', r'\[errno 28\]', r'disk quota exceeded'],
          ErrorKind.DISK_ERROR,
          "The disk is full. Free up space and retry.",
          [FREE_DISK_SPACE, RETRY], fatal=True),
    _rule([r'permission denied', r'\[errno 13\]', r'read-only file system',
           r'unable to open for writing', r'unable to create directory'],
          ErrorKind.DISK_ERROR,
          "The output folder is not writable. Choose another folder.",
          [CHOOSE_OUTPUT_FOLDER]),
    _rule([r'sign in to confirm', r'sign in if', r'login required', r'log in to',
           r'--cookies', r'age[- ]restricted', r'members[- ]only', r"confirm you(?:'|’)?re not a bot"],
          ErrorKind.AUTH_REQUIRED,
          "This content requires sign-in. Import cookies from your browser and retry.",
          [IMPORT_COOKIES]),
    _rule([r'not available in your country', r'geo[- ]?restrict', r'blocked it in your country',
           r'not made this video available in your country'],
          ErrorKind.GEO_RESTRICTED,
          "This content is not available in your region.",
          [OPEN_PROXY_SETTINGS]),
    _rule([r'video unavailable', r'has been removed', r'private video', r'deleted video',
           r'this video is no longer available', r'http error 404', r'does not exist'],
          ErrorKind.UNAVAILABLE,
          "This item is unavailable. It may be private or removed.",
          []),
    _rule([r'requested format (?:is )?not available', r'format not available'],
          ErrorKind.FORMAT_UNAVAILABLE,
          "The requested format is not available for this content.",
          [USE_RECOMMENDED_PRESET]),
    _rule([r'unsupported url', r'unable to extract', r'no video formats found',
           r'nsig extraction failed', r'please report this issue', r'extractor error'],
          ErrorKind.EXTRACTOR_OUTDATED,
          "The downloader engine may be outdated for this site.",
          [UPDATE_ENGINE, RETRY]),
    _rule([r'unable to download (?:webpage|video data|api page)', r'connection (?:reset|refused|aborted)',
           r'timed out', r'name resolution', r'network is unreachable', r'getaddrinfo failed',
           r'urlopen error', r'http error 5\d\d', r'remote end closed connection', r'ssl: '],
          ErrorKind.NETWORK_ERROR,
          "Network error occurred. Check your connection and retry.",
          [RETRY]),
]

# Shell convention for "command not found" / "not executable".
_TOOL_EXIT_CODES = {126, 127}

TOOL_MISSING_ERROR = ClassifiedError(
    ErrorKind.TOOL_MISSING,
    "The download engine (yt-dlp) is missing or not working.",
    (INSTALL_TOOLS,),
)

TOOL_OUTDATED_ERROR = ClassifiedError(
    ErrorKind.TOOL_MISSING,
    "The download engine (yt-dlp) is older than the minimum supported version.",
    (UPDATE_ENGINE, INSTALL_TOOLS),
)

UNAVAILABLE_ERROR = ClassifiedError(
    ErrorKind.UNAVAILABLE,
    "This playlist item is unavailable. It may be private or removed.",
    (),
)

INTERNAL_ERROR = ClassifiedError(
    ErrorKind.UNKNOWN,
    "Something went wrong inside the downloader.",
    (OPEN_LOGS,),
)


class ErrorClassifier:
    """Classifies a finished (or failing) engine run from its exit code and recent output."""

    def __init__(self, rules: Optional[List[_Rule]] = None):
        self.rules = rules if rules is not None else RULES
        self.logger = logging.getLogger(__name__)

    def classify(self, exit_code: Optional[int], recent_lines: Iterable[str]) -> ClassifiedError:
        """
        Maps a failure to a ClassifiedError. Never raises.

        Error lines (``ERROR:``) are checked before the rest of the output so that
        a warning earlier in the log cannot outrank the actual failure.
        """
        try:
            lines = [line for line in recent_lines if line]
            errors = [line for line in lines if line.lstrip().upper().startswith('ERROR')]
            for candidates in (errors, lines):
                match = self._match(candidates)
                if match is not None:
                    return match.error
            if exit_code in _TOOL_EXIT_CODES:
                return TOOL_MISSING_ERROR
            detail = f" (exit code {exit_code})" if exit_code is not None else ""
            return ClassifiedError(ErrorKind.UNKNOWN, f"Download failed{detail}.", (RETRY, OPEN_LOGS))
        except Exception:
            self.logger.exception("Error classifier failed; falling back to unknown.")
            return INTERNAL_ERROR

    def classify_fatal(self, line: str) -> Optional[ClassifiedError]:
        """Returns an error if a single live output line is fatal on its own, else None."""
        if not line or not line.lstrip().upper().startswith('ERROR'):
            return None
        match = self._match([line])
        if match is not None and match.fatal:
            return match.error
        return None

    def _match(self, lines: List[str]) -> Optional[_Rule]:
        if not lines:
            return None
        text = '\n'.join(lines)
        for rule in self.rules:
            if rule.pattern.search(text):
                return rule
        return None
