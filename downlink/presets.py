"""Built-in format presets and the yt-dlp command builder."""
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import Settings
from .constants import PROGRESS_MARKER
from .jobs import JobRecord, SourceKind

DEFAULT_PRESET_ID = 'recommended_best'

# Every field is printed so the normalizer can rely on the position of each value.
PROGRESS_TEMPLATE = (
    f'download:{PROGRESS_MARKER} '
    '%(progress.downloaded_bytes)s/%(progress.total_bytes)s/%(progress.total_bytes_estimate)s/'
    '%(progress.speed)s/%(progress.eta)s/%(progress._percent_str)s'
)


@dataclass(frozen=True)
class Preset:
    preset_id: str
    label: str
    args: Tuple[str, ...]
    audio_only: bool = False


BUILTIN_PRESETS: Dict[str, Preset] = {p.preset_id: p for p in (
    Preset('recommended_best', 'Recommended (best quality)',
           ('-f', 'bv*+ba/b', '--merge-output-format', 'mp4')),
    Preset('mp4_1080p', 'MP4 up to 1080p',
           ('-f', 'bv*[height<=1080]+ba/b[height<=1080]', '--merge-output-format', 'mp4')),
    Preset('mp4_best', 'MP4 best',
           ('-f', 'bv*[ext=mp4]+ba[ext=m4a]/b[ext=mp4]', '--merge-output-format', 'mp4')),
    Preset('audio_m4a', 'Audio only (M4A)',
           ('-f', 'ba[ext=m4a]/ba', '-x', '--audio-format', 'm4a'), audio_only=True),
    Preset('audio_mp3_320', 'Audio only (MP3 320k)',
           ('-f', 'ba', '-x', '--audio-format', 'mp3', '--audio-quality', '320K'), audio_only=True),
)}


def get_preset(preset_id: Optional[str]) -> Preset:
    """Returns the preset for `preset_id`, falling back to the recommended one for unknown ids."""
    return BUILTIN_PRESETS.get(preset_id or '', BUILTIN_PRESETS[DEFAULT_PRESET_ID])


def job_temp_dir(settings: Settings, job_id: str) -> Path:
    """Each job gets its own temp directory so cancel can remove exactly its artifacts."""
    return Path(settings.temp_dir) / job_id


def build_command(engine_path: Path, job: JobRecord, settings: Settings,
                  ffmpeg_path: Optional[Path] = None) -> List[str]:
    """
    Builds the full yt-dlp argument list for a job.

    The URL always comes last, after a `--` separator, so a URL starting with
    a dash can never be read as an option.

    Args:
        engine_path: The resolved yt-dlp executable.
        job: The job to download.
        settings: Current engine settings.
        ffmpeg_path: Optional ffmpeg executable; its directory is passed to yt-dlp.

    Returns:
        The command as a list of strings, never a shell string.
    """
    preset = get_preset(job.preset_id)
    output_template = Path(job.output_dir) / settings.filename_template
    command = [
        str(engine_path),
        '--newline', '--progress',
        '--progress-template', PROGRESS_TEMPLATE,
        '--no-mtime', '--continue',
    ]
    if job.source_kind is not SourceKind.PLAYLIST_PARENT:
        command.append('--no-playlist')
    command.extend(['--paths', f'temp:{job_temp_dir(settings, job.job_id)}', '-o', str(output_template)])
    command.extend(preset.args)

    if settings.embed_metadata:
        command.append('--embed-metadata')
    if settings.embed_thumbnail:
        command.append('--embed-thumbnail')

    subs = settings.subtitles
    if subs.enabled:
        command.extend(['--write-subs', '--sub-langs', ','.join(subs.languages)])
        if subs.include_auto_captions:
            command.append('--write-auto-subs')
        # Subtitles cannot be embedded into audio-only containers.
        if subs.embed and not preset.audio_only:
            command.append('--embed-subs')

    sponsorblock = settings.sponsorblock
    if sponsorblock.enabled and sponsorblock.categories:
        command.extend([f'--sponsorblock-{sponsorblock.mode}', ','.join(sponsorblock.categories)])

    network = settings.network
    if network.proxy_url:
        command.extend(['--proxy', network.proxy_url])
    if network.rate_limit_bps:
        command.extend(['--limit-rate', str(network.rate_limit_bps)])
    command.extend(['--retries', str(network.retries)])
    if network.concurrent_fragments > 1:
        command.extend(['--concurrent-fragments', str(network.concurrent_fragments)])
    command.extend(['--socket-timeout', str(network.socket_timeout)])

    if settings.cookies_path:
        command.extend(['--cookies', str(settings.cookies_path)])
    if ffmpeg_path:
        command.extend(['--ffmpeg-location', str(ffmpeg_path.parent)])

    command.extend(['--', job.source_url])
    return command
