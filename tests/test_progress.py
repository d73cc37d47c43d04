import pytest

from downlink.progress import (
    Phase, ProgressEvent, ProgressThrottle, normalize_line, parse_eta, parse_output_path, parse_size
)


def test_template_line_is_parsed():
    event = normalize_line('[downlink] 1048576/10485760/NA/524288.0/18/ 10.0%')
    assert event == ProgressEvent(percent=10.0, bytes_downloaded=1048576, bytes_total=10485760,
                                  speed_bps=524288, eta_seconds=18, phase=Phase.DOWNLOADING)


def test_template_line_falls_back_to_estimate_and_computes_percent():
    event = normalize_line('[downlink] 250/NA/1000/NA/NA/NA')
    assert event.bytes_total == 1000
    assert event.percent == 25.0
    assert event.speed_bps is None
    assert event.eta_seconds is None


def test_default_progress_line_is_parsed():
    event = normalize_line('[download]  50.0% of ~100.00MiB at  1.50MiB/s ETA 00:30')
    assert event.percent == 50.0
    assert event.bytes_total == 100 * 1024 * 1024
    assert event.bytes_downloaded == 50 * 1024 * 1024
    assert event.speed_bps == int(1.5 * 1024 * 1024)
    assert event.eta_seconds == 30


def test_percent_is_clamped_and_ansi_stripped():
    event = normalize_line('\x1b[0;94m[downlink] 10/5/NA/NA/NA/200.0%\x1b[0m')
    assert event.percent == 100.0


@pytest.mark.parametrize('line, phase', [
    ('[Merger] Merging formats into "/out/video.mp4"', Phase.MERGING),
    ('[ExtractAudio] Destination: /out/song.m4a', Phase.EXTRACTING_AUDIO),
    ('[EmbedThumbnail] ffmpeg: Adding thumbnail to "/out/video.mp4"', Phase.EMBEDDING_THUMBNAIL),
    ('[Metadata] Adding metadata to "/out/video.mp4"', Phase.WRITING_METADATA),
    ('[ModifyChapters] Removing chapters from "/out/video.mp4"', Phase.SPONSORBLOCK),
    ('[download] Destination: /out/video.f137.mp4', Phase.DOWNLOADING),
])
def test_phase_lines(line, phase):
    event = normalize_line(line)
    assert event.phase is phase
    assert not event.has_numbers


@pytest.mark.parametrize('line', [
    '',
    '[youtube] abc123: Downloading webpage',
    'WARNING: something odd',
    '[SponsorBlock] Fetching SponsorBlock segments',
    '[downlink] garbage',
    'random text',
])
def test_unrecognized_lines_yield_none(line):
    assert normalize_line(line) is None


def test_helpers_reject_garbage():
    assert parse_size('N/A') is None
    assert parse_size('1.50KiB') == 1536
    assert parse_eta('01:05:30') == 3930
    assert parse_eta('soon') is None


def test_output_path_detection():
    assert parse_output_path('[download] Destination: /out/a.f137.mp4') == '/out/a.f137.mp4'
    assert parse_output_path('[Merger] Merging formats into "/out/a.mp4"') == '/out/a.mp4'
    assert parse_output_path('[download] /out/a.mp4 has already been downloaded') == '/out/a.mp4'
    assert parse_output_path('[MoveFiles] Moving file "/tmp/a.mp4" to "/out/a.mp4"') == '/out/a.mp4'
    assert parse_output_path('[download]  10.0% of 1.00MiB') is None


def test_throttle_limits_rate_but_passes_phase_changes():
    now = [0.0]
    throttle = ProgressThrottle(rate=4, clock=lambda: now[0])
    downloading = ProgressEvent(percent=1.0, phase=Phase.DOWNLOADING)

    assert throttle.allow(downloading)
    now[0] = 0.1
    assert not throttle.allow(downloading)
    assert throttle.allow(ProgressEvent(phase=Phase.MERGING))
    now[0] = 0.2
    assert not throttle.allow(ProgressEvent(phase=Phase.MERGING))
    now[0] = 0.5
    assert throttle.allow(ProgressEvent(phase=Phase.MERGING))
